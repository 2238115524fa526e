from __future__ import annotations

from typing import Any

from crmlink.services.suitecrm.client import SuiteCRMClient
from crmlink.services.suitecrm.types import ApiResult, Err, Ok

SEARCH_LIMIT = 20
OWNER_FIELD = "customer_id"


def search_tickets(
    client: SuiteCRMClient,
    user_id: str,
    *,
    access_token: str,
    query: str,
) -> ApiResult[list[dict[str, Any]]]:
    """Search tickets and decorate them with state, priority and owner details.

    Lookup tables that fail to load leave the matching fields unset.
    """
    result = client.request(
        user_id,
        "tickets/search",
        access_token=access_token,
        params={"query": query, "limit": SEARCH_LIMIT},
    )
    if isinstance(result, Err):
        return result

    tickets = [dict(t) for t in _search_assets(result.value) if isinstance(t, dict)]

    states = _names_by_id(client.request(user_id, "ticket_states", access_token=access_token))
    priorities = _names_by_id(client.request(user_id, "ticket_priorities", access_token=access_token))
    for ticket in tickets:
        state_name = states.get(str(ticket.get("state_id")))
        if state_name is not None:
            ticket["state_name"] = state_name
        priority_name = priorities.get(str(ticket.get("priority_id")))
        if priority_name is not None:
            ticket["priority_name"] = priority_name

    owners: dict[str, dict[str, Any]] = {}
    for ticket in tickets:
        owner_id = ticket.get(OWNER_FIELD)
        if owner_id is None or str(owner_id) in owners:
            continue
        user = client.get_user(user_id, access_token=access_token, crm_user_id=str(owner_id))
        if isinstance(user, Ok):
            owners[str(owner_id)] = user.value

    for ticket in tickets:
        owner = owners.get(str(ticket.get(OWNER_FIELD)))
        if owner is None:
            continue
        ticket["u_firstname"] = owner.get("firstname")
        ticket["u_lastname"] = owner.get("lastname")
        ticket["u_organization_id"] = owner.get("organization_id")
        ticket["u_image"] = owner.get("image")

    return Ok(tickets)


def _search_assets(payload: object) -> list:
    if not isinstance(payload, dict):
        return []
    assets = payload.get("assets")
    if not isinstance(assets, dict):
        return []
    found = assets.get("Ticket")
    if isinstance(found, dict):
        return list(found.values())
    if isinstance(found, list):
        return found
    return []


def _names_by_id(result: ApiResult[Any]) -> dict[str, str]:
    if isinstance(result, Err) or not isinstance(result.value, list):
        return {}
    names: dict[str, str] = {}
    for row in result.value:
        if not isinstance(row, dict):
            continue
        row_id = row.get("id")
        name = row.get("name")
        if row_id and name:
            names[str(row_id)] = str(name)
    return names
