from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from crmlink.core.config import get_settings
from crmlink.core.deps import (
    LinkedUser,
    get_store,
    get_suitecrm_client,
    require_admin,
    require_linked_user,
    require_user,
)
from crmlink.db.session import get_session
from crmlink.schemas.integration import (
    AdminConfigUpdate,
    AlertOut,
    HostNotificationOut,
    OAuthConnectRequest,
    OAuthConnectResponse,
    StatusResponse,
    UrlResponse,
    UserConfigOut,
    UserConfigUpdate,
)
from crmlink.services.accounts import (
    connect_account,
    is_enabled,
    update_admin_config,
    update_user_config,
    user_config,
)
from crmlink.services.notifications import list_notifications, prepare_notification
from crmlink.services.store import KEY_INSTANCE_URL, KEY_SEARCH_ENABLED, DbTokenStore
from crmlink.services.suitecrm.alerts import get_alerts
from crmlink.services.suitecrm.client import SuiteCRMClient
from crmlink.services.suitecrm.tickets import search_tickets
from crmlink.services.suitecrm.types import ApiError, ApiErrorKind, Err

router = APIRouter(tags=["suitecrm"])


@router.put("/admin-config", response_model=StatusResponse)
def admin_config_update(
    body: AdminConfigUpdate,
    _admin: str = Depends(require_admin),
    store: DbTokenStore = Depends(get_store),
    session: Session = Depends(get_session),
) -> StatusResponse:
    update_admin_config(
        store=store,
        client_id=body.client_id,
        client_secret=body.client_secret,
        oauth_instance_url=body.oauth_instance_url,
    )
    session.commit()
    return StatusResponse(status="ok")


@router.get("/config", response_model=UserConfigOut)
def user_config_get(
    user_id: str = Depends(require_user),
    store: DbTokenStore = Depends(get_store),
) -> UserConfigOut:
    return UserConfigOut(**user_config(store=store, user_id=user_id))


@router.put("/config", response_model=StatusResponse)
def user_config_update(
    body: UserConfigUpdate,
    user_id: str = Depends(require_user),
    store: DbTokenStore = Depends(get_store),
    session: Session = Depends(get_session),
) -> StatusResponse:
    update_user_config(store=store, user_id=user_id, values=body.values)
    session.commit()
    return StatusResponse(status="ok")


@router.post("/oauth-connect", response_model=OAuthConnectResponse)
def oauth_connect(
    body: OAuthConnectRequest,
    user_id: str = Depends(require_user),
    client: SuiteCRMClient = Depends(get_suitecrm_client),
    session: Session = Depends(get_session),
) -> OAuthConnectResponse:
    me = connect_account(client=client, user_id=user_id, login=body.login, password=body.password)
    session.commit()
    return OAuthConnectResponse(user_id=me.id, user_name=me.display_name)


@router.get("/notifications", response_model=list[AlertOut])
def upcoming_alerts(
    since: datetime | None = None,
    limit: int | None = Query(default=None, ge=1, le=100),
    linked: LinkedUser = Depends(require_linked_user),
    session: Session = Depends(get_session),
) -> list[AlertOut]:
    result = get_alerts(
        linked.client,
        linked.user_id,
        access_token=linked.access_token,
        since=since,
        limit=limit,
    )
    # A refresh may have rotated the tokens even when the call failed afterwards.
    session.commit()
    if isinstance(result, Err):
        raise _api_error_to_http(result.error)
    return [
        AlertOut(
            id=a.id,
            type=a.kind.value,
            record_id=a.record_id,
            url_redirect=a.url_redirect,
            date_start=a.date_start,
            assigned_user_id=a.assigned_user_id,
            is_read=a.is_read,
            updated_at=a.updated_at,
        )
        for a in result.value
    ]


@router.get("/search")
def tickets_search(
    query: str = Query(min_length=1),
    linked: LinkedUser = Depends(require_linked_user),
    session: Session = Depends(get_session),
) -> list[dict]:
    if not is_enabled(linked.client.store, linked.user_id, KEY_SEARCH_ENABLED):
        return []
    result = search_tickets(
        linked.client,
        linked.user_id,
        access_token=linked.access_token,
        query=query,
    )
    session.commit()
    if isinstance(result, Err):
        raise _api_error_to_http(result.error)
    return result.value


@router.get("/url", response_model=UrlResponse)
def suitecrm_url(
    _user_id: str = Depends(require_user),
    store: DbTokenStore = Depends(get_store),
) -> UrlResponse:
    return UrlResponse(url=store.get_app_value(KEY_INSTANCE_URL))


@router.get("/avatar")
def suitecrm_avatar(
    crm_user_id: str = Query(min_length=1),
    linked: LinkedUser = Depends(require_linked_user),
    session: Session = Depends(get_session),
) -> Response:
    result = linked.client.get_avatar(
        linked.user_id,
        access_token=linked.access_token,
        crm_user_id=crm_user_id,
    )
    session.commit()
    if isinstance(result, Err):
        raise _api_error_to_http(result.error)
    return Response(
        content=result.value,
        media_type=_sniff_image_type(result.value),
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.get("/host-notifications", response_model=list[HostNotificationOut])
def host_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(require_user),
    session: Session = Depends(get_session),
) -> list[HostNotificationOut]:
    app_id = get_settings().APP_ID
    out: list[HostNotificationOut] = []
    for row in list_notifications(session=session, user_id=user_id, app_id=app_id, limit=limit):
        prepared = prepare_notification(
            expected_app_id=app_id,
            app_id=row.app_id,
            subject=row.subject,
            params=row.params,
        )
        out.append(
            HostNotificationOut(
                id=str(row.id),
                subject=prepared.subject,
                message=prepared.message,
                link=prepared.link,
                notified_at=row.notified_at,
            )
        )
    return out


def _api_error_to_http(error: ApiError) -> HTTPException:
    if error.kind == ApiErrorKind.bad_credentials:
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=error.message)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.message)


def _sniff_image_type(content: bytes) -> str:
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if content.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if content.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    return "application/octet-stream"
