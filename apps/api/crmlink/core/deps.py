from __future__ import annotations

from dataclasses import dataclass

import httpx
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from crmlink.core.config import get_settings
from crmlink.core.http import get_http_client
from crmlink.db.session import get_session
from crmlink.services.store import KEY_TOKEN, DbTokenStore, load_credentials
from crmlink.services.suitecrm.client import SuiteCRMClient


def require_user(request: Request) -> str:
    settings = get_settings()
    user_id = (request.headers.get(settings.HOST_USER_HEADER) or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user_id


def require_admin(user_id: str = Depends(require_user)) -> str:
    if user_id not in get_settings().admin_user_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return user_id


def get_store(session: Session = Depends(get_session)) -> DbTokenStore:
    return DbTokenStore(session)


def get_suitecrm_client(
    store: DbTokenStore = Depends(get_store),
    http_client: httpx.Client = Depends(get_http_client),
) -> SuiteCRMClient:
    credentials = load_credentials(store)
    if not credentials.is_complete:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="SuiteCRM integration is not configured",
        )
    return SuiteCRMClient(http_client, store=store, credentials=credentials)


@dataclass(frozen=True)
class LinkedUser:
    user_id: str
    access_token: str
    client: SuiteCRMClient


def require_linked_user(
    user_id: str = Depends(require_user),
    client: SuiteCRMClient = Depends(get_suitecrm_client),
) -> LinkedUser:
    access_token = client.store.get_user_value(user_id, KEY_TOKEN)
    if not access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="SuiteCRM account is not connected",
        )
    return LinkedUser(user_id=user_id, access_token=access_token, client=client)
