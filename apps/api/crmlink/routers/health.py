from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from crmlink.core.deps import get_store
from crmlink.services.store import DbTokenStore, load_credentials

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readyz(store: DbTokenStore = Depends(get_store)) -> dict[str, object]:
    # Reading the app config doubles as the database probe.
    try:
        credentials = load_credentials(store)
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database not ready",
        ) from e
    return {"status": "ready", "suitecrm_configured": credentials.is_complete}
