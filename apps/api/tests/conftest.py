from __future__ import annotations

import base64
import os
import tempfile
import uuid
from contextlib import suppress
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import delete
from sqlalchemy.orm import Session

CRM_BASE_URL = "https://crm.example.test"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


@pytest.fixture(scope="session", autouse=True)
def _test_database() -> None:
    # Every test session gets a throwaway SQLite file built from the ORM metadata.
    tmp_dir = Path(tempfile.mkdtemp(prefix="crmlink_test_"))
    db_path = tmp_dir / f"crmlink_test_{uuid.uuid4().hex}.db"

    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    os.environ["APP_ENV"] = "test"
    os.environ["ENCRYPTION_KEY_BASE64"] = base64.b64encode(b"k" * 32).decode("ascii")
    os.environ["ADMIN_USER_IDS"] = "admin"
    os.environ["RATE_LIMIT_REQUESTS_PER_MINUTE"] = "0"

    # Clear cached settings/engines so imports inside the test session use the test DB.
    from crmlink.core.config import get_settings
    from crmlink.db.session import get_engine, get_sessionmaker
    from crmlink.models import Base

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()

    Base.metadata.create_all(get_engine())

    yield

    with suppress(Exception):
        get_engine().dispose()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()
    get_settings.cache_clear()
    with suppress(OSError):
        db_path.unlink()
        tmp_dir.rmdir()


@pytest.fixture(autouse=True)
def _clean_tables() -> None:
    yield
    from crmlink.db.session import get_sessionmaker
    from crmlink.models import Base

    session = get_sessionmaker()()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(delete(table))
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def db_session() -> Session:
    from crmlink.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakeSuiteCRM:
    """In-memory SuiteCRM V8 API served through `httpx.MockTransport`."""

    def __init__(self) -> None:
        self.base_url = CRM_BASE_URL
        self.client_id = "client-id"
        self.client_secret = "client-secret"
        self.valid_access_tokens: set[str] = {"access-1"}
        self.refresh_token = "refresh-1"
        self.refresh_enabled = True
        self.reject_all_api = False
        self.alerts_status: int | None = None
        self.login = ("jdoe", "s3cret")
        self.me: dict | None = {
            "id": "crm-user-1",
            "attributes": {"user_name": "jdoe", "first_name": "Jane", "last_name": "Doe"},
        }
        self.alerts: list[dict] = []
        self.records: dict[tuple[str, str], dict] = {}
        self.tickets: dict[str, dict] = {}
        self.ticket_states: list[dict] = []
        self.ticket_priorities: list[dict] = []
        self.users: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.token_requests: list[dict[str, str]] = []
        self._issued = 1

    def add_alert(
        self,
        alert_id: str,
        *,
        url_redirect: str,
        owner_id: str | None = None,
        state_id: int | None = None,
        updated_at: str | None = None,
    ) -> None:
        attributes: dict = {
            "assigned_user_id": "crm-user-1",
            "is_read": "0",
            "url_redirect": url_redirect,
        }
        if owner_id is not None:
            attributes["owner_id"] = owner_id
        if state_id is not None:
            attributes["state_id"] = state_id
        if updated_at is not None:
            attributes["date_modified"] = updated_at
        self.alerts.append({"type": "Alerts", "id": alert_id, "attributes": attributes})

    def add_record(self, module: str, record_id: str, *, date_start: str | None) -> None:
        attributes = {} if date_start is None else {"date_start": date_start}
        self.records[(module, record_id)] = {"type": module, "id": record_id, "attributes": attributes}

    def api_requests(self, path_suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/Api/access_token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}
            self.token_requests.append(form)
            return self._token(form)

        auth = request.headers.get("Authorization") or ""
        token = auth[len("Bearer ") :] if auth.startswith("Bearer ") else ""
        if self.reject_all_api or token not in self.valid_access_tokens:
            return httpx.Response(401, json={"errors": {"status": 401, "title": "Unauthorized"}})

        if path == "/index.php" and request.url.params.get("entryPoint") == "download":
            return httpx.Response(200, content=PNG_BYTES)

        prefix = "/Api/index.php/V8/"
        if not path.startswith(prefix):
            return httpx.Response(404, json={"error": "not_found"})
        endpoint = path[len(prefix) :]
        params = request.url.params

        if endpoint == "users/me":
            if self.me is None:
                return httpx.Response(200, json={"data": {"attributes": {}}})
            return httpx.Response(200, json={"data": {"type": "Users", **self.me}})

        if endpoint == "module/Alerts":
            if self.alerts_status is not None:
                return httpx.Response(self.alerts_status, json={"errors": {"status": self.alerts_status}})
            assigned = params.get("filter[assigned_user_id][eq]")
            items = [
                a
                for a in self.alerts
                if a["attributes"]["assigned_user_id"] == assigned
                and params.get("filter[is_read][eq]") == "0"
            ]
            return httpx.Response(200, json={"data": items})

        if endpoint in {"module/Calls", "module/Meetings"}:
            module = endpoint.split("/", 1)[1]
            record = self.records.get((module, params.get("filter[id][eq]") or ""))
            return httpx.Response(200, json={"data": [record] if record else []})

        if endpoint == "tickets/search":
            return httpx.Response(200, json={"assets": {"Ticket": self.tickets}})
        if endpoint == "ticket_states":
            return httpx.Response(200, json=self.ticket_states)
        if endpoint == "ticket_priorities":
            return httpx.Response(200, json=self.ticket_priorities)
        if endpoint.startswith("users/"):
            user = self.users.get(endpoint.split("/", 1)[1])
            if user is None:
                return httpx.Response(404, json={"error": "not_found"})
            return httpx.Response(200, json=user)

        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, form: dict[str, str]) -> httpx.Response:
        if form.get("client_id") != self.client_id or form.get("client_secret") != self.client_secret:
            return httpx.Response(401, json={"error": "invalid_client"})

        grant = form.get("grant_type")
        if grant == "refresh_token":
            if not self.refresh_enabled or form.get("refresh_token") != self.refresh_token:
                return httpx.Response(400, json={"error": "invalid_grant"})
        elif grant == "password":
            if (form.get("username"), form.get("password")) != self.login:
                return httpx.Response(400, json={"error": "invalid_grant"})
        else:
            return httpx.Response(400, json={"error": "unsupported_grant_type"})

        self._issued += 1
        access_token = f"access-{self._issued}"
        self.refresh_token = f"refresh-{self._issued}"
        self.valid_access_tokens = {access_token}
        return httpx.Response(
            200,
            json={
                "token_type": "Bearer",
                "expires_in": 3600,
                "access_token": access_token,
                "refresh_token": self.refresh_token,
            },
        )


@pytest.fixture()
def crm() -> FakeSuiteCRM:
    return FakeSuiteCRM()


@pytest.fixture()
def crm_http(crm: FakeSuiteCRM) -> httpx.Client:
    client = httpx.Client(transport=crm.transport(), timeout=10.0)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture()
def configured_store(db_session: Session, crm: FakeSuiteCRM):
    from crmlink.services.store import (
        KEY_CLIENT_ID,
        KEY_CLIENT_SECRET,
        KEY_INSTANCE_URL,
        DbTokenStore,
    )

    store = DbTokenStore(db_session)
    store.set_app_value(KEY_CLIENT_ID, crm.client_id)
    store.set_app_value(KEY_CLIENT_SECRET, crm.client_secret)
    store.set_app_value(KEY_INSTANCE_URL, crm.base_url)
    db_session.commit()
    return store


def _link_user(store, user_id: str, *, access_token: str = "access-1", refresh_token: str = "refresh-1") -> None:
    from crmlink.services.store import KEY_CRM_USER_ID, KEY_REFRESH_TOKEN, KEY_TOKEN

    store.set_user_value(user_id, KEY_TOKEN, access_token)
    store.set_user_value(user_id, KEY_REFRESH_TOKEN, refresh_token)
    store.set_user_value(user_id, KEY_CRM_USER_ID, "crm-user-1")
    store.session.commit()


@pytest.fixture()
def link_user():
    return _link_user


@pytest.fixture()
def linked_user(configured_store) -> str:
    _link_user(configured_store, "alice")
    return "alice"
