from __future__ import annotations

from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from crmlink.core.config import get_settings
from crmlink.main import create_app


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_metrics_endpoint_exposes_http_metrics() -> None:
    app = create_app()
    client = TestClient(app)

    assert client.get("/healthz").status_code == 200

    res = client.get("/metrics")
    assert res.status_code == 200
    assert "text/plain" in (res.headers.get("content-type") or "")

    body = res.text
    assert "crmlink_http_requests_total" in body
    assert "crmlink_http_request_duration_seconds" in body
    assert 'path="/healthz"' in body


def test_crm_and_poll_counters_are_exported(crm, crm_http, configured_store, linked_user, db_session) -> None:
    from crmlink.services.notifications import DbNotificationSink
    from crmlink.services.open_tickets import check_open_tickets_for_user
    from crmlink.services.store import load_credentials
    from crmlink.services.suitecrm.client import SuiteCRMClient

    me_ok = {"resource": "users/me", "outcome": "ok"}
    no_alerts = {"outcome": "no_alerts"}
    me_before = _sample("crmlink_crm_requests_total", me_ok)
    polls_before = _sample("crmlink_poll_outcomes_total", no_alerts)

    client = SuiteCRMClient(crm_http, store=configured_store, credentials=load_credentials(configured_store))
    check_open_tickets_for_user(
        client=client,
        sink=DbNotificationSink(db_session),
        user_id=linked_user,
        app_id="integration_suitecrm",
    )
    db_session.commit()

    assert _sample("crmlink_crm_requests_total", me_ok) == me_before + 1
    assert _sample("crmlink_poll_outcomes_total", no_alerts) == polls_before + 1

    body = TestClient(create_app()).get("/metrics").text
    assert "crmlink_crm_requests_total" in body
    assert "crmlink_poll_outcomes_total" in body


def test_metrics_endpoint_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_PROMETHEUS_METRICS", "false")
    get_settings.cache_clear()
    try:
        app = create_app()
        client = TestClient(app)
        assert client.get("/metrics").status_code == 404
    finally:
        get_settings.cache_clear()
