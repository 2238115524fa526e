from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "crmlink_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "crmlink_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_HTTP_RATE_LIMITED_TOTAL = Counter(
    "crmlink_http_rate_limited_total",
    "Total HTTP requests blocked by rate limiting.",
    labelnames=("method", "path"),
)
_CRM_REQUESTS_TOTAL = Counter(
    "crmlink_crm_requests_total",
    "Requests sent to the SuiteCRM API, by resource and outcome.",
    labelnames=("resource", "outcome"),
)
_CRM_TOKEN_REFRESH_TOTAL = Counter(
    "crmlink_crm_token_refresh_total",
    "OAuth refresh-token exchanges against SuiteCRM.",
    labelnames=("outcome",),
)
_POLL_OUTCOMES_TOTAL = Counter(
    "crmlink_poll_outcomes_total",
    "Per-user open ticket poll results.",
    labelnames=("outcome",),
)
_NOTIFICATIONS_TOTAL = Counter(
    "crmlink_notifications_total",
    "Host notifications emitted.",
    labelnames=("subject",),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
    rate_limited: bool,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )
    if rate_limited:
        _HTTP_RATE_LIMITED_TOTAL.labels(method=safe_method, path=safe_path).inc()


def observe_crm_request(*, endpoint: str, outcome: str) -> None:
    # Keep label cardinality bounded: "module/Calls?filter..." -> "module/Calls".
    resource = endpoint.split("?", 1)[0]
    if resource.startswith("users/") and resource != "users/me":
        resource = "users/{id}"
    _CRM_REQUESTS_TOTAL.labels(resource=resource or "unknown", outcome=outcome).inc()


def observe_token_refresh(*, outcome: str) -> None:
    _CRM_TOKEN_REFRESH_TOTAL.labels(outcome=outcome).inc()


def observe_poll_outcome(*, outcome: str) -> None:
    _POLL_OUTCOMES_TOTAL.labels(outcome=outcome).inc()


def observe_notification(*, subject: str) -> None:
    _NOTIFICATIONS_TOTAL.labels(subject=subject).inc()
