from __future__ import annotations

from collections.abc import Generator

import httpx

from crmlink.core.config import get_settings

USER_AGENT = "Nextcloud SuiteCRM integration"


def new_http_client() -> httpx.Client:
    settings = get_settings()
    return httpx.Client(
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        headers={"User-Agent": USER_AGENT},
    )


def get_http_client() -> Generator[httpx.Client, None, None]:
    # Centralize HTTP client configuration (timeouts, etc) so we can override in tests.
    with new_http_client() as client:
        yield client
