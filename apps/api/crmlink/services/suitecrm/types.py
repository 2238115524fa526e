from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

T = TypeVar("T")


class ApiErrorKind(enum.StrEnum):
    bad_credentials = "bad_credentials"
    # Only seen inside the client; a failed refresh surfaces as transport_error.
    auth_expired = "auth_expired"
    transport_error = "transport_error"
    malformed_response = "malformed_response"


@dataclass(frozen=True)
class ApiError:
    kind: ApiErrorKind
    message: str
    status_code: int | None = None


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: ApiError


ApiResult = Ok[T] | Err


def bad_credentials(status_code: int) -> Err:
    return Err(ApiError(ApiErrorKind.bad_credentials, "Bad credentials", status_code))


def transport_error(message: str) -> Err:
    return Err(ApiError(ApiErrorKind.transport_error, message))


def malformed(message: str) -> Err:
    return Err(ApiError(ApiErrorKind.malformed_response, message))


class AlertKind(enum.StrEnum):
    call = "call"
    meeting = "meeting"


@dataclass(frozen=True)
class Alert:
    id: str
    assigned_user_id: str | None
    is_read: bool
    url_redirect: str
    kind: AlertKind
    record_id: str
    date_start: datetime
    owner_id: str | None = None
    state_id: int | None = None
    updated_at: datetime | None = None
    attributes: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class CrmUser:
    id: str
    user_name: str | None
    first_name: str | None
    last_name: str | None

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.user_name or self.id


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str | None
