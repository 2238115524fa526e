from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class AdminConfigUpdate(BaseModel):
    client_id: str | None = None
    client_secret: str | None = None
    oauth_instance_url: str | None = None


class UserConfigUpdate(BaseModel):
    values: dict[str, str]


class StatusResponse(BaseModel):
    status: str


class OAuthConnectRequest(BaseModel):
    login: str = Field(min_length=1)
    password: str = Field(min_length=1)


class OAuthConnectResponse(BaseModel):
    user_id: str
    user_name: str


class UrlResponse(BaseModel):
    url: str


class AlertOut(BaseModel):
    id: str
    type: str
    record_id: str
    url_redirect: str
    date_start: datetime
    assigned_user_id: str | None
    is_read: bool
    updated_at: datetime | None


class HostNotificationOut(BaseModel):
    id: str
    subject: str
    message: str
    link: str
    notified_at: datetime


class UserConfigOut(BaseModel):
    connected: bool
    user_name: str
    search_enabled: bool
    navigation_enabled: bool
