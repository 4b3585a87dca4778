"""Notification, device and routing schemas."""

from enum import Enum

from pydantic import BaseModel, Field


class Platform(str, Enum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"


class DeviceRegisterRequest(BaseModel):
    platform: Platform
    token: str = Field(..., min_length=1, max_length=512)


class DeviceResponse(BaseModel):
    id: str
    platform: str
    token: str
    last_used_at: str

    model_config = {"from_attributes": True}


class NotificationResponse(BaseModel):
    id: str
    title: str
    message: str
    type: str
    target_audience: str
    is_active: bool
    scheduled_at: str | None = None
    expires_at: str | None = None
    created_at: str
    updated_at: str


class UserNotificationResponse(BaseModel):
    id: str
    user_id: str
    notification_id: str
    is_read: bool
    read_at: str | None
    created_at: str
    notification: NotificationResponse | None = None


class UnreadCountResponse(BaseModel):
    count: int


class NotificationActionRequest(BaseModel):
    """Tap payload as forwarded by a client. Fields are not trusted."""

    link: str | None = Field(None, max_length=2048)
    notification_id: str | None = Field(None, max_length=255)


class DestinationResponse(BaseModel):
    kind: str
    target: str
