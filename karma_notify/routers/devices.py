"""Device token registration for push notifications.

Store failures surface as TokenStoreError and are mapped to 503/500 by
ErrorHandlerMiddleware.
"""

import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response

from karma_notify.dependencies import get_current_user_id, get_token_store
from karma_notify.schemas.notification import DeviceRegisterRequest, DeviceResponse
from karma_notify.services.token_store import TokenStore

router = APIRouter(prefix="/devices", tags=["devices"])


@router.post("/register", status_code=204)
async def register_device(
    body: DeviceRegisterRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    store: TokenStore = Depends(get_token_store),
):
    """Register a device token for the current user.

    Registering the same token again refreshes last_used_at instead of
    creating a second row.
    """
    await store.upsert(user_id, body.token, body.platform.value, datetime.now(timezone.utc))
    return Response(status_code=204)


@router.get("", response_model=list[DeviceResponse])
async def list_devices(
    user_id: uuid.UUID = Depends(get_current_user_id),
    store: TokenStore = Depends(get_token_store),
):
    devices = await store.list_for_user(user_id)
    return [
        DeviceResponse(
            id=str(d.id),
            platform=d.platform,
            token=d.token,
            last_used_at=d.last_used_at.isoformat(),
        )
        for d in devices
    ]


@router.delete("/{token}", status_code=204)
async def unregister_device(
    token: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    store: TokenStore = Depends(get_token_store),
):
    """Remove the current user's row for this token (logout)."""
    await store.delete(user_id, token)
    return Response(status_code=204)
