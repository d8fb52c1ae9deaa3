"""
Trusted Device Endpoints.
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from ..models import (
    TrustedDevice,
    TrustedDeviceList,
    DeviceRefreshResponse,
    DeviceRevokeRequest,
    DeviceRevokeResponse,
)
from ..deps import get_current_user, get_ledger, require_same_user, trust_cookie
from ...auth.devices import DeviceTrustLedger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dashboard/trusted-devices", tags=["Trusted Devices"])


@router.get("", response_model=TrustedDeviceList)
async def list_devices(
    user_id: Optional[str] = Query(None, max_length=64),
    user: Dict = Depends(get_current_user),
    ledger: DeviceTrustLedger = Depends(get_ledger),
):
    """List the signed-in user's trusted devices, newest first."""
    owner = require_same_user(user, user_id) if user_id else str(user["user_id"])
    devices = ledger.list_devices(owner)
    return TrustedDeviceList(devices=[TrustedDevice(**d) for d in devices])


@router.post("/refresh", response_model=DeviceRefreshResponse)
async def refresh(
    request: Request,
    ledger: DeviceTrustLedger = Depends(get_ledger),
):
    """
    Update last_seen for the device in the ``trusted_device`` cookie.

    Needs no session: the cookie itself identifies the device.
    """
    raw_token = trust_cookie(request)
    if not raw_token:
        return DeviceRefreshResponse(updated=False, reason="no cookie")

    touched = ledger.touch(raw_token)
    if touched is None:
        return DeviceRefreshResponse(updated=False, reason="no match")

    return DeviceRefreshResponse(updated=True, id=touched.device_id, user_id=touched.user_id)


@router.post("/revoke", response_model=DeviceRevokeResponse)
async def revoke(
    body: DeviceRevokeRequest,
    user: Dict = Depends(get_current_user),
    ledger: DeviceTrustLedger = Depends(get_ledger),
):
    """Revoke one device by id, or all of the user's devices."""
    owner = require_same_user(user, body.user_id)
    revoked = ledger.revoke(owner, body.id)
    return DeviceRevokeResponse(revoked=revoked)
