"""
Account Endpoints.

Profile view and account deletion.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ..models import ProfileResponse, TotpStatus, UserIdRequest, SuccessResponse, ErrorResponse
from ..deps import get_current_user, get_db, get_orchestrator, require_same_user, trust_cookie
from ...auth.devices import clear_trust_cookie
from ...auth.orchestrator import TwoFactorOrchestrator
from ...database.auth_db import AuthDB
from ...utils.config import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dashboard", tags=["Account"])


@router.get("/profile", response_model=ProfileResponse)
async def profile(
    request: Request,
    user: Dict = Depends(get_current_user),
    db: AuthDB = Depends(get_db),
    orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator),
):
    """
    Get the signed-in user's profile.

    Includes 2FA state (never the secret) and whether this browser is a
    trusted device.
    """
    user_id = str(user["user_id"])
    full_user = db.get_user_by_id(user_id)
    if full_user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    state = orchestrator.second_factor_status(user_id, trust_cookie(request))
    totp = TotpStatus(**state["totp"]) if state["totp"] else None

    return ProfileResponse(
        user_id=user_id,
        email=full_user["email"],
        totp=totp,
        trusted_device=state["trusted_device"],
        created_at=full_user["created_at"],
        last_login=full_user["last_login"],
    )


@router.post(
    "/delete-account",
    response_model=SuccessResponse,
    responses={403: {"model": ErrorResponse, "description": "Not your account"}},
)
async def delete_account(
    body: UserIdRequest,
    response: Response,
    user: Dict = Depends(get_current_user),
    orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator),
):
    """
    Delete the signed-in user's account.

    Revokes all trusted devices, clears 2FA, ends every session.
    """
    user_id = require_same_user(user, body.user_id)
    orchestrator.delete_account(user_id)
    clear_trust_cookie(response, secure=get_settings().is_production)
    logger.info(f"Account deleted: {user['email']}")
    return SuccessResponse()
