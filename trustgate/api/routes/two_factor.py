"""
Two-Factor Management Endpoints.

Enrollment (setup + verify) and disable for the signed-in user.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Request, Response

from ..models import (
    UserIdRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
    TotpStatus,
    SuccessResponse,
    ErrorResponse,
)
from ..deps import get_current_user, get_orchestrator, require_same_user
from ...auth.devices import clear_trust_cookie, set_trust_cookie
from ...auth.orchestrator import TwoFactorOrchestrator
from ...utils.config import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dashboard/2fa", tags=["Two-Factor"])


@router.post(
    "/setup",
    response_model=TwoFactorSetupResponse,
    responses={403: {"model": ErrorResponse, "description": "Not your account"}},
)
async def setup(
    body: UserIdRequest,
    user: Dict = Depends(get_current_user),
    orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator),
):
    """
    Start enrollment.

    Returns the secret, otpauth URI and a QR code. Nothing is stored until
    /dashboard/2fa/verify succeeds with a code for this secret.
    """
    user_id = require_same_user(user, body.user_id)
    enrollment = orchestrator.begin_enrollment(user_id, user["email"])

    return TwoFactorSetupResponse(
        secret=enrollment.secret,
        otpauth=enrollment.provisioning_uri,
        qr_data_url=enrollment.qr_code_base64,
    )


@router.post(
    "/verify",
    response_model=TwoFactorVerifyResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid code"},
        403: {"model": ErrorResponse, "description": "Not your account"},
    },
)
async def verify(
    body: TwoFactorVerifyRequest,
    request: Request,
    response: Response,
    user: Dict = Depends(get_current_user),
    orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator),
):
    """Finish enrollment and trust the enrolling browser."""
    user_id = require_same_user(user, body.user_id)
    result = orchestrator.complete_enrollment(
        user_id,
        body.secret,
        body.token,
        user_agent=request.headers.get("user-agent"),
    )

    set_trust_cookie(response, result.trust_token, secure=get_settings().is_production)

    return TwoFactorVerifyResponse(
        totp=TotpStatus(enabled=True, created_at=result.created_at),
    )


@router.post("/disable", response_model=SuccessResponse)
async def disable(
    body: UserIdRequest,
    response: Response,
    user: Dict = Depends(get_current_user),
    orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator),
):
    """Turn 2FA off. Every trusted device of the user is revoked."""
    user_id = require_same_user(user, body.user_id)
    orchestrator.disable(user_id)
    clear_trust_cookie(response, secure=get_settings().is_production)
    return SuccessResponse()
