"""
Authentication Endpoints.

Provides registration, the login throttle pre-check, password login,
login-time second-factor verification and logout.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ..models import (
    UserRegister,
    UserLogin,
    TokenResponse,
    LoginAttemptRequest,
    LoginAttemptResponse,
    RemainingAttempts,
    LoginResponse,
    VerifyLoginRequest,
    VerifyLoginResponse,
    ErrorResponse,
)
from ..deps import (
    get_db,
    get_current_user,
    get_throttle,
    get_orchestrator,
    client_origin,
    trust_cookie,
)
from ...auth.devices import set_trust_cookie
from ...auth.orchestrator import LoginState, TwoFactorOrchestrator
from ...auth.throttle import LoginThrottle
from ...database.auth_db import AuthDB, hash_password
from ...utils.config import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"model": ErrorResponse, "description": "Email already exists"},
        429: {"model": ErrorResponse, "description": "Too many requests from this IP"},
    },
)
async def register(
    user_data: UserRegister,
    request: Request,
    db: AuthDB = Depends(get_db),
    throttle: LoginThrottle = Depends(get_throttle),
):
    """
    Register a new user account.

    Returns an access token for immediate use. Counts against the
    per-origin throttle.
    """
    throttle.check(None, client_origin(request))

    password_hash = hash_password(user_data.password)

    try:
        user_id = db.create_user(
            email=user_data.email,
            password_hash=password_hash,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )

    session_hours = get_settings().session_hours
    session_token = db.create_session(
        user_id,
        device_fingerprint=request.headers.get("user-agent"),
        expires_hours=session_hours,
    )
    db.update_last_login(user_id)

    logger.info(f"New user registered: {user_data.email}")

    return TokenResponse(
        access_token=session_token,
        token_type="bearer",
        expires_in=session_hours * 3600,
        user_id=user_id,
        email=user_data.email.lower(),
        mfa_enabled=False,
    )


@router.post(
    "/login-attempt",
    response_model=LoginAttemptResponse,
    responses={
        429: {"model": ErrorResponse, "description": "Too many attempts (see Retry-After)"},
    },
)
async def login_attempt(
    body: LoginAttemptRequest,
    request: Request,
    throttle: LoginThrottle = Depends(get_throttle),
):
    """
    Throttle pre-check for clients that authenticate the password elsewhere.

    Counts one attempt for the caller's IP and, when given, the email.
    /auth/login applies the same throttle itself, so clients using it
    should not call this first.
    """
    decision = throttle.check(body.email, client_origin(request))
    return LoginAttemptResponse(
        ok=True,
        remaining=RemainingAttempts(
            ip=decision.remaining_origin,
            email=decision.remaining_account,
        ),
    )


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credentials"},
        429: {"model": ErrorResponse, "description": "Too many attempts (see Retry-After)"},
        503: {"model": ErrorResponse, "description": "Credential store unavailable"},
    },
)
async def login(
    credentials: UserLogin,
    request: Request,
    response: Response,
    orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator),
):
    """
    Password step of login.

    Returns a session right away when 2FA is off or the ``trusted_device``
    cookie matches this user. Otherwise returns status
    ``second_factor_required`` with a challenge token and the
    ``X-MFA-Required: true`` header.
    """
    outcome = orchestrator.login(
        credentials.email,
        credentials.password,
        origin=client_origin(request),
        device_token=trust_cookie(request),
        user_agent=request.headers.get("user-agent"),
    )

    if outcome.state is LoginState.SECOND_FACTOR_REQUIRED:
        response.headers["X-MFA-Required"] = "true"
        return LoginResponse(
            status=outcome.state.value,
            user_id=outcome.user_id,
            email=outcome.email,
            mfa_required=True,
            challenge_token=outcome.challenge_token,
        )

    return LoginResponse(
        status=outcome.state.value,
        user_id=outcome.user_id,
        email=outcome.email,
        access_token=outcome.session_token,
        expires_in=outcome.expires_in,
    )


@router.post(
    "/2fa/verify-login",
    response_model=VerifyLoginResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid code or 2FA not configured"},
        401: {"model": ErrorResponse, "description": "Login challenge expired"},
    },
)
async def verify_login(
    body: VerifyLoginRequest,
    request: Request,
    response: Response,
    orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator),
):
    """
    Second-factor step of login.

    On success issues the session and marks this browser as trusted via the
    ``trusted_device`` cookie. A wrong code can be retried with the same
    challenge.
    """
    outcome = orchestrator.verify_login(
        body.user_id,
        body.challenge_token,
        body.token,
        user_agent=request.headers.get("user-agent"),
    )

    set_trust_cookie(response, outcome.trust_token, secure=get_settings().is_production)

    return VerifyLoginResponse(
        access_token=outcome.session_token,
        expires_in=outcome.expires_in,
        user_id=outcome.user_id,
        email=outcome.email,
        trusted_device_persisted=outcome.trust_persisted,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    user: Dict = Depends(get_current_user),
    db: AuthDB = Depends(get_db),
):
    """
    Logout current session.

    The trusted device cookie is kept; it is not a session.
    """
    token = user.get("_session_token")
    if token:
        db.invalidate_session(token)
    logger.info(f"User logged out: {user['email']}")

    return None
