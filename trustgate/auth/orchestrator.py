"""
Two-factor login orchestration.

Ties together the login throttle, the credential store, the user's TOTP
configuration and the trusted device ledger:

    PASSWORD_PENDING -> PASSWORD_VERIFIED -> COMPLETE
                                          -> SECOND_FACTOR_REQUIRED
    SECOND_FACTOR_REQUIRED -> SECOND_FACTOR_VERIFIED -> COMPLETE

SECOND_FACTOR_REQUIRED is a result, not a wait: login() returns a challenge
token and the client finishes with verify_login() in a later request.
Storage and crypto failures are translated into trustgate.auth.errors.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..database.auth_db import AuthDB, SecondFactorConfig
from ..database.secret_cipher import SecretDecryptionError
from .challenges import LoginChallengeStore
from .devices import DeviceTrustLedger
from .errors import (
    ChallengeExpired,
    ConfigurationMissing,
    InvalidCode,
    InvalidCredentials,
    StoreUnavailable,
)
from .mfa import EnrollmentSetup, setup_mfa, verify_totp
from .throttle import LoginThrottle

logger = logging.getLogger(__name__)


class LoginState(str, Enum):
    PASSWORD_PENDING = "password_pending"
    PASSWORD_VERIFIED = "password_verified"
    SECOND_FACTOR_REQUIRED = "second_factor_required"
    SECOND_FACTOR_VERIFIED = "second_factor_verified"
    COMPLETE = "complete"


@dataclass
class LoginOutcome:
    """Where a login request ended up, plus whatever the client needs next."""
    state: LoginState
    user_id: str
    email: str
    session_token: Optional[str] = None
    expires_in: Optional[int] = None
    challenge_token: Optional[str] = None
    trust_token: Optional[str] = None
    trust_persisted: bool = False
    trail: List[LoginState] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.state is LoginState.COMPLETE


@dataclass
class EnrollmentResult:
    created_at: datetime
    trust_token: str
    trust_persisted: bool


class TwoFactorOrchestrator:
    """
    Login and second-factor state machine.

    Example usage:
        orchestrator = TwoFactorOrchestrator(db, ledger, throttle, challenges)
        outcome = orchestrator.login(email, password, origin="203.0.113.7")
        if outcome.state is LoginState.SECOND_FACTOR_REQUIRED:
            outcome = orchestrator.verify_login(
                outcome.user_id, outcome.challenge_token, code
            )
    """

    def __init__(
        self,
        db: AuthDB,
        ledger: DeviceTrustLedger,
        throttle: LoginThrottle,
        challenges: LoginChallengeStore,
        issuer: str = "TrustGate",
        session_hours: int = 24,
        fail_open: bool = True,
    ):
        self.db = db
        self.ledger = ledger
        self.throttle = throttle
        self.challenges = challenges
        self.issuer = issuer
        self.session_hours = session_hours
        self.fail_open = fail_open

    # ==========================================
    # Login
    # ==========================================

    def login(
        self,
        email: str,
        password: str,
        origin: str,
        device_token: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        """
        Password step of the login flow.

        Raises:
            ThrottleExceeded: Origin or account limit reached.
            InvalidCredentials: Unknown user, inactive user or wrong password.
            StoreUnavailable: Credential store failure.
        """
        trail = [LoginState.PASSWORD_PENDING]
        self.throttle.check(email, origin)

        try:
            user = self.db.verify_credentials(email, password)
        except SQLAlchemyError as e:
            logger.error(f"Credential lookup failed: {e}")
            raise StoreUnavailable() from e

        if user is None:
            logger.info(f"Failed login for {email.strip().lower()}")
            raise InvalidCredentials()

        trail.append(LoginState.PASSWORD_VERIFIED)
        user_id = str(user["user_id"])

        if self._second_factor_enabled(user_id):
            if self.ledger.is_trusted(user_id, device_token):
                self.ledger.touch(device_token)
            else:
                trail.append(LoginState.SECOND_FACTOR_REQUIRED)
                logger.info(f"Second factor required for user {user_id}")
                return LoginOutcome(
                    state=LoginState.SECOND_FACTOR_REQUIRED,
                    user_id=user_id,
                    email=user["email"],
                    challenge_token=self.challenges.issue(user_id),
                    trail=trail,
                )

        return self._complete(user_id, user["email"], trail, user_agent)

    def verify_login(
        self,
        user_id: str,
        challenge_token: str,
        code: str,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        """
        Second-factor step of the login flow.

        A wrong code leaves the challenge usable so the user can retry.

        Raises:
            ChallengeExpired: Challenge unknown, expired or for another user.
            ConfigurationMissing: User has no TOTP secret enrolled.
            InvalidCode: Code does not match.
            StoreUnavailable: Profile storage failure.
        """
        if self.challenges.resolve(challenge_token) != user_id:
            raise ChallengeExpired()

        trail = [LoginState.SECOND_FACTOR_REQUIRED]
        config = self._load_config(user_id)
        if config is None:
            raise ConfigurationMissing()

        if not verify_totp(config.secret, code):
            logger.info(f"Invalid second-factor code for user {user_id}")
            raise InvalidCode()

        # Only one request may spend a challenge, however many carried a valid code
        if not self.challenges.consume(challenge_token):
            raise ChallengeExpired()
        trail.append(LoginState.SECOND_FACTOR_VERIFIED)

        try:
            user = self.db.get_user_by_id(user_id)
        except SQLAlchemyError as e:
            logger.error(f"User lookup failed for {user_id}: {e}")
            raise StoreUnavailable() from e
        if user is None or not user["is_active"]:
            raise ChallengeExpired()

        issued = self.ledger.issue(user_id, user_agent)
        outcome = self._complete(user_id, user["email"], trail, user_agent)
        outcome.trust_token = issued.raw_token
        outcome.trust_persisted = issued.persisted
        return outcome

    def _complete(
        self,
        user_id: str,
        email: str,
        trail: List[LoginState],
        user_agent: Optional[str],
    ) -> LoginOutcome:
        try:
            session_token = self.db.create_session(
                user_id,
                device_fingerprint=user_agent,
                expires_hours=self.session_hours,
            )
            self.db.update_last_login(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Session creation failed for user {user_id}: {e}")
            raise StoreUnavailable() from e

        trail.append(LoginState.COMPLETE)
        logger.info(f"User logged in: {email}")
        return LoginOutcome(
            state=LoginState.COMPLETE,
            user_id=user_id,
            email=email,
            session_token=session_token,
            expires_in=self.session_hours * 3600,
            trail=trail,
        )

    def _second_factor_enabled(self, user_id: str) -> bool:
        """Whether login must consider a second factor; honours fail_open on lookup errors."""
        try:
            config = self.db.get_second_factor_config(user_id)
        except (SQLAlchemyError, SecretDecryptionError) as e:
            if self.fail_open:
                logger.error(f"2FA config lookup failed for user {user_id}, completing login without it: {e}")
                return False
            logger.error(f"2FA config lookup failed for user {user_id}: {e}")
            raise StoreUnavailable() from e
        return config is not None and config.enabled

    def _load_config(self, user_id: str) -> Optional[SecondFactorConfig]:
        try:
            return self.db.get_second_factor_config(user_id)
        except (SQLAlchemyError, SecretDecryptionError) as e:
            logger.error(f"2FA config lookup failed for user {user_id}: {e}")
            raise StoreUnavailable() from e

    # ==========================================
    # Enrollment / disable
    # ==========================================

    def begin_enrollment(self, user_id: str, email: str) -> EnrollmentSetup:
        """Generate a secret and QR code. Nothing is persisted until complete_enrollment()."""
        setup = setup_mfa(email, issuer=self.issuer)
        logger.info(f"2FA setup initiated for user {user_id}")
        return setup

    def complete_enrollment(
        self,
        user_id: str,
        secret: str,
        code: str,
        user_agent: Optional[str] = None,
    ) -> EnrollmentResult:
        """
        Verify the first code, persist the configuration and trust this device.

        Enrolling again while enabled replaces the previous secret.

        Raises:
            InvalidCode: Code does not match the secret.
            StoreUnavailable: Configuration could not be saved.
        """
        if not verify_totp(secret, code):
            raise InvalidCode()

        created_at = datetime.now(timezone.utc)
        try:
            self.db.set_second_factor_config(
                user_id,
                SecondFactorConfig(enabled=True, secret=secret, created_at=created_at),
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to save 2FA config for user {user_id}: {e}")
            raise StoreUnavailable() from e

        issued = self.ledger.issue(user_id, user_agent)
        logger.info(f"2FA enabled for user {user_id}")
        return EnrollmentResult(
            created_at=created_at,
            trust_token=issued.raw_token,
            trust_persisted=issued.persisted,
        )

    def disable(self, user_id: str) -> int:
        """
        Clear the TOTP configuration and revoke every trusted device.

        Returns:
            Number of devices revoked.
        """
        try:
            self.db.set_second_factor_config(user_id, None)
        except SQLAlchemyError as e:
            logger.error(f"Failed to clear 2FA config for user {user_id}: {e}")
            raise StoreUnavailable() from e

        revoked = self.ledger.revoke(user_id)
        logger.info(f"2FA disabled for user {user_id}, {revoked} device(s) revoked")
        return revoked

    def delete_account(self, user_id: str) -> None:
        """Revoke all devices, then deactivate the user (clears 2FA and sessions)."""
        self.ledger.revoke(user_id)
        try:
            self.db.deactivate_user(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete account {user_id}: {e}")
            raise StoreUnavailable() from e

    def second_factor_status(self, user_id: str, device_token: Optional[str] = None) -> Dict:
        """Profile view of the user's 2FA state. Never includes the secret."""
        config = self._load_config(user_id)
        totp = None
        if config is not None:
            totp = {"enabled": config.enabled, "created_at": config.created_at}
        return {
            "totp": totp,
            "trusted_device": self.ledger.is_trusted(user_id, device_token),
        }
