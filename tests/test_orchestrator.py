"""
Tests for the two-factor login orchestrator.

Covers:
- Password step with and without 2FA, trusted devices
- verify_login challenge handling and retries
- Failure policies: config lookup fails open, device trust fails closed
- Enrollment, disable and account deletion
"""
from unittest.mock import MagicMock

import pyotp
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from trustgate.auth.errors import (
    ChallengeExpired,
    ConfigurationMissing,
    InvalidCode,
    InvalidCredentials,
    StoreUnavailable,
    ThrottleExceeded,
)
from trustgate.auth.orchestrator import LoginState, TwoFactorOrchestrator
from trustgate.database.auth_db import AuthDB, SecondFactorConfig, hash_password
from trustgate.database.secret_cipher import TotpSecretCipher

ORIGIN = "198.51.100.7"


def db_error():
    return OperationalError("SELECT", {}, Exception("connection lost"))


def code_for(secret: str) -> str:
    return pyotp.TOTP(secret).now()


class TestPasswordStep:

    def test_no_second_factor_completes(self, orchestrator, auth_db, user):
        outcome = orchestrator.login(user["email"], user["password"], ORIGIN)

        assert outcome.state is LoginState.COMPLETE
        assert outcome.trail == [
            LoginState.PASSWORD_PENDING,
            LoginState.PASSWORD_VERIFIED,
            LoginState.COMPLETE,
        ]
        assert outcome.challenge_token is None
        assert auth_db.validate_session(outcome.session_token)["user_id"] == user["user_id"]

    def test_enabled_without_cookie_requires_second_factor(self, orchestrator, enrolled_user):
        outcome = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)

        assert outcome.state is LoginState.SECOND_FACTOR_REQUIRED
        assert outcome.challenge_token
        assert outcome.session_token is None
        assert outcome.trail[-1] is LoginState.SECOND_FACTOR_REQUIRED

    def test_trusted_device_skips_second_factor(self, orchestrator, ledger, enrolled_user):
        issued = ledger.issue(enrolled_user["user_id"], "Mozilla/5.0")

        outcome = orchestrator.login(
            enrolled_user["email"], enrolled_user["password"], ORIGIN, device_token=issued.raw_token
        )

        assert outcome.state is LoginState.COMPLETE
        assert LoginState.SECOND_FACTOR_REQUIRED not in outcome.trail

    def test_other_users_device_does_not_count(self, orchestrator, ledger, enrolled_user, other_user):
        issued = ledger.issue(other_user["user_id"], "Mozilla/5.0")

        outcome = orchestrator.login(
            enrolled_user["email"], enrolled_user["password"], ORIGIN, device_token=issued.raw_token
        )

        assert outcome.state is LoginState.SECOND_FACTOR_REQUIRED

    def test_email_is_case_insensitive(self, orchestrator, user):
        outcome = orchestrator.login("  ALICE@example.com", user["password"], ORIGIN)

        assert outcome.complete

    def test_wrong_password(self, orchestrator, user):
        with pytest.raises(InvalidCredentials):
            orchestrator.login(user["email"], "wrong password", ORIGIN)

    def test_unknown_user(self, orchestrator):
        with pytest.raises(InvalidCredentials):
            orchestrator.login("nobody@example.com", "whatever", ORIGIN)

    def test_inactive_user(self, orchestrator, auth_db, user):
        auth_db.deactivate_user(user["user_id"])

        with pytest.raises(InvalidCredentials):
            orchestrator.login(user["email"], user["password"], ORIGIN)

    def test_sixth_attempt_throttled_even_with_correct_password(self, orchestrator, user):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                orchestrator.login(user["email"], "wrong password", ORIGIN)

        with pytest.raises(ThrottleExceeded) as exc_info:
            orchestrator.login(user["email"], user["password"], ORIGIN)

        assert exc_info.value.retry_after == 15 * 60

    def test_credential_store_failure(self, orchestrator, auth_db, user, monkeypatch):
        monkeypatch.setattr(auth_db, "verify_credentials", MagicMock(side_effect=db_error()))

        with pytest.raises(StoreUnavailable):
            orchestrator.login(user["email"], user["password"], ORIGIN)


class TestSecondFactorStep:

    def test_full_challenge_flow(self, orchestrator, ledger, auth_db, enrolled_user):
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)

        outcome = orchestrator.verify_login(
            enrolled_user["user_id"], first.challenge_token, code_for(enrolled_user["secret"]), "Mozilla/5.0"
        )

        assert outcome.state is LoginState.COMPLETE
        assert outcome.trail == [
            LoginState.SECOND_FACTOR_REQUIRED,
            LoginState.SECOND_FACTOR_VERIFIED,
            LoginState.COMPLETE,
        ]
        assert outcome.trust_persisted
        assert ledger.is_trusted(enrolled_user["user_id"], outcome.trust_token)
        assert auth_db.validate_session(outcome.session_token) is not None

    def test_same_browser_retry_completes_directly(self, orchestrator, enrolled_user):
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)
        verified = orchestrator.verify_login(
            enrolled_user["user_id"], first.challenge_token, code_for(enrolled_user["secret"])
        )

        again = orchestrator.login(
            enrolled_user["email"], enrolled_user["password"], ORIGIN, device_token=verified.trust_token
        )

        assert again.state is LoginState.COMPLETE

    def test_wrong_code_keeps_challenge(self, orchestrator, enrolled_user):
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)
        good = code_for(enrolled_user["secret"])
        bad = "000000" if good != "000000" else "111111"

        with pytest.raises(InvalidCode):
            orchestrator.verify_login(enrolled_user["user_id"], first.challenge_token, bad)

        outcome = orchestrator.verify_login(enrolled_user["user_id"], first.challenge_token, good)
        assert outcome.complete

    def test_challenge_is_single_use(self, orchestrator, enrolled_user):
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)
        code = code_for(enrolled_user["secret"])
        orchestrator.verify_login(enrolled_user["user_id"], first.challenge_token, code)

        with pytest.raises(ChallengeExpired):
            orchestrator.verify_login(enrolled_user["user_id"], first.challenge_token, code)

    def test_concurrent_verify_spends_challenge_once(
        self, orchestrator, challenges, auth_db, enrolled_user, monkeypatch
    ):
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)
        token = first.challenge_token

        def code_checked_while_other_request_wins(secret, code):
            # The parallel request with the same challenge finishes first
            assert challenges.consume(token) is True
            return True

        monkeypatch.setattr(
            "trustgate.auth.orchestrator.verify_totp", code_checked_while_other_request_wins
        )

        with pytest.raises(ChallengeExpired):
            orchestrator.verify_login(enrolled_user["user_id"], token, "123456")

        with auth_db.get_session() as session:
            sessions = session.execute(
                text("SELECT COUNT(*) FROM sessions WHERE user_id = :u"),
                {"u": enrolled_user["user_id"]},
            ).scalar()
        assert sessions == 0

    def test_challenge_bound_to_user(self, orchestrator, enrolled_user, other_user, enroll):
        other_secret = enroll(other_user["user_id"])
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)

        with pytest.raises(ChallengeExpired):
            orchestrator.verify_login(other_user["user_id"], first.challenge_token, code_for(other_secret))

    def test_unknown_challenge(self, orchestrator, enrolled_user):
        with pytest.raises(ChallengeExpired):
            orchestrator.verify_login(enrolled_user["user_id"], "made-up", code_for(enrolled_user["secret"]))

    def test_challenge_expires(self, orchestrator, clock, enrolled_user):
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)
        clock.advance(301)

        with pytest.raises(ChallengeExpired):
            orchestrator.verify_login(
                enrolled_user["user_id"], first.challenge_token, code_for(enrolled_user["secret"])
            )

    def test_configuration_missing(self, orchestrator, challenges, user):
        challenge = challenges.issue(user["user_id"])

        with pytest.raises(ConfigurationMissing):
            orchestrator.verify_login(user["user_id"], challenge, "123456")

    def test_missing_ledger_still_completes(self, orchestrator, missing_ledger, enrolled_user):
        first = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)
        assert first.state is LoginState.SECOND_FACTOR_REQUIRED

        outcome = orchestrator.verify_login(
            enrolled_user["user_id"], first.challenge_token, code_for(enrolled_user["secret"])
        )

        assert outcome.complete
        assert outcome.trust_token
        assert not outcome.trust_persisted


class TestFailurePolicies:

    def test_config_lookup_failure_fails_open(self, orchestrator, auth_db, enrolled_user, monkeypatch):
        monkeypatch.setattr(auth_db, "get_second_factor_config", MagicMock(side_effect=db_error()))

        outcome = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)

        assert outcome.state is LoginState.COMPLETE

    def test_config_lookup_failure_fail_closed_option(
        self, auth_db, ledger, throttle, challenges, enrolled_user, monkeypatch
    ):
        orchestrator = TwoFactorOrchestrator(auth_db, ledger, throttle, challenges, fail_open=False)
        monkeypatch.setattr(auth_db, "get_second_factor_config", MagicMock(side_effect=db_error()))

        with pytest.raises(StoreUnavailable):
            orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)

    def test_undecryptable_secret_fails_open(self, orchestrator, auth_db, user):
        auth_db.cipher = TotpSecretCipher(Fernet.generate_key())
        auth_db.set_second_factor_config(
            user["user_id"],
            SecondFactorConfig(enabled=True, secret=pyotp.random_base32(), created_at=None),
        )
        auth_db.cipher = TotpSecretCipher(Fernet.generate_key())

        outcome = orchestrator.login(user["email"], user["password"], ORIGIN)

        assert outcome.complete

    def test_device_lookup_failure_fails_closed(self, orchestrator, auth_db, ledger, enrolled_user, monkeypatch):
        issued = ledger.issue(enrolled_user["user_id"], "Mozilla/5.0")
        monkeypatch.setattr(auth_db, "find_trusted_device", MagicMock(side_effect=db_error()))

        outcome = orchestrator.login(
            enrolled_user["email"], enrolled_user["password"], ORIGIN, device_token=issued.raw_token
        )

        assert outcome.state is LoginState.SECOND_FACTOR_REQUIRED


class TestEnrollment:

    def test_begin_does_not_persist(self, orchestrator, auth_db, user):
        setup = orchestrator.begin_enrollment(user["user_id"], user["email"])

        assert setup.secret
        assert "TrustGate%20Test" in setup.provisioning_uri
        assert auth_db.get_second_factor_config(user["user_id"]) is None

    def test_complete_persists_and_trusts(self, orchestrator, auth_db, ledger, user):
        setup = orchestrator.begin_enrollment(user["user_id"], user["email"])

        result = orchestrator.complete_enrollment(
            user["user_id"], setup.secret, code_for(setup.secret), "Mozilla/5.0"
        )

        config = auth_db.get_second_factor_config(user["user_id"])
        assert config.enabled
        assert config.secret == setup.secret
        assert result.trust_persisted
        assert ledger.is_trusted(user["user_id"], result.trust_token)

    def test_wrong_code_persists_nothing(self, orchestrator, auth_db, ledger, user):
        setup = orchestrator.begin_enrollment(user["user_id"], user["email"])
        good = code_for(setup.secret)
        bad = "000000" if good != "000000" else "111111"

        with pytest.raises(InvalidCode):
            orchestrator.complete_enrollment(user["user_id"], setup.secret, bad)

        assert auth_db.get_second_factor_config(user["user_id"]) is None
        assert ledger.list_devices(user["user_id"]) == []

    def test_reenrollment_replaces_secret(self, orchestrator, auth_db, enrolled_user):
        setup = orchestrator.begin_enrollment(enrolled_user["user_id"], enrolled_user["email"])
        orchestrator.complete_enrollment(enrolled_user["user_id"], setup.secret, code_for(setup.secret))

        assert auth_db.get_second_factor_config(enrolled_user["user_id"]).secret == setup.secret

    def test_config_write_failure(self, orchestrator, auth_db, user, monkeypatch):
        monkeypatch.setattr(auth_db, "set_second_factor_config", MagicMock(side_effect=db_error()))
        secret = pyotp.random_base32()

        with pytest.raises(StoreUnavailable):
            orchestrator.complete_enrollment(user["user_id"], secret, code_for(secret))


class TestDisableAndDelete:

    def test_disable_revokes_all_devices(self, orchestrator, auth_db, ledger, enrolled_user):
        for _ in range(3):
            ledger.issue(enrolled_user["user_id"], "Mozilla/5.0")

        revoked = orchestrator.disable(enrolled_user["user_id"])

        assert revoked == 3
        assert ledger.list_devices(enrolled_user["user_id"]) == []
        assert auth_db.get_second_factor_config(enrolled_user["user_id"]) is None

    def test_login_after_disable_needs_no_code(self, orchestrator, enrolled_user):
        orchestrator.disable(enrolled_user["user_id"])

        outcome = orchestrator.login(enrolled_user["email"], enrolled_user["password"], ORIGIN)

        assert outcome.complete

    def test_delete_account(self, orchestrator, auth_db, ledger, enrolled_user):
        ledger.issue(enrolled_user["user_id"], "Mozilla/5.0")
        session = auth_db.create_session(enrolled_user["user_id"])

        orchestrator.delete_account(enrolled_user["user_id"])

        assert ledger.list_devices(enrolled_user["user_id"]) == []
        assert auth_db.validate_session(session) is None
        assert auth_db.get_second_factor_config(enrolled_user["user_id"]) is None
        assert auth_db.get_user_by_id(enrolled_user["user_id"])["is_active"] is False


class TestStatus:

    def test_status_never_contains_secret(self, orchestrator, ledger, enrolled_user):
        issued = ledger.issue(enrolled_user["user_id"], "Mozilla/5.0")

        status = orchestrator.second_factor_status(enrolled_user["user_id"], issued.raw_token)

        assert status["totp"]["enabled"] is True
        assert status["trusted_device"] is True
        assert enrolled_user["secret"] not in repr(status)

    def test_status_without_config(self, orchestrator, user):
        status = orchestrator.second_factor_status(user["user_id"])

        assert status == {"totp": None, "trusted_device": False}


class TestSecretAtRest:

    def test_secret_encrypted_in_storage(self, user):
        db = AuthDB("sqlite://", cipher=TotpSecretCipher(Fernet.generate_key()))
        db.init_schema()
        user_id = db.create_user(user["email"], hash_password("irrelevant", rounds=4))
        secret = pyotp.random_base32()

        db.set_second_factor_config(user_id, SecondFactorConfig(enabled=True, secret=secret, created_at=None))

        with db.get_session() as session:
            stored = session.execute(
                text("SELECT totp_secret FROM users WHERE user_id = :id"), {"id": user_id}
            ).scalar()
        assert stored.startswith("enc:")
        assert secret not in stored
        assert db.get_second_factor_config(user_id).secret == secret
