"""Pytest fixtures for realm login tests."""

from typing import Callable, Optional, Union

import pytest

from realm_login.logger import StructuredLogger
from realm_login.models import (
    EmailUpdateResponse,
    FailureKind,
    LoginPhase,
    LoginResponse,
    PingResponse,
    ProfileStatus,
    SendResponse,
    TotpEnrollResponse,
    TotpSessionResponse,
    VerifyEmailResponse,
)
from realm_login.services.cooldown_timer import ResendCooldownTimer
from realm_login.services.identity_client import ProviderError
from realm_login.services.login_flow import LoginFlowController
from realm_login.services.token_store import InMemoryTokenStore


Outcome = Union[object, ProviderError]


class FakeIdentityProvider:
    """Scriptable stand-in for ``IdentityProviderClient``.

    Every call is recorded in ``calls`` as ``(name, args)``.  Queue
    outcomes per operation with ``script``; a queued ``ProviderError`` is
    raised instead of returned.  Operations with nothing queued return a
    sensible success.  ``hooks[name]`` runs just before the outcome is
    delivered, which lets a test reset the flow mid-request.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.hooks: dict[str, Callable[[], None]] = {}
        self._scripts: dict[str, list[Outcome]] = {}
        self._defaults: dict[str, Callable[[], object]] = {
            "login": lambda: LoginResponse(
                mfa_required=True,
                methods=["email", "sms", "totp"],
                login_attempt_id="attempt-1",
            ),
            "send_email_otp": lambda: SendResponse(sent=True),
            "verify_email_otp": lambda: "email-token",
            "enroll_totp": lambda: TotpEnrollResponse(email_sent=True),
            "start_totp_session": lambda: TotpSessionResponse(
                redirect_to="https://idp.example.com/setup/totp",
            ),
            "verify_totp": lambda: "totp-token",
            "send_sms_otp": lambda: SendResponse(sent=True, cooldown=30),
            "verify_sms_otp": lambda: "sms-token",
            "set_email": lambda: EmailUpdateResponse(updated=True),
            "send_verify_email": lambda: VerifyEmailResponse(email_sent=True),
            "profile_status": lambda: ProfileStatus(email_verified=True, has_totp=True),
            "ping_secure": lambda: PingResponse(message="pong"),
        }

    def script(self, name: str, *outcomes: Outcome) -> None:
        self._scripts.setdefault(name, []).extend(outcomes)

    def fail(self, name: str, kind: FailureKind, status_code: Optional[int] = 400) -> None:
        self.script(name, ProviderError(kind, status_code))

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _call(self, name: str, *args: object) -> object:
        self.calls.append((name, args))
        hook = self.hooks.get(name)
        if hook is not None:
            hook()
        queued = self._scripts.get(name)
        outcome = queued.pop(0) if queued else self._defaults[name]()
        if isinstance(outcome, ProviderError):
            raise outcome
        return outcome

    def login(self, realm, username, password):
        return self._call("login", realm, username, password)

    def send_email_otp(self, login_attempt_id):
        return self._call("send_email_otp", login_attempt_id)

    def verify_email_otp(self, login_attempt_id, code):
        return self._call("verify_email_otp", login_attempt_id, code)

    def enroll_totp(self, login_attempt_id):
        return self._call("enroll_totp", login_attempt_id)

    def start_totp_session(self, login_attempt_id):
        return self._call("start_totp_session", login_attempt_id)

    def verify_totp(self, login_attempt_id, code):
        return self._call("verify_totp", login_attempt_id, code)

    def send_sms_otp(self, login_attempt_id):
        return self._call("send_sms_otp", login_attempt_id)

    def verify_sms_otp(self, login_attempt_id, code):
        return self._call("verify_sms_otp", login_attempt_id, code)

    def set_email(self, login_attempt_id, email):
        return self._call("set_email", login_attempt_id, email)

    def send_verify_email(self, login_attempt_id):
        return self._call("send_verify_email", login_attempt_id)

    def profile_status(self, login_attempt_id):
        return self._call("profile_status", login_attempt_id)

    def ping_secure(self, token):
        return self._call("ping_secure", token)


@pytest.fixture(scope="session")
def logger() -> StructuredLogger:
    """Stream-only logger shared by every test."""
    return StructuredLogger(name="realm_login.tests", log_file="")


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def timer(logger):
    """Timer whose worker never fires during a test; drive it with ``tick()``."""
    cooldown = ResendCooldownTimer(logger=logger, tick_interval_s=3600)
    yield cooldown
    cooldown.stop()


@pytest.fixture
def flow(provider, token_store, timer, logger) -> LoginFlowController:
    return LoginFlowController(
        provider=provider,
        token_store=token_store,
        timer=timer,
        logger=logger,
    )


@pytest.fixture
def logged_in(flow, provider):
    """Factory: log in with the given methods and ``needs`` flags."""

    def _login(methods=("email", "sms", "totp"), needs=None, attempt_id="attempt-1"):
        provider.script(
            "login",
            LoginResponse.model_validate({
                "mfaRequired": True,
                "methods": list(methods),
                "loginAttemptId": attempt_id,
                "needs": needs,
            }),
        )
        result = flow.submit_credentials("acme", "alice", "s3cret")
        assert result.success
        return result

    return _login


@pytest.fixture
def at_method(flow, logged_in):
    """Factory: log in and choose *method*, landing in its entry phase."""

    def _choose(method, methods=("email", "sms", "totp", "msft_totp")):
        logged_in(methods=methods)
        assert flow.phase == LoginPhase.METHOD_SELECTION
        result = flow.choose_method(method)
        assert result.success
        return result

    return _choose


@pytest.fixture
def reach(flow, logged_in, at_method):
    """Factory: drive a fresh controller into *phase*."""

    def _reach(phase):
        if phase == LoginPhase.EMAIL_SETUP_REQUIRED:
            logged_in(needs={"emailMissing": True})
        elif phase == LoginPhase.EMAIL_VERIFICATION_REQUIRED:
            logged_in(needs={"verifyEmail": True})
        elif phase == LoginPhase.METHOD_SELECTION:
            logged_in()
        elif phase == LoginPhase.EMAIL_OTP_ENTRY:
            at_method("email")
        elif phase == LoginPhase.SMS_OTP_ENTRY:
            at_method("sms")
        elif phase == LoginPhase.TOTP_ENTRY:
            at_method("totp")
        elif phase == LoginPhase.AUTHENTICATED:
            at_method("email")
            assert flow.verify_code("123456").success
        assert flow.phase == phase

    return _reach
