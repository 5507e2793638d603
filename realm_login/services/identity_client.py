"""
Identity Provider Client.

Thin synchronous HTTP client for the identity provider's login and
multi-factor endpoints.  Every call either returns a typed response
model or raises :class:`ProviderError` carrying a closed
:class:`FailureKind`; raw provider payloads never leave this module.

Error decoding
--------------
The provider answers failures with a non-2xx status and a JSON body
``{"error": "<CODE>"}``.  The code is upper-cased and decoded once via
``FailureKind.decode``.  Transport problems (connection refused, DNS,
timeouts) become ``NETWORK_ERROR``; a 2xx body that does not match the
expected schema becomes ``GENERIC``.
"""

from __future__ import annotations

from typing import Optional, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from realm_login.logger import StructuredLogger
from realm_login.models.auth_models import (
    EmailUpdateResponse,
    LoginResponse,
    PingResponse,
    ProfileStatus,
    SendResponse,
    TokenResponse,
    TotpEnrollResponse,
    TotpSessionResponse,
    VerifyEmailResponse,
)
from realm_login.models.enums import FailureKind
from realm_login.services.base_service import BaseService

M = TypeVar("M", bound=BaseModel)


class ProviderError(Exception):
    """A classified identity-provider failure.

    Attributes
    ----------
    kind:
        The decoded failure category.
    status_code:
        HTTP status of the failed response, ``None`` for transport errors.
    """

    def __init__(self, kind: FailureKind, status_code: Optional[int] = None) -> None:
        super().__init__(kind.value)
        self.kind: FailureKind = kind
        self.status_code: Optional[int] = status_code


class IdentityProvider(Protocol):
    """Operations the login flow consumes from the identity provider.

    Each method returns a typed response or raises :class:`ProviderError`.
    """

    def login(self, realm: str, username: str, password: str) -> LoginResponse: ...

    def send_email_otp(self, login_attempt_id: str) -> SendResponse: ...

    def verify_email_otp(self, login_attempt_id: str, code: str) -> str: ...

    def enroll_totp(self, login_attempt_id: str) -> TotpEnrollResponse: ...

    def start_totp_session(self, login_attempt_id: str) -> TotpSessionResponse: ...

    def verify_totp(self, login_attempt_id: str, code: str) -> str: ...

    def send_sms_otp(self, login_attempt_id: str) -> SendResponse: ...

    def verify_sms_otp(self, login_attempt_id: str, code: str) -> str: ...

    def set_email(self, login_attempt_id: str, email: str) -> EmailUpdateResponse: ...

    def send_verify_email(self, login_attempt_id: str) -> VerifyEmailResponse: ...

    def profile_status(self, login_attempt_id: str) -> ProfileStatus: ...

    def ping_secure(self, token: str) -> PingResponse: ...


class IdentityProviderClient(BaseService):
    """HTTP collaborator for the login flow.

    Parameters
    ----------
    base_url:
        API root, e.g. ``http://localhost:8080/api``.
    logger:
        Structured JSON logger.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional ``httpx`` transport, used by tests to inject a
        ``MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        logger: StructuredLogger,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(logger)
        self._client: httpx.Client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        """Release pooled connections.  Safe to call more than once."""
        self._client.close()

    def __enter__(self) -> "IdentityProviderClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ==================================================================
    # Credentials
    # ==================================================================

    def login(self, realm: str, username: str, password: str) -> LoginResponse:
        return self._post(
            "/auth/login",
            {"realm": realm, "username": username, "password": password},
            LoginResponse,
        )

    # ==================================================================
    # Email one-time code
    # ==================================================================

    def send_email_otp(self, login_attempt_id: str) -> SendResponse:
        return self._post(
            "/auth/mfa/email/send",
            {"loginAttemptId": login_attempt_id},
            SendResponse,
        )

    def verify_email_otp(self, login_attempt_id: str, code: str) -> str:
        resp = self._post(
            "/auth/mfa/email/verify",
            {"loginAttemptId": login_attempt_id, "code": code},
            TokenResponse,
        )
        return resp.token

    # ==================================================================
    # Authenticator app (TOTP)
    # ==================================================================

    def enroll_totp(self, login_attempt_id: str) -> TotpEnrollResponse:
        return self._post(
            "/auth/mfa/totp/enroll",
            {"loginAttemptId": login_attempt_id},
            TotpEnrollResponse,
        )

    def start_totp_session(self, login_attempt_id: str) -> TotpSessionResponse:
        return self._post(
            "/auth/mfa/totp/start-session",
            {"loginAttemptId": login_attempt_id},
            TotpSessionResponse,
        )

    def verify_totp(self, login_attempt_id: str, code: str) -> str:
        resp = self._post(
            "/auth/mfa/totp/verify",
            {"loginAttemptId": login_attempt_id, "code": code},
            TokenResponse,
        )
        return resp.token

    # ==================================================================
    # SMS one-time code
    # ==================================================================

    def send_sms_otp(self, login_attempt_id: str) -> SendResponse:
        return self._post(
            "/auth/mfa/sms/send",
            {"loginAttemptId": login_attempt_id},
            SendResponse,
        )

    def verify_sms_otp(self, login_attempt_id: str, code: str) -> str:
        resp = self._post(
            "/auth/mfa/sms/verify",
            {"loginAttemptId": login_attempt_id, "code": code},
            TokenResponse,
        )
        return resp.token

    # ==================================================================
    # Profile prerequisites
    # ==================================================================

    def set_email(self, login_attempt_id: str, email: str) -> EmailUpdateResponse:
        return self._post(
            "/auth/profile/email",
            {"loginAttemptId": login_attempt_id, "email": email},
            EmailUpdateResponse,
        )

    def send_verify_email(self, login_attempt_id: str) -> VerifyEmailResponse:
        return self._post(
            "/auth/profile/verify-email",
            {"loginAttemptId": login_attempt_id},
            VerifyEmailResponse,
        )

    def profile_status(self, login_attempt_id: str) -> ProfileStatus:
        return self._request(
            "GET",
            "/auth/profile/status",
            ProfileStatus,
            params={"loginAttemptId": login_attempt_id},
        )

    # ==================================================================
    # Protected resource
    # ==================================================================

    def ping_secure(self, token: str) -> PingResponse:
        """Call the protected ping endpoint with *token* as bearer credential."""
        return self._request(
            "GET",
            "/secure/ping",
            PingResponse,
            headers={"Authorization": f"Bearer {token}"},
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _post(self, path: str, body: dict[str, str], model: type[M]) -> M:
        return self._request("POST", path, model, json=body)

    def _request(
        self,
        method: str,
        path: str,
        model: type[M],
        **kwargs: object,
    ) -> M:
        try:
            response = self._client.request(method, path, **kwargs)  # type: ignore[arg-type]
        except httpx.TransportError as exc:
            self._logger.warning(
                "Identity provider unreachable on %s %s: %s",
                method, path, type(exc).__name__,
                extra={"event": "PROVIDER_UNREACHABLE", "path": path},
            )
            raise ProviderError(FailureKind.NETWORK_ERROR) from exc

        if response.is_error:
            kind = self._decode_error(response)
            self._logger.info(
                "Identity provider rejected %s %s (%d, %s).",
                method, path, response.status_code, kind,
                extra={"event": "PROVIDER_ERROR", "path": path, "failure_kind": kind},
            )
            raise ProviderError(kind, response.status_code)

        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            self._logger.warning(
                "Malformed response from %s %s: %s",
                method, path, type(exc).__name__,
                extra={"event": "PROVIDER_BAD_RESPONSE", "path": path},
            )
            raise ProviderError(FailureKind.GENERIC, response.status_code) from exc

    @staticmethod
    def _decode_error(response: httpx.Response) -> FailureKind:
        try:
            body = response.json()
        except ValueError:
            return FailureKind.GENERIC
        if not isinstance(body, dict):
            return FailureKind.GENERIC
        return FailureKind.decode(body.get("error"))
