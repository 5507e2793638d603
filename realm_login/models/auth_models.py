"""
Authentication Pipeline Models.

Pydantic models for the two typed boundaries of the login flow:

- the identity-provider wire contract (camelCase JSON, decoded by
  ``IdentityProviderClient``), and
- the controller → presentation contract (``FlowResult`` and the frozen
  ``LoginFlowState`` snapshot).

The presentation layer never inspects raw exceptions or provider
payloads; it only reads these models.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from realm_login.models.enums import FailureKind, LoginPhase, MfaMethod


_WIRE_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "extra": "ignore",
}


# ---------------------------------------------------------------------------
# Failure-kind messages
# ---------------------------------------------------------------------------

# Messages for kinds whose wording does not depend on the action.  Generic
# failures use the fallback message supplied by each action instead.
FAILURE_MESSAGES: dict[FailureKind, str] = {
    FailureKind.USER_NOT_FOUND: "User does not exist.",
    FailureKind.INVALID_PASSWORD: "Wrong password.",
    FailureKind.INVALID_REALM: "Invalid realm.",
    FailureKind.SMS_COOLDOWN: "Please wait before resending.",
    FailureKind.TOO_MANY_ATTEMPTS: "Too many attempts. Start over.",
    FailureKind.NETWORK_ERROR: (
        "Cannot reach the identity provider. Check your connection."
    ),
}


def message_for(kind: FailureKind, fallback: str) -> str:
    """Return the fixed user-facing message for *kind*, or *fallback*."""
    return FAILURE_MESSAGES.get(kind, fallback)


# ---------------------------------------------------------------------------
# Provider wire contract
# ---------------------------------------------------------------------------

class Needs(BaseModel):
    """Server-asserted prerequisites returned with a successful login.

    Each flag is independent.  A response without ``needs`` is read as
    all flags false.
    """

    email_missing: bool = False
    verify_email: bool = False
    configure_totp: bool = False

    model_config = _WIRE_CONFIG


class LoginResponse(BaseModel):
    """Successful ``POST /auth/login`` body."""

    mfa_required: bool = True
    # A null or missing list reads as "no methods offered".
    methods: Optional[list[str]] = None
    login_attempt_id: str = Field(min_length=1)
    needs: Optional[Needs] = None

    model_config = _WIRE_CONFIG

    @property
    def allowed_methods(self) -> tuple[MfaMethod, ...]:
        """Known methods in server order; unknown identifiers are dropped."""
        known: list[MfaMethod] = []
        for raw in self.methods or []:
            try:
                method = MfaMethod(raw.strip().lower())
            except ValueError:
                continue
            if method not in known:
                known.append(method)
        return tuple(known)


class SendResponse(BaseModel):
    """Body of the code-send endpoints (email and SMS)."""

    sent: bool = False
    cooldown: Optional[int] = Field(default=None, ge=0)

    model_config = _WIRE_CONFIG


class TokenResponse(BaseModel):
    """Body of every verify endpoint."""

    token: str = Field(min_length=1)

    model_config = _WIRE_CONFIG


class TotpEnrollResponse(BaseModel):
    email_sent: Optional[bool] = None
    already_configured: Optional[bool] = None

    model_config = _WIRE_CONFIG


class TotpSessionResponse(BaseModel):
    redirect_to: str = Field(min_length=1)

    model_config = _WIRE_CONFIG


class EmailUpdateResponse(BaseModel):
    updated: bool = False

    model_config = _WIRE_CONFIG


class VerifyEmailResponse(BaseModel):
    email_sent: bool = False

    model_config = _WIRE_CONFIG


class ProfileStatus(BaseModel):
    """Body of ``GET /auth/profile/status``."""

    email_missing: bool = False
    email_verified: bool = False
    has_totp: bool = False

    model_config = _WIRE_CONFIG


class PingResponse(BaseModel):
    message: Optional[str] = None

    model_config = _WIRE_CONFIG


# ---------------------------------------------------------------------------
# Controller → presentation contract
# ---------------------------------------------------------------------------

class FlowResult(BaseModel):
    """Outcome of a single controller action.

    Attributes
    ----------
    success:
        ``True`` when the action completed and its effect was applied.
    phase:
        The phase after the action.
    failure_kind:
        Classified failure, ``None`` on success.
    message:
        The status message the action produced, if any.
    ignored:
        The action is not valid in the current phase; nothing happened.
    busy:
        Another action for this attempt was still in flight; nothing
        happened.
    discarded:
        The attempt was reset while the request was outstanding, so the
        response was dropped.
    """

    success: bool
    phase: LoginPhase
    failure_kind: Optional[FailureKind] = None
    message: Optional[str] = None
    ignored: bool = False
    busy: bool = False
    discarded: bool = False

    model_config = {"frozen": True}


class LoginFlowState(BaseModel):
    """Immutable snapshot of a login attempt as seen by the presentation layer."""

    phase: LoginPhase = LoginPhase.CREDENTIALS
    realm: Optional[str] = None
    login_attempt_id: Optional[str] = None
    allowed_methods: tuple[MfaMethod, ...] = ()
    chosen_method: Optional[MfaMethod] = None
    needs: Optional[Needs] = None
    last_error: Optional[str] = None
    last_info: Optional[str] = None
    redirect_to: Optional[str] = None
    seconds_remaining: int = 0
    cooldown_channel: Optional[MfaMethod] = None
    in_flight: bool = False

    model_config = {"frozen": True}

    @property
    def resend_ready(self) -> bool:
        """``True`` when no cooldown blocks re-sending a code."""
        return self.seconds_remaining == 0

    @property
    def is_authenticated(self) -> bool:
        return self.phase == LoginPhase.AUTHENTICATED
