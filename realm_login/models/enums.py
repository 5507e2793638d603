"""
Shared Enumerations for the Login Flow.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents, so
``phase == "MethodSelection"`` and ``method == "sms"`` keep working.
"""

from __future__ import annotations
from enum import StrEnum


class LoginPhase(StrEnum):
    """Exhaustive set of states of a single login attempt.

    ``CREDENTIALS`` is initial; ``AUTHENTICATED`` is terminal and is
    reachable only through a verified one-time code.
    """

    CREDENTIALS = "Credentials"
    EMAIL_SETUP_REQUIRED = "EmailSetupRequired"
    EMAIL_VERIFICATION_REQUIRED = "EmailVerificationRequired"
    METHOD_SELECTION = "MethodSelection"
    EMAIL_OTP_ENTRY = "EmailOtpEntry"
    SMS_OTP_ENTRY = "SmsOtpEntry"
    TOTP_ENTRY = "TotpEntry"
    AUTHENTICATED = "Authenticated"


class MfaMethod(StrEnum):
    """Second-factor channels the identity provider may offer."""

    EMAIL = "email"
    TOTP = "totp"
    MSFT_TOTP = "msft_totp"
    SMS = "sms"


class FailureKind(StrEnum):
    """Closed vocabulary of failures surfaced by the identity provider.

    Provider error codes are decoded into this enumeration once, at the
    HTTP boundary.  Anything unrecognised becomes ``GENERIC``.
    """

    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    INVALID_REALM = "INVALID_REALM"
    SMS_COOLDOWN = "SMS_COOLDOWN"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    NETWORK_ERROR = "NETWORK_ERROR"
    GENERIC = "GENERIC"

    # Local guard failure; never produced by the provider.
    VALIDATION_ERROR = "VALIDATION_ERROR"

    @classmethod
    def decode(cls, raw: object) -> "FailureKind":
        """Map a raw provider error code to a kind, defaulting to ``GENERIC``."""
        if not isinstance(raw, str):
            return cls.GENERIC
        code = raw.strip().upper()
        if code == cls.VALIDATION_ERROR:
            return cls.GENERIC
        try:
            return cls(code)
        except ValueError:
            return cls.GENERIC


# Entry phase reached by choosing each method.
METHOD_ENTRY_PHASES: dict[MfaMethod, LoginPhase] = {
    MfaMethod.EMAIL: LoginPhase.EMAIL_OTP_ENTRY,
    MfaMethod.SMS: LoginPhase.SMS_OTP_ENTRY,
    MfaMethod.TOTP: LoginPhase.TOTP_ENTRY,
    MfaMethod.MSFT_TOTP: LoginPhase.TOTP_ENTRY,
}

ENTRY_PHASES: frozenset[LoginPhase] = frozenset(METHOD_ENTRY_PHASES.values())
