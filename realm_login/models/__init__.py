from __future__ import annotations

"""
Data Models Package.

Re-exports the login-flow models for short imports:
    from realm_login.models import LoginPhase, MfaMethod, FailureKind
    from realm_login.models import FlowResult, LoginFlowState
"""

from realm_login.models.enums import (
    ENTRY_PHASES,
    METHOD_ENTRY_PHASES,
    FailureKind,
    LoginPhase,
    MfaMethod,
)
from realm_login.models.auth_models import (
    FAILURE_MESSAGES,
    EmailUpdateResponse,
    FlowResult,
    LoginFlowState,
    LoginResponse,
    Needs,
    PingResponse,
    ProfileStatus,
    SendResponse,
    TokenResponse,
    TotpEnrollResponse,
    TotpSessionResponse,
    VerifyEmailResponse,
    message_for,
)

__all__ = [
    "ENTRY_PHASES",
    "METHOD_ENTRY_PHASES",
    "FailureKind",
    "LoginPhase",
    "MfaMethod",
    "FAILURE_MESSAGES",
    "EmailUpdateResponse",
    "FlowResult",
    "LoginFlowState",
    "LoginResponse",
    "Needs",
    "PingResponse",
    "ProfileStatus",
    "SendResponse",
    "TokenResponse",
    "TotpEnrollResponse",
    "TotpSessionResponse",
    "VerifyEmailResponse",
    "message_for",
]
