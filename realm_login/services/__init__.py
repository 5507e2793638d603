"""
Login Services Package.

Contains the login-flow controller and its collaborators: the identity
provider HTTP client, the session token stores and the resend cooldown
timer.

The ``create_services()`` factory wires them together, returning a typed
dict that the presentation layer (console prompts, a GUI view) can
consume without knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Callable, Optional, TypedDict

from realm_login.config import AppConfig
from realm_login.logger import get_logger
from realm_login.services.cooldown_timer import ResendCooldownTimer
from realm_login.services.identity_client import IdentityProviderClient
from realm_login.services.login_flow import LoginFlowController
from realm_login.services.token_store import (
    EncryptedFileTokenStore,
    InMemoryTokenStore,
    TokenStore,
)


class ServiceContainer(TypedDict):
    """Typed container for the login services."""

    identity_client: IdentityProviderClient
    token_store: TokenStore
    cooldown_timer: ResendCooldownTimer
    login_flow: LoginFlowController


def create_services(
    config: AppConfig,
    on_cooldown_tick: Optional[Callable[[int], None]] = None,
) -> ServiceContainer:
    """
    Wire all login services together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once at startup and hands the
    returned dict to its views.

    Args:
        config: Application configuration.
        on_cooldown_tick: Optional callback for countdown refreshes; runs
            on the timer's worker thread.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services")

    # ------------------------------------------------------------------
    # 1. Collaborators (no service dependencies)
    # ------------------------------------------------------------------
    identity_client = IdentityProviderClient(
        base_url=config.IDP_BASE_URL,
        logger=logger,
        timeout=config.HTTP_TIMEOUT_S,
    )

    token_path = config.token_store_path
    token_store: TokenStore
    if token_path is not None:
        token_store = EncryptedFileTokenStore(path=token_path, logger=logger)
    else:
        logger.info("TOKEN_STORE_PATH not set; session tokens are kept in memory.")
        token_store = InMemoryTokenStore()

    cooldown_timer = ResendCooldownTimer(
        logger=logger,
        tick_interval_s=config.COOLDOWN_TICK_S,
        on_tick=on_cooldown_tick,
    )

    # ------------------------------------------------------------------
    # 2. Orchestration
    # ------------------------------------------------------------------
    login_flow = LoginFlowController(
        provider=identity_client,
        token_store=token_store,
        timer=cooldown_timer,
        logger=logger,
        code_length=config.OTP_CODE_LENGTH,
        default_sms_cooldown_s=config.DEFAULT_SMS_COOLDOWN_S,
    )

    return ServiceContainer(
        identity_client=identity_client,
        token_store=token_store,
        cooldown_timer=cooldown_timer,
        login_flow=login_flow,
    )
