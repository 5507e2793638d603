"""
Realm Login Console.

Bootstraps the dependency graph via constructor injection and drives the
login flow from terminal prompts.  Every subsystem is wired here; there
are no module-level globals.

End of input (Ctrl-D, a closed pipe) quits from any prompt.

Usage::

    realm-login
    python main.py
"""

from __future__ import annotations

import atexit
import getpass
import sys
import traceback
from typing import Callable

from realm_login.config import get_config
from realm_login.logger import StructuredLogger
from realm_login.models import FlowResult, LoginFlowState, LoginPhase
from realm_login.services import create_services
from realm_login.services.login_flow import LoginFlowController


def main() -> None:
    """Application entry point: wire dependencies and run the prompt loop."""
    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # Log records go to stderr so they do not interleave with prompts.
    # Loggers are configured once per name, so later get_logger() calls
    # for these names reuse the stderr handler.
    logger = StructuredLogger(name="main", stream=sys.stderr)
    StructuredLogger(name="services", stream=sys.stderr)
    logger.info("Starting realm login against %s...", config.IDP_BASE_URL)

    # ------------------------------------------------------------------
    # 2. Service Container (single composition root)
    # ------------------------------------------------------------------
    services = create_services(config=config)
    atexit.register(services["identity_client"].close)

    # ------------------------------------------------------------------
    # 3. Prompt loop (blocks until the user quits)
    # ------------------------------------------------------------------
    console = _ConsoleLogin(services["login_flow"], logger)
    try:
        console.run()
    finally:
        services["cooldown_timer"].stop()
        services["identity_client"].close()
        logger.info("Realm login shut down.")


class _ConsoleLogin:
    """Prompt-per-phase presentation of ``LoginFlowController``.

    Contains no flow logic: it reads the state snapshot, asks for the
    input the current phase needs, calls one controller action and
    prints the resulting status line.
    """

    def __init__(self, flow: LoginFlowController, logger: StructuredLogger) -> None:
        self._flow = flow
        self._logger = logger

    def run(self) -> None:
        """Prompt until the user quits or input ends."""
        while True:
            state = self._flow.state
            handler = self._handlers().get(state.phase)
            if handler is None:
                return
            try:
                if not handler(state):
                    return
            except _EndOfInput:
                self._logger.info("Input closed; leaving the prompt loop.")
                return

    def _handlers(self) -> dict[LoginPhase, Callable[[LoginFlowState], bool]]:
        return {
            LoginPhase.CREDENTIALS: self._credentials,
            LoginPhase.EMAIL_SETUP_REQUIRED: self._email_setup,
            LoginPhase.EMAIL_VERIFICATION_REQUIRED: self._email_verification,
            LoginPhase.METHOD_SELECTION: self._method_selection,
            LoginPhase.EMAIL_OTP_ENTRY: self._code_entry,
            LoginPhase.SMS_OTP_ENTRY: self._code_entry,
            LoginPhase.TOTP_ENTRY: self._totp_entry,
            LoginPhase.AUTHENTICATED: self._authenticated,
        }

    # ------------------------------------------------------------------
    # Phase handlers (return False to quit)
    # ------------------------------------------------------------------

    def _credentials(self, state: LoginFlowState) -> bool:
        realm = _ask("Realm (blank to quit)")
        if not realm:
            return False
        username = _ask("Username")
        password = _ask_secret("Password")
        self._show(self._flow.submit_credentials(realm, username, password))
        return True

    def _email_setup(self, state: LoginFlowState) -> bool:
        print("This account has no email on file.")
        address = _ask("Email address (blank to start over)")
        if not address:
            self._flow.reset()
            return True
        self._show(self._flow.save_email(address))
        return True

    def _email_verification(self, state: LoginFlowState) -> bool:
        choice = _ask("[s]end verification email, [c]heck status, [r]estart")
        if choice == "s":
            self._show(self._flow.send_verification_email())
        elif choice == "c":
            self._show(self._flow.check_email_verified())
        elif choice == "r":
            self._flow.reset()
        return True

    def _method_selection(self, state: LoginFlowState) -> bool:
        methods = ", ".join(state.allowed_methods) or "(none)"
        choice = _ask(f"Choose a method [{methods}] or [r]estart")
        if choice == "r":
            self._flow.reset()
        else:
            self._show(self._flow.choose_method(choice))
        return True

    def _code_entry(self, state: LoginFlowState) -> bool:
        prompt = "[s]end code, enter the code, [b]ack, [r]estart"
        if not state.resend_ready:
            prompt += f" (resend in {state.seconds_remaining}s)"
        choice = _ask(prompt)
        if choice == "s":
            self._show(self._flow.send_code())
        elif choice in ("b", "r"):
            self._back_or_restart(choice)
        elif choice:
            self._show(self._flow.verify_code(choice))
        return True

    def _totp_entry(self, state: LoginFlowState) -> bool:
        choice = _ask(
            "Enter the code, [e]mail setup link, [o]pen setup here, "
            "[c]heck setup, [b]ack, [r]estart"
        )
        if choice == "e":
            self._show(self._flow.enroll_totp())
        elif choice == "o":
            result = self._flow.start_totp_session()
            self._show(result)
            redirect = self._flow.state.redirect_to
            if result.success and redirect:
                print(f"Open this URL to finish setup: {redirect}")
        elif choice == "c":
            self._show(self._flow.check_totp_setup())
        elif choice in ("b", "r"):
            self._back_or_restart(choice)
        elif choice:
            self._show(self._flow.verify_code(choice))
        return True

    def _authenticated(self, state: LoginFlowState) -> bool:
        choice = _ask(f"Signed in to {state.realm}. [p]ing, [l]ogout, [q]uit")
        if choice == "p":
            self._show(self._flow.ping_secure())
        elif choice == "l":
            self._flow.logout()
            print("Logged out.")
        elif choice == "q":
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _back_or_restart(self, choice: str) -> None:
        # Going back to the method list keeps the attempt; only a
        # restart discards it.
        if choice == "r":
            self._flow.reset()
            return
        self._flow.return_to_method_selection()

    def _show(self, result: FlowResult) -> None:
        if result.ignored or result.busy or result.discarded:
            return
        if result.message:
            marker = "" if result.success else "! "
            print(f"{marker}{result.message}")


class _EndOfInput(Exception):
    """Raised by the prompt helpers when stdin is exhausted."""


def _ask(prompt: str) -> str:
    try:
        return input(f"{prompt}: ").strip()
    except EOFError:
        raise _EndOfInput() from None


def _ask_secret(prompt: str) -> str:
    try:
        return getpass.getpass(f"{prompt}: ")
    except EOFError:
        raise _EndOfInput() from None


def _show_fatal_error(exc: BaseException) -> None:
    """Write a fatal-error report to stderr so the user gets feedback."""
    detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    sys.stderr.write(
        "Realm login encountered an unexpected error and cannot continue.\n\n"
        f"FATAL: {type(exc).__name__}: {exc}\n{detail}"
    )


def cli() -> None:
    """Console-script entry point: run ``main`` and report fatal errors."""
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        _show_fatal_error(exc)
        sys.exit(1)
