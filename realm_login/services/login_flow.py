"""
Login Flow Controller.

Owns the phase state machine of a single interactive login attempt:

    Credentials ─login─▶ EmailSetupRequired ─saveEmail─▶ EmailVerificationRequired
         │                                                      │ checkStatus
         │ (needs.verifyEmail) ───────────────────────────────▶│
         │                                                      ▼
         └────────────────────────────────────────────────▶ MethodSelection
                                                                │ chooseMethod
                                  ┌─────────────────────────────┼──────────────┐
                                  ▼                             ▼              ▼
                            EmailOtpEntry                 SmsOtpEntry      TotpEntry
                                  └──────── verifyCode ─────────┴──────────────┘
                                                                ▼
                                                          Authenticated

Which branch is taken after the credential check depends on the
``needs`` object the identity provider returns, so accounts without an
email on file, or with an unconfirmed one, get extra steps without any
per-realm special-casing here.

Every public action returns a ``FlowResult``; the presentation layer
reads state through the frozen ``LoginFlowState`` snapshot and never
sees provider exceptions.

Concurrency
-----------
Actions are blocking calls meant to run off the UI thread.  Only one
network call per attempt may be outstanding: a second action while one
is in flight returns ``busy``.  ``reset``/``logout`` may be called from
any thread at any time; they bump ``_generation`` so a response that
lands after the reset is discarded instead of being applied to the
cleared attempt.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Union

from realm_login.logger import StructuredLogger
from realm_login.models.auth_models import (
    FlowResult,
    LoginFlowState,
    Needs,
    message_for,
)
from realm_login.models.enums import (
    ENTRY_PHASES,
    METHOD_ENTRY_PHASES,
    FailureKind,
    LoginPhase,
    MfaMethod,
)
from realm_login.services.base_service import BaseService
from realm_login.services.cooldown_timer import ResendCooldownTimer
from realm_login.services.identity_client import IdentityProvider, ProviderError
from realm_login.services.token_store import TokenStore


_TOTP_METHODS: frozenset[MfaMethod] = frozenset({MfaMethod.TOTP, MfaMethod.MSFT_TOTP})


class LoginFlowController(BaseService):
    """State machine driving one login attempt against the identity provider.

    Parameters
    ----------
    provider:
        Identity-provider collaborator (normally ``IdentityProviderClient``).
    token_store:
        Receives the session token once a one-time code is accepted.
    timer:
        Resend cooldown for the SMS channel.  Owned by the controller:
        started after a successful send, stopped on reset.
    logger:
        Structured JSON logger.
    code_length:
        Exact length a one-time code must have before it is sent.
    default_sms_cooldown_s:
        Cooldown applied when the provider's send response omits one.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        token_store: TokenStore,
        timer: ResendCooldownTimer,
        logger: StructuredLogger,
        code_length: int = 6,
        default_sms_cooldown_s: int = 30,
    ) -> None:
        super().__init__(logger)
        self._provider: IdentityProvider = provider
        self._token_store: TokenStore = token_store
        self._timer: ResendCooldownTimer = timer
        self._code_length: int = code_length
        self._default_sms_cooldown_s: int = default_sms_cooldown_s

        self._lock: threading.RLock = threading.RLock()
        self._generation: int = 0
        self._in_flight: bool = False
        self._clear_attempt()

    # ==================================================================
    # State
    # ==================================================================

    @property
    def state(self) -> LoginFlowState:
        """Immutable snapshot of the current attempt."""
        with self._lock:
            return LoginFlowState(
                phase=self._phase,
                realm=self._realm,
                login_attempt_id=self._attempt_id,
                allowed_methods=self._allowed_methods,
                chosen_method=self._chosen_method,
                needs=self._needs,
                last_error=self._last_error,
                last_info=self._last_info,
                redirect_to=self._redirect_to,
                seconds_remaining=self._timer.seconds_remaining,
                cooldown_channel=self._timer.channel,
                in_flight=self._in_flight,
            )

    @property
    def phase(self) -> LoginPhase:
        with self._lock:
            return self._phase

    def is_allowed(self, method: Union[MfaMethod, str]) -> bool:
        """``True`` when the provider offered *method* for this account."""
        parsed = self._parse_method(method)
        with self._lock:
            return parsed is not None and parsed in self._allowed_methods

    # ==================================================================
    # Credentials
    # ==================================================================

    def submit_credentials(
        self, realm: Optional[str], username: str, password: str,
    ) -> FlowResult:
        """Check credentials and route to the first required step."""
        with self._lock:
            rejected = self._guard({LoginPhase.CREDENTIALS}, needs_attempt=False)
            if rejected is not None:
                return rejected
            self._clear_status()

            realm_name = (realm or "").strip()
            username = (username or "").strip()
            if not realm_name:
                return self._local_failure("Please select a realm first.")
            if not username or not password:
                return self._local_failure("Please provide username and password.")
            _, generation = self._dispatch()

        with self._network_call(generation):
            try:
                resp = self._provider.login(realm_name, username, password)
            except ProviderError as exc:
                self._audit(
                    "LOGIN_FAILED", "Login failed for %s in realm %s: %s",
                    username, realm_name, exc.kind,
                    realm=realm_name, failure_kind=exc.kind,
                )
                return self._remote_failure(generation, exc.kind, "Login failed.")

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                needs = resp.needs or Needs()
                self._realm = realm_name
                self._attempt_id = resp.login_attempt_id
                self._allowed_methods = resp.allowed_methods
                self._needs = needs

                if needs.email_missing:
                    self._enter(LoginPhase.EMAIL_SETUP_REQUIRED)
                elif needs.verify_email:
                    self._enter(LoginPhase.EMAIL_VERIFICATION_REQUIRED)
                else:
                    self._enter(LoginPhase.METHOD_SELECTION)

                self._audit(
                    "LOGIN", "Credentials accepted for %s in realm %s; next phase %s.",
                    username, realm_name, self._phase,
                    realm=realm_name,
                    login_attempt_id=self._attempt_id,
                    phase=self._phase,
                )
                return self._success()

    # ==================================================================
    # Email prerequisites
    # ==================================================================

    def save_email(self, address: str) -> FlowResult:
        """Put an email address on file for an account that has none."""
        with self._lock:
            rejected = self._guard({LoginPhase.EMAIL_SETUP_REQUIRED})
            if rejected is not None:
                return rejected
            self._clear_status()

            email = (address or "").strip()
            if not email or "@" not in email:
                return self._local_failure("Please enter a valid email")
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            try:
                self._provider.set_email(attempt_id, email)
            except ProviderError as exc:
                return self._remote_failure(generation, exc.kind, "Failed to save email.")

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                self._enter(LoginPhase.EMAIL_VERIFICATION_REQUIRED)
                self._audit(
                    "EMAIL_SET", "Email saved for attempt %s.", attempt_id,
                    login_attempt_id=attempt_id,
                )
                return self._success("Email saved. Now verify it.")

    def send_verification_email(self) -> FlowResult:
        with self._lock:
            rejected = self._guard({LoginPhase.EMAIL_VERIFICATION_REQUIRED})
            if rejected is not None:
                return rejected
            self._clear_status()
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            try:
                self._provider.send_verify_email(attempt_id)
            except ProviderError as exc:
                return self._remote_failure(
                    generation, exc.kind, "Failed to send verification email.",
                )

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                return self._success("Verification email sent. Please check your inbox.")

    def check_email_verified(self) -> FlowResult:
        """Ask the provider whether the email link was followed.

        Moves on to method selection once the provider reports the
        address as verified; otherwise stays put with an info message.
        """
        with self._lock:
            rejected = self._guard({LoginPhase.EMAIL_VERIFICATION_REQUIRED})
            if rejected is not None:
                return rejected
            self._clear_status()
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            try:
                status = self._provider.profile_status(attempt_id)
            except ProviderError as exc:
                return self._remote_failure(generation, exc.kind, "Failed to check status.")

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                if not status.email_verified:
                    return self._success("Still not verified.")
                self._enter(LoginPhase.METHOD_SELECTION)
                return self._success("Email verified. Continue to MFA.")

    # ==================================================================
    # Method selection
    # ==================================================================

    def choose_method(self, method: Union[MfaMethod, str]) -> FlowResult:
        """Enter the code-entry phase for *method*.  No network call."""
        with self._lock:
            rejected = self._guard({LoginPhase.METHOD_SELECTION})
            if rejected is not None:
                return rejected
            self._clear_status()

            parsed = self._parse_method(method)
            if parsed is None or parsed not in self._allowed_methods:
                return self._local_failure("That sign-in method is not available.")

            self._enter(METHOD_ENTRY_PHASES[parsed], parsed)
            self._audit(
                "MFA_METHOD_CHOSEN", "MFA method %s chosen for attempt %s.",
                parsed, self._attempt_id,
                method=parsed, login_attempt_id=self._attempt_id,
            )
            if parsed in _TOTP_METHODS and self._needs is not None and self._needs.configure_totp:
                return self._success(
                    "Authenticator not configured yet. Start setup, then enter a code.",
                )
            return self._success()

    def return_to_method_selection(self) -> FlowResult:
        """Leave the current entry phase for another method.

        The attempt stays valid and a running resend cooldown keeps
        counting.  No network call.
        """
        with self._lock:
            rejected = self._guard(ENTRY_PHASES)
            if rejected is not None:
                return rejected
            self._clear_status()
            self._enter(LoginPhase.METHOD_SELECTION)
            return self._success()

    # ==================================================================
    # Code delivery and verification
    # ==================================================================

    def send_code(self) -> FlowResult:
        """Ask the provider to deliver a one-time code (email or SMS)."""
        with self._lock:
            rejected = self._guard({LoginPhase.EMAIL_OTP_ENTRY, LoginPhase.SMS_OTP_ENTRY})
            if rejected is not None:
                return rejected
            self._clear_status()

            phase = self._phase
            if phase == LoginPhase.SMS_OTP_ENTRY and not self._timer.is_ready():
                return self._local_failure(
                    f"Please wait {self._timer.seconds_remaining} seconds before resending.",
                )
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            if phase == LoginPhase.EMAIL_OTP_ENTRY:
                try:
                    self._provider.send_email_otp(attempt_id)
                except ProviderError as exc:
                    return self._remote_failure(
                        generation, exc.kind, "Failed to send email code.",
                    )
                with self._lock:
                    if self._is_stale(generation):
                        return self._discarded()
                    return self._success("Email code sent. Check your inbox.")

            try:
                resp = self._provider.send_sms_otp(attempt_id)
            except ProviderError as exc:
                return self._remote_failure(generation, exc.kind, "Failed to send SMS.")

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                cooldown = (
                    resp.cooldown if resp.cooldown is not None
                    else self._default_sms_cooldown_s
                )
                self._timer.start(cooldown, MfaMethod.SMS)
                return self._success(
                    f"SMS sent. Enter the {self._code_length}-digit code.",
                )

    def verify_code(self, code: str) -> FlowResult:
        """Submit a one-time code for the chosen method.

        An accepted code stores the issued token and ends the flow in
        ``AUTHENTICATED``.  ``TOO_MANY_ATTEMPTS`` abandons the method and
        returns to method selection; the attempt id stays valid.
        """
        with self._lock:
            rejected = self._guard(ENTRY_PHASES)
            if rejected is not None:
                return rejected
            self._clear_status()

            entered = (code or "").strip()
            if len(entered) != self._code_length:
                return self._local_failure(
                    f"Please enter the {self._code_length}-digit code.",
                )
            phase = self._phase
            method = self._chosen_method
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            try:
                if phase == LoginPhase.EMAIL_OTP_ENTRY:
                    token = self._provider.verify_email_otp(attempt_id, entered)
                elif phase == LoginPhase.SMS_OTP_ENTRY:
                    token = self._provider.verify_sms_otp(attempt_id, entered)
                else:
                    token = self._provider.verify_totp(attempt_id, entered)
            except ProviderError as exc:
                self._audit(
                    "MFA_FAILED", "Code rejected for attempt %s (%s): %s",
                    attempt_id, method, exc.kind,
                    login_attempt_id=attempt_id, method=method, failure_kind=exc.kind,
                )
                fallback = (
                    "Invalid code. Please try again." if phase == LoginPhase.TOTP_ENTRY
                    else "Invalid or expired code."
                )
                with self._lock:
                    if self._is_stale(generation):
                        return self._discarded()
                    if exc.kind == FailureKind.TOO_MANY_ATTEMPTS:
                        self._enter(LoginPhase.METHOD_SELECTION)
                    return self._remote_failure(generation, exc.kind, fallback)

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                self._token_store.set(token)
                self._enter(LoginPhase.AUTHENTICATED)
                self._audit(
                    "MFA_VERIFIED", "Attempt %s authenticated via %s.",
                    attempt_id, method,
                    login_attempt_id=attempt_id, method=method, realm=self._realm,
                )
                return self._success()

    # ==================================================================
    # Authenticator setup (TOTP entry only)
    # ==================================================================

    def enroll_totp(self) -> FlowResult:
        """Request an authenticator setup link by email."""
        with self._lock:
            rejected = self._guard({LoginPhase.TOTP_ENTRY})
            if rejected is not None:
                return rejected
            self._clear_status()
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            try:
                resp = self._provider.enroll_totp(attempt_id)
            except ProviderError as exc:
                return self._remote_failure(generation, exc.kind, "Failed to send setup link.")

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                if resp.already_configured:
                    return self._success("Authenticator already configured. Enter a code.")
                return self._success("Setup link sent by email. Complete setup, then enter a code.")

    def start_totp_session(self) -> FlowResult:
        """Start in-session authenticator setup and expose its URL as ``redirect_to``."""
        with self._lock:
            rejected = self._guard({LoginPhase.TOTP_ENTRY})
            if rejected is not None:
                return rejected
            self._clear_status()
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            try:
                resp = self._provider.start_totp_session(attempt_id)
            except ProviderError as exc:
                return self._remote_failure(
                    generation, exc.kind, "Failed to start in-session setup.",
                )

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                self._redirect_to = resp.redirect_to
                return self._success(
                    "Setup opened in a new window. Finish setup, then enter a code here.",
                )

    def check_totp_setup(self) -> FlowResult:
        with self._lock:
            rejected = self._guard({LoginPhase.TOTP_ENTRY})
            if rejected is not None:
                return rejected
            self._clear_status()
            attempt_id, generation = self._dispatch()

        with self._network_call(generation):
            try:
                status = self._provider.profile_status(attempt_id)
            except ProviderError as exc:
                return self._remote_failure(
                    generation, exc.kind, "Could not check setup status. Try again.",
                )

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                if status.has_totp:
                    return self._success(
                        f"Authenticator configured. Enter a {self._code_length}-digit "
                        "code from your app.",
                    )
                return self._success(
                    "Still not detected. Complete setup in the other window, "
                    "wait a few seconds, then try again.",
                )

    # ==================================================================
    # After authentication
    # ==================================================================

    def ping_secure(self) -> FlowResult:
        """Call the provider's protected ping with the stored token."""
        with self._lock:
            rejected = self._guard({LoginPhase.AUTHENTICATED}, needs_attempt=False)
            if rejected is not None:
                return rejected
            self._clear_status()
            token = self._token_store.get()
            if not token:
                return self._local_failure("Not authorized (are you logged in?)")
            _, generation = self._dispatch()

        with self._network_call(generation):
            try:
                resp = self._provider.ping_secure(token)
            except ProviderError as exc:
                return self._remote_failure(
                    generation, exc.kind, "Not authorized (are you logged in?)",
                )

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                return self._success(f"Protected call succeeded: {resp.message or 'Success'}")

    # ==================================================================
    # Cancellation
    # ==================================================================

    def reset(self) -> None:
        """Abandon the current attempt and return to ``CREDENTIALS``.

        Idempotent and safe from any phase or thread.  A network call
        still outstanding for the abandoned attempt will have its
        response discarded.
        """
        with self._lock:
            previous = self._phase
            self._generation += 1
            self._in_flight = False
            self._timer.stop()
            self._clear_attempt()
        if previous != LoginPhase.CREDENTIALS:
            self._logger.debug("Login attempt reset from %s.", previous)

    def logout(self) -> None:
        """Forget the stored session token and reset the attempt.

        The attempt is reset even when the token store fails to clear;
        that error still propagates.
        """
        with self._lock:
            realm = self._realm
            try:
                self._token_store.clear()
            finally:
                self.reset()
        self._audit("LOGOUT", "Logged out of realm %s.", realm, realm=realm)

    # ------------------------------------------------------------------
    # Private helpers (callers hold ``self._lock`` unless noted)
    # ------------------------------------------------------------------

    def _clear_attempt(self) -> None:
        self._phase: LoginPhase = LoginPhase.CREDENTIALS
        self._realm: Optional[str] = None
        self._attempt_id: Optional[str] = None
        self._allowed_methods: tuple[MfaMethod, ...] = ()
        self._chosen_method: Optional[MfaMethod] = None
        self._needs: Optional[Needs] = None
        self._last_error: Optional[str] = None
        self._last_info: Optional[str] = None
        self._redirect_to: Optional[str] = None

    def _clear_status(self) -> None:
        self._last_error = None
        self._last_info = None

    def _enter(self, phase: LoginPhase, method: Optional[MfaMethod] = None) -> None:
        """Switch phase; the chosen method travels with the entry phases only."""
        if phase in ENTRY_PHASES:
            if method is None or METHOD_ENTRY_PHASES[method] != phase:
                raise ValueError(f"{phase} requires a matching MFA method")
        elif method is not None:
            raise ValueError(f"{phase} does not carry an MFA method")
        if phase not in ENTRY_PHASES or method != self._chosen_method:
            self._redirect_to = None
        self._phase = phase
        self._chosen_method = method

    def _guard(
        self, phases: Union[set[LoginPhase], frozenset[LoginPhase]], needs_attempt: bool = True,
    ) -> Optional[FlowResult]:
        """Return a no-op result when the action cannot run now, else ``None``."""
        if self._phase not in phases or (needs_attempt and self._attempt_id is None):
            self._logger.debug("Action ignored in phase %s.", self._phase)
            return FlowResult(success=False, phase=self._phase, ignored=True)
        if self._in_flight:
            return FlowResult(success=False, phase=self._phase, busy=True)
        return None

    def _dispatch(self) -> tuple[str, int]:
        """Mark a network call as outstanding; return the attempt id and generation."""
        self._in_flight = True
        return self._attempt_id or "", self._generation

    @contextmanager
    def _network_call(self, generation: int) -> Iterator[None]:
        """Clear the in-flight flag when the call for *generation* settles.

        Acquires the lock itself; a reset in the meantime already
        cleared the flag, so it is left alone.
        """
        try:
            yield
        finally:
            with self._lock:
                if self._generation == generation:
                    self._in_flight = False

    def _is_stale(self, generation: int) -> bool:
        if self._generation == generation:
            return False
        self._logger.debug("Discarding response for a reset login attempt.")
        return True

    def _success(self, info: Optional[str] = None) -> FlowResult:
        self._last_error = None
        self._last_info = info
        return FlowResult(success=True, phase=self._phase, message=info)

    def _local_failure(self, message: str) -> FlowResult:
        self._last_info = None
        self._last_error = message
        return FlowResult(
            success=False,
            phase=self._phase,
            failure_kind=FailureKind.VALIDATION_ERROR,
            message=message,
        )

    def _remote_failure(self, generation: int, kind: FailureKind, fallback: str) -> FlowResult:
        """Record a classified provider failure.  Acquires the lock itself."""
        with self._lock:
            if self._is_stale(generation):
                return self._discarded()
            message = message_for(kind, fallback)
            self._last_info = None
            self._last_error = message
            self._logger.info(
                "Action failed in phase %s: %s", self._phase, kind,
                extra={"event": "FLOW_FAILURE", "phase": self._phase, "failure_kind": kind},
            )
            return FlowResult(
                success=False, phase=self._phase, failure_kind=kind, message=message,
            )

    def _discarded(self) -> FlowResult:
        return FlowResult(success=False, phase=self._phase, discarded=True)

    @staticmethod
    def _parse_method(method: Union[MfaMethod, str]) -> Optional[MfaMethod]:
        try:
            return MfaMethod(str(method).strip().lower())
        except ValueError:
            return None
