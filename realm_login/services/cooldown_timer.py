"""
Resend Cooldown Timer.

Countdown that gates re-sending one-time codes on a channel with a
provider-declared cooldown (SMS today).  It follows the same
daemon-thread lifecycle as the other background services: ``start``
spawns a worker, ``stop`` signals it through a ``threading.Event``.

The countdown state is owned by the timer, not by the phase machine, so
it keeps running when the user leaves and re-enters a method screen.
The controller starts it after a successful send and stops it on
reset/logout.

Thread Safety
-------------
``_lock`` guards ``_remaining``, ``_channel`` and the identity of the
current stop event.  Each ``start`` installs a fresh event and signals
the previous one, and a worker only decrements while its own event is
still current, so a superseded worker can never touch the new countdown.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from realm_login.logger import StructuredLogger
from realm_login.models.enums import MfaMethod
from realm_login.services.base_service import BaseService


class ResendCooldownTimer(BaseService):
    """Per-channel resend countdown.

    Parameters
    ----------
    logger:
        Structured JSON logger.
    tick_interval_s:
        Seconds of wall-clock time per decrement.  One second in
        production; tests shorten it.
    on_tick:
        Optional callback receiving the new ``seconds_remaining`` after
        every decrement.  Runs on the worker thread.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        tick_interval_s: float = 1.0,
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> None:
        super().__init__(logger)
        if tick_interval_s <= 0:
            raise ValueError("tick_interval_s must be positive")
        self._tick_interval_s: float = tick_interval_s
        self._on_tick: Optional[Callable[[int], None]] = on_tick

        self._lock: threading.Lock = threading.Lock()
        self._remaining: int = 0
        self._channel: Optional[MfaMethod] = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, seconds: int, channel: MfaMethod = MfaMethod.SMS) -> None:
        """(Re)initialise the countdown to *seconds* for *channel*.

        Any running countdown is cancelled first.  ``start(0)`` leaves
        the timer ready with no worker running.

        Raises:
            ValueError: If *seconds* is negative or not an integer.
        """
        if isinstance(seconds, bool) or not isinstance(seconds, int):
            raise ValueError("cooldown seconds must be an integer")
        if seconds < 0:
            raise ValueError("cooldown seconds must not be negative")

        event = threading.Event()
        with self._lock:
            self._swap_event(event if seconds > 0 else None)
            self._remaining = seconds
            self._channel = channel if seconds > 0 else None

        if seconds == 0:
            return

        thread = threading.Thread(
            target=self._run_loop,
            args=(event,),
            name=f"Cooldown-{channel}",
            daemon=True,
        )
        thread.start()
        with self._lock:
            if self._stop_event is event:
                self._thread = thread
        self._audit(
            "COOLDOWN_STARTED",
            "Resend cooldown started: %ds on %s.",
            seconds, channel,
            seconds=seconds, channel=channel,
        )

    def stop(self) -> None:
        """Cancel the countdown early and mark the timer ready.

        Idempotent and safe to call when nothing is running.  Does not
        invoke ``on_tick``.
        """
        with self._lock:
            self._swap_event(None)
            was_running = self._remaining > 0
            self._remaining = 0
            self._channel = None
        if was_running:
            self._logger.debug("Resend cooldown cancelled.")

    def tick(self) -> int:
        """Advance the countdown by one step and return the new value.

        The background worker calls this once per interval; a
        single-threaded scheduler may call it directly instead.
        """
        with self._lock:
            if self._remaining == 0:
                return 0
            self._remaining -= 1
            remaining = self._remaining
        self._notify(remaining)
        return remaining

    def is_ready(self) -> bool:
        """``True`` when a send is allowed (no cooldown outstanding)."""
        return self.seconds_remaining == 0

    @property
    def seconds_remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def channel(self) -> Optional[MfaMethod]:
        """The channel the current countdown applies to, ``None`` when idle."""
        with self._lock:
            return self._channel

    @property
    def is_running(self) -> bool:
        """``True`` while a worker thread is counting down."""
        with self._lock:
            thread = self._thread
        return thread is not None and thread.is_alive()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run_loop(self, stop_event: threading.Event) -> None:
        """Decrement once per interval against a monotonic schedule."""
        next_deadline = time.monotonic() + self._tick_interval_s
        while not stop_event.wait(max(0.0, next_deadline - time.monotonic())):
            next_deadline += self._tick_interval_s
            with self._lock:
                if self._stop_event is not stop_event or self._remaining == 0:
                    break
                self._remaining -= 1
                remaining = self._remaining
            self._notify(remaining)
            if remaining == 0:
                self._logger.debug("Resend cooldown elapsed.")
                break

        with self._lock:
            if self._stop_event is stop_event:
                self._stop_event = None
                self._thread = None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _swap_event(self, event: Optional[threading.Event]) -> None:
        """Install *event* as current and signal the old one.

        Caller MUST hold ``self._lock``.  The superseded worker wakes at
        once and exits without touching the new countdown, so callers
        never block on it.
        """
        if self._stop_event is not None:
            self._stop_event.set()
        self._stop_event = event
        self._thread = None

    def _notify(self, remaining: int) -> None:
        if self._on_tick is None:
            return
        try:
            self._on_tick(remaining)
        except Exception:
            self._logger.exception("Cooldown on_tick callback failed.")
