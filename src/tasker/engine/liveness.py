"""Liveness driver: event triggers with a polling fallback."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from tasker.engine.models import DispatchResult

logger = logging.getLogger(__name__)

DispatchCallback = Callable[[str | None], object]
Spawner = Callable[[Callable[[], None]], threading.Thread | None]

DEFAULT_CLOSE_TIMEOUT_SECONDS = 15.0


class DispatchTrigger(Protocol):
    """Schedules a near-future dispatch after a state change."""

    def bind(self, dispatch: DispatchCallback) -> None:
        """Set the callback run for accepted notifications."""

    def notify(self, stack_run_id: str | None = None) -> bool:
        """Request a dispatch; returns whether the request was accepted."""

    def close(self, timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS) -> None:
        """Stop accepting notifications and wait for dispatches already started."""


class NullTrigger:
    """Trigger that drops every notification; polling alone keeps work moving."""

    def bind(self, dispatch: DispatchCallback) -> None:
        return None

    def notify(self, stack_run_id: str | None = None) -> bool:
        return False

    def close(self, timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS) -> None:
        return None


def _spawn_daemon(target: Callable[[], None]) -> threading.Thread:
    thread = threading.Thread(target=target, name="tasker-trigger", daemon=True)
    thread.start()
    return thread


class ThrottledTrigger:
    """Dispatch on a background thread, at most once per ``min_interval_seconds``.

    Notifications arriving closer together are dropped; the polling driver
    picks up whatever they would have dispatched. ``close`` waits for the
    dispatches already running.
    """

    def __init__(
        self,
        *,
        min_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        spawn: Spawner = _spawn_daemon,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._spawn = spawn
        self._dispatch: DispatchCallback | None = None
        self._lock = threading.RLock()
        self._last_fired_at: float | None = None
        self._threads: list[threading.Thread] = []
        self._closed = False
        self.accepted = 0
        self.dropped = 0

    def bind(self, dispatch: DispatchCallback) -> None:
        self._dispatch = dispatch

    def notify(self, stack_run_id: str | None = None) -> bool:
        if self._dispatch is None:
            logger.debug("Trigger is not bound; notification ignored")
            return False
        with self._lock:
            if self._closed:
                logger.debug("Trigger is closed (stack_run_id=%s)", stack_run_id)
                return False
            now = self._clock()
            if (
                self._last_fired_at is not None
                and now - self._last_fired_at < self.min_interval_seconds
            ):
                self.dropped += 1
                logger.debug("Trigger throttled (stack_run_id=%s)", stack_run_id)
                return False
            self._last_fired_at = now
            self.accepted += 1
            dispatch = self._dispatch
            thread = self._spawn(lambda: self._run(dispatch, stack_run_id))
            if thread is not None:
                self._threads = [alive for alive in self._threads if alive.is_alive()]
                self._threads.append(thread)
        return True

    def close(self, timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS) -> None:
        with self._lock:
            self._closed = True
            threads, self._threads = self._threads, []
        deadline = time.monotonic() + timeout
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning("Triggered dispatch still running after %.1fs", timeout)

    def _run(self, dispatch: DispatchCallback, stack_run_id: str | None) -> None:
        try:
            dispatch(stack_run_id)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Triggered dispatch failed (stack_run_id=%s); polling will retry",
                stack_run_id,
                exc_info=True,
            )


@dataclass(slots=True)
class PollingSummary:
    """Aggregate polling counters for CLI reporting."""

    polls: int = 0
    dispatched: int = 0
    processed: int = 0
    empty_polls: int = 0
    pauses: int = 0
    errors: int = 0


class PollingDriver:
    """Periodic fallback that dispatches whenever pending frames exist."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        has_pending: Callable[[], bool],
        dispatch_next: Callable[[], DispatchResult],
        poll_interval_seconds: float = 3.0,
        max_consecutive_empty: int = 5,
        pause_seconds: float = 10.0,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.has_pending = has_pending
        self.dispatch_next = dispatch_next
        self.poll_interval_seconds = poll_interval_seconds
        self.max_consecutive_empty = max_consecutive_empty
        self.pause_seconds = pause_seconds
        self._sleep = sleep or self._sleep_with_stop
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self.last_result: DispatchResult | None = None

    def request_stop(self) -> None:
        self._stop_requested = True

    def poll_once(self) -> bool:
        """Dispatch once if any pending frame exists; returns whether one existed."""

        if not self.has_pending():
            self.last_result = None
            return False
        self.last_result = self.dispatch_next()
        return True

    def run_loop(self, *, max_polls: int | None = None) -> PollingSummary:
        """Poll until stopped (signal or ``request_stop``) or ``max_polls`` is reached."""

        summary = PollingSummary()
        consecutive_empty = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_polls is not None and summary.polls >= max_polls:
                    break
                summary.polls += 1
                try:
                    found = self.poll_once()
                except Exception:
                    summary.errors += 1
                    logger.exception("Polling dispatch failed")
                    found = True

                if found:
                    consecutive_empty = 0
                    summary.dispatched += 1
                    if self.last_result is not None and self.last_result.processed:
                        summary.processed += 1
                        continue
                else:
                    consecutive_empty += 1
                    summary.empty_polls += 1

                if max_polls is not None and summary.polls >= max_polls:
                    break
                if consecutive_empty >= self.max_consecutive_empty:
                    logger.info(
                        "No pending frames for %d polls; pausing %.1fs",
                        consecutive_empty,
                        self.pause_seconds,
                    )
                    summary.pauses += 1
                    consecutive_empty = 0
                    self._sleep(self.pause_seconds)
                else:
                    self._sleep(self.poll_interval_seconds)
        if self._stop_signal_name is not None:
            logger.info("Polling stopped by %s", self._stop_signal_name)
        return summary

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_requested = True
            self._stop_signal_name = name

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass
