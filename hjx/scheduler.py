"""Debounced autosave.

    STOPPED --start()--> IDLE --notify()--> PENDING --timer--> FLUSHING --> IDLE
                                               ^  |                |
                                               +--+ notify()       +--> PENDING if
                                             (timer restarted)          notify() came in
                                                                       while flushing

Every notify() cancels the running timer and starts a new one with the same
interval, so a burst of mutations produces one flush carrying the state after
the last of them. There is no maximum wait: a session that never pauses never
flushes, and the data stays in memory until it does.
"""

import functools
import logging
import threading

logger = logging.getLogger(__name__)

STOPPED = "stopped"
IDLE = "idle"
PENDING = "pending"
FLUSHING = "flushing"

DEFAULT_INTERVAL = 0.5


def _daemon_timer(interval, callback):
    timer = threading.Timer(interval, callback)
    timer.daemon = True
    return timer


class AutosaveScheduler:
    """Calls flush() once the stream of notify() calls has been quiet for `interval` seconds.

    timer_factory(interval, callback) must return an object with start() and
    cancel(); threading.Timer fits, tests pass a manual one.
    """

    def __init__(self, flush, interval=DEFAULT_INTERVAL, timer_factory=None):
        self._flush = flush
        self.interval = interval
        self._timer_factory = timer_factory or _daemon_timer
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._timer = None
        self._generation = 0
        self.state = STOPPED
        self.flushes = 0

    def start(self):
        """Begin accepting mutations. Call only once the startup restore has finished."""
        with self._lock:
            if self.state == STOPPED:
                self.state = IDLE

    def notify(self, *_):
        """A mutation happened. Accepts and ignores the new snapshot so it can be a state listener."""
        with self._lock:
            if self.state == STOPPED:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._timer = self._timer_factory(
                self.interval, functools.partial(self._fire, self._generation)
            )
            if self.state != FLUSHING:
                self.state = PENDING
            self._timer.start()

    def _fire(self, generation):
        with self._lock:
            # A cancelled threading.Timer can still fire if it was already running
            if generation != self._generation or self.state == STOPPED:
                return
            self._timer = None
            self.state = FLUSHING
        self._run_flush()
        with self._lock:
            if self.state == FLUSHING:
                self.state = PENDING if self._timer is not None else IDLE

    def _run_flush(self):
        with self._flush_lock:
            try:
                self._flush()
            except Exception:
                logger.exception("Autosave flush failed; the next change will retry")
            finally:
                self.flushes += 1

    def flush_now(self):
        """Cancel any pending timer and flush synchronously."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            was_stopped = self.state == STOPPED
            if not was_stopped:
                self.state = FLUSHING
        self._run_flush()
        with self._lock:
            if self.state == FLUSHING:
                self.state = PENDING if self._timer is not None else IDLE

    def stop(self, flush=True):
        """Stop scheduling. With flush=True, write out anything still pending first."""
        with self._lock:
            # A notify() during a flush leaves the state at FLUSHING with a live timer
            pending = self.state != STOPPED and (self.state == PENDING or self._timer is not None)
        if flush and pending:
            self.flush_now()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self.state = STOPPED

    @property
    def pending(self):
        """Unsaved changes are waiting for a flush."""
        return self.state == PENDING or (self.state == FLUSHING and self._timer is not None)
