"""
Client-side scheduling primitives: debounced writers, interval pollers and
the bounded activity buffer.

Each writer is an explicit state machine:

    idle --trigger--> scheduled --timer--> in_flight --done--> idle
                                              |
                                   trigger while in flight
                                              v
                                   pending: re-armed on completion

cancel() from any state returns to idle and bumps a generation counter so
a callback that was already running cannot re-arm anything afterwards.

Timers come from an injectable factory with the threading.Timer signature
(delay_seconds, callback) so tests can drive them by hand.
"""

import logging
import threading

logger = logging.getLogger("targetsync")

IDLE = "idle"
SCHEDULED = "scheduled"
IN_FLIGHT = "in_flight"


class DebouncedTask:
    """
    Coalesce rapid triggers into one call of `action`.

    Args:
        name:               Label used in log messages.
        delay:              Seconds between trigger and run.
        action:             Callable; a truthy return value means "more work
                            is queued", which re-arms the task.
        restart_on_trigger: True  -> fire `delay` after the *last* trigger.
                            False -> fire `delay` after the *first* trigger.
        timer_factory:      threading.Timer compatible factory.
    """

    def __init__(self, name: str, delay: float, action, *, restart_on_trigger: bool = True,
                 timer_factory=threading.Timer):
        self.name = name
        self._delay = delay
        self._action = action
        self._restart = restart_on_trigger
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._state = IDLE
        self._pending = False
        self._timer = None
        self._arm_seq = 0
        self._generation = 0

    @property
    def state(self) -> str:
        return self._state

    @property
    def pending(self) -> bool:
        return self._pending

    def trigger(self) -> None:
        with self._lock:
            if self._state == IN_FLIGHT:
                self._pending = True
                return
            if self._state == SCHEDULED:
                if not self._restart:
                    return
                self._timer.cancel()
            self._arm()

    def run_now(self) -> bool:
        """Run synchronously, skipping the delay. False if a run is already in flight."""
        with self._lock:
            if self._state == IN_FLIGHT:
                self._pending = True
                return False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._begin()
            generation = self._generation
        self._execute(generation)
        return True

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._state = IDLE
            self._pending = False

    # ── Internals ─────────────────────────────────────────────────────────

    def _arm(self) -> None:
        """Start a new timer. Caller holds lock."""
        self._arm_seq += 1
        seq = self._arm_seq
        timer = self._timer_factory(self._delay, lambda: self._fire(seq))
        timer.daemon = True
        self._timer = timer
        self._state = SCHEDULED
        timer.start()

    def _begin(self) -> None:
        """Enter in_flight. Caller holds lock."""
        self._arm_seq += 1
        self._timer = None
        self._state = IN_FLIGHT
        self._pending = False

    def _fire(self, seq: int) -> None:
        with self._lock:
            if seq != self._arm_seq or self._state != SCHEDULED:
                return
            self._begin()
            generation = self._generation
        self._execute(generation)

    def _execute(self, generation: int) -> None:
        more = False
        try:
            more = bool(self._action())
        except Exception as exc:
            logger.warning(f"  [{self.name}] run failed: {exc}")
        with self._lock:
            if generation != self._generation:
                return
            self._state = IDLE
            if self._pending or more:
                self._pending = False
                self._arm()


class PeriodicTask:
    """
    Call `action` every `interval` seconds.

    The next tick is armed before the action runs, so a slow or failing
    call never stops the schedule. A tick that finds the previous call
    still in flight is skipped.
    """

    def __init__(self, name: str, interval: float, action, *, timer_factory=threading.Timer):
        self.name = name
        self._interval = interval
        self._action = action
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._running = False
        self._in_flight = False
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm()

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            self._running = False
            self._in_flight = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def run_now(self, *args, **kwargs) -> bool:
        """Run the action in the caller's thread unless a run is already in flight."""
        with self._lock:
            if self._in_flight:
                logger.debug(f"  [{self.name}] previous run still in flight, skipping")
                return False
            self._in_flight = True
            generation = self._generation
        try:
            self._action(*args, **kwargs)
        except Exception as exc:
            logger.warning(f"  [{self.name}] run failed: {exc}")
        finally:
            with self._lock:
                if generation == self._generation:
                    self._in_flight = False
        return True

    def _arm(self) -> None:
        """Caller holds lock."""
        generation = self._generation
        timer = self._timer_factory(self._interval, lambda: self._tick(generation))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._running:
                return
            self._arm()
        self.run_now()


class ActivityBuffer:
    """
    Bounded FIFO of pending observations.

    Beyond `max_size` the oldest entries are dropped. A batch that failed to
    send goes back to the front and the buffer is re-clamped, again
    dropping the oldest.
    """

    def __init__(self, max_size: int = 1000, batch_size: int = 80):
        self._items: list = []
        self._lock = threading.Lock()
        self.max_size = max_size
        self.batch_size = batch_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def push(self, item) -> int:
        """Append one item; returns how many old items were dropped."""
        with self._lock:
            self._items.append(item)
            return self._clamp()

    def take_batch(self) -> list:
        with self._lock:
            batch = self._items[:self.batch_size]
            del self._items[:self.batch_size]
            return batch

    def put_back(self, batch: list) -> int:
        """Return an unsent batch to the front; returns how many items were dropped."""
        if not batch:
            return 0
        with self._lock:
            self._items = list(batch) + self._items
            return self._clamp()

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def snapshot(self) -> list:
        with self._lock:
            return list(self._items)

    def _clamp(self) -> int:
        """Caller holds lock."""
        overflow = len(self._items) - self.max_size
        if overflow > 0:
            del self._items[:overflow]
            return overflow
        return 0
