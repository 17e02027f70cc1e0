"""
Scan controller: executes a scan plan on a slave agent.

A plan is an ordered coordinate queue plus the delay between coordinates
and, for continuous plans, the pause before the next round. Visiting a
coordinate is delegated to an injected `navigator(coord) -> bool`; the
page-level navigation itself lives outside this package.

Remote "start" commands replace the current plan (their delay / interval
override the local settings while that plan runs); "stop" cancels the scan
in progress and any pending repeat round.
"""

import logging
import threading
from typing import Optional

from targetsync.normalize import clamp_repeat_interval, clamp_scan_delay, normalize_coord_list

logger = logging.getLogger("targetsync")


def log_navigator(coord: str) -> bool:
    """Default navigator: records the visit and reports success."""
    logger.info(f"  [scan] Visiting {coord}")
    return True


class ScanController:
    def __init__(self, navigator=log_navigator, *, scan_delay_ms: int = 1000,
                 repeat_interval_ms: int = 60000, timer_factory=threading.Timer):
        self._navigator = navigator
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self.scan_delay_ms = clamp_scan_delay(scan_delay_ms)
        self.repeat_interval_ms = clamp_repeat_interval(repeat_interval_ms)

        self.plan: Optional[dict] = None
        self.active = False
        self.continuous = False
        self.queue: list = []
        self.index = 0
        self.status_message = ""
        self._scan_timer = None
        self._repeat_timer = None
        self._generation = 0

    # ── Public API ────────────────────────────────────────────────────────

    def start_plan(self, queue, *, continuous: bool = False, scan_delay_ms=None,
                   repeat_interval_ms=None) -> bool:
        """Replace whatever is running with a new plan. False when the queue has no valid coordinates."""
        coords = normalize_coord_list(queue)
        if not coords:
            self._set_status("No coordinates")
            return False

        with self._lock:
            self._cancel_timers()
            self._generation += 1
            self.plan = {
                "queue":            coords,
                "continuous":       bool(continuous),
                "scanDelayMs":      clamp_scan_delay(scan_delay_ms if scan_delay_ms is not None else self.scan_delay_ms),
                "repeatIntervalMs": clamp_repeat_interval(
                    repeat_interval_ms if repeat_interval_ms is not None else self.repeat_interval_ms
                ),
            }
            self.continuous = bool(continuous)
            self._begin_round()
            generation = self._generation

        logger.info(f"  [scan] Plan started: {len(coords)} coords, continuous={self.continuous}")
        self._run_current(generation)
        return True

    def stop(self, message: str = "") -> None:
        with self._lock:
            self._generation += 1
            self._cancel_timers()
            self.active = False
            self.continuous = False
            self.plan = None
        if message:
            self._set_status(message)

    def describe(self) -> str:
        if self.active and self.queue:
            return f"Scan: {min(self.index + 1, len(self.queue))}/{len(self.queue)}"
        if self.continuous:
            return "Scan: waiting for next round"
        return "Scan: idle"

    # ── Internals ─────────────────────────────────────────────────────────

    def _set_status(self, message: str) -> None:
        self.status_message = message
        logger.info(f"  [scan] {message}")

    def _cancel_timers(self) -> None:
        """Caller holds lock."""
        for timer in (self._scan_timer, self._repeat_timer):
            if timer is not None:
                timer.cancel()
        self._scan_timer = None
        self._repeat_timer = None

    def _begin_round(self) -> None:
        """Caller holds lock."""
        self.queue = list(self.plan["queue"])
        self.index = 0
        self.active = True

    def _schedule(self, delay_ms: int, callback):
        """Caller holds lock."""
        timer = self._timer_factory(delay_ms / 1000.0, callback)
        timer.daemon = True
        timer.start()
        return timer

    def _run_current(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self.active:
                return
            if self.index >= len(self.queue):
                self.active = False
                if self.continuous and self.plan:
                    self._repeat_timer = self._schedule(
                        self.plan["repeatIntervalMs"], lambda: self._next_round(generation)
                    )
                    message = "Round finished, next round scheduled"
                else:
                    message = "Scan finished"
                coord = None
            else:
                coord = self.queue[self.index]
                message = f"Scan: {self.index + 1}/{len(self.queue)} -> {coord}"

        self._set_status(message)
        if coord is None:
            return

        try:
            ok = bool(self._navigator(coord))
        except Exception as exc:
            logger.warning(f"  [scan] Navigator failed on {coord}: {exc}")
            ok = False
        if not ok:
            with self._lock:
                if generation != self._generation:
                    return
            self.stop(f"Could not navigate to {coord}")
            return

        with self._lock:
            if generation != self._generation or not self.active:
                return
            self._scan_timer = self._schedule(self.plan["scanDelayMs"], lambda: self._advance(generation))

    def _advance(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._scan_timer = None
            self.index += 1
        self._run_current(generation)

    def _next_round(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self.continuous or not self.plan:
                return
            self._repeat_timer = None
            self._begin_round()
        self._run_current(generation)
