"""Tests for targetsync.scan.ScanController."""

import pytest

from targetsync.scan import ScanController


class Navigator:
    def __init__(self, fail_on=None, raise_on=None):
        self.visits = []
        self.fail_on = fail_on
        self.raise_on = raise_on

    def __call__(self, coord):
        self.visits.append(coord)
        if coord == self.raise_on:
            raise RuntimeError("page gone")
        return coord != self.fail_on


@pytest.fixture
def nav():
    return Navigator()


def test_one_shot_plan_visits_every_coord(nav, timers):
    scan = ScanController(nav, timer_factory=timers)
    assert scan.start_plan(["1:1:1", "2:2:2", "bad", "1:1:1"], scan_delay_ms=2000)
    assert nav.visits == ["1:1:1"]
    assert timers.live[0].delay == 2.0
    assert scan.describe() == "Scan: 1/2"

    timers.fire_all()
    assert nav.visits == ["1:1:1", "2:2:2"]
    assert not scan.active
    assert scan.status_message == "Scan finished"
    assert scan.describe() == "Scan: idle"


def test_empty_queue_is_rejected(nav, timers):
    scan = ScanController(nav, timer_factory=timers)
    assert scan.start_plan(["nope"]) is False
    assert scan.status_message == "No coordinates"
    assert nav.visits == []


def test_continuous_plan_repeats(nav, timers):
    scan = ScanController(nav, timer_factory=timers)
    scan.start_plan(["1:1:1"], continuous=True, repeat_interval_ms=120000)
    timers.fire_next()
    assert scan.describe() == "Scan: waiting for next round"
    assert timers.live[0].delay == 120.0
    timers.fire_next()
    assert nav.visits == ["1:1:1", "1:1:1"]


def test_delays_are_clamped(nav, timers):
    scan = ScanController(nav, timer_factory=timers)
    scan.start_plan(["1:1:1"], continuous=True, scan_delay_ms=1, repeat_interval_ms=10)
    assert scan.plan["scanDelayMs"] == 1000
    assert scan.plan["repeatIntervalMs"] == 60000


def test_stop_cancels_pending_timers(nav, timers):
    scan = ScanController(nav, timer_factory=timers)
    scan.start_plan(["1:1:1", "2:2:2"], continuous=True)
    scan.stop("Remote STOP received")
    assert timers.live == []
    assert not scan.active and not scan.continuous
    assert scan.status_message == "Remote STOP received"


def test_new_plan_replaces_running_one(nav, timers):
    scan = ScanController(nav, timer_factory=timers)
    scan.start_plan(["1:1:1", "2:2:2"])
    stale = timers.live[0]
    scan.start_plan(["9:9:9"])
    assert stale.cancelled
    stale.callback()
    assert nav.visits == ["1:1:1", "9:9:9"]


@pytest.mark.parametrize("kwargs", [{"fail_on": "2:2:2"}, {"raise_on": "2:2:2"}])
def test_navigation_failure_stops_scan(timers, kwargs):
    nav = Navigator(**kwargs)
    scan = ScanController(nav, timer_factory=timers)
    scan.start_plan(["1:1:1", "2:2:2", "3:3:3"])
    timers.fire_all()
    assert nav.visits == ["1:1:1", "2:2:2"]
    assert not scan.active
    assert scan.status_message == "Could not navigate to 2:2:2"
