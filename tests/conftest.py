"""Shared fixtures: manual timers, fake clock, fake sync client."""

import pytest

from targetsync.local_store import LocalStore
from targetsync.state_store import SyncStateStore
from targetsync.sync_client import SyncError, SyncStatus


class FakeTimer:
    """threading.Timer stand-in that only fires when the test says so."""

    def __init__(self, factory, delay, callback):
        self._factory = factory
        self.delay = delay
        self.callback = callback
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True
        self._factory.timers.append(self)

    def cancel(self):
        self.cancelled = True

    @property
    def live(self):
        return self.started and not self.cancelled


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        return FakeTimer(self, delay, callback)

    @property
    def live(self):
        return [t for t in self.timers if t.live]

    def fire_next(self):
        """Fire the oldest live timer. Returns it."""
        timer = self.live[0]
        timer.cancelled = True
        timer.callback()
        return timer

    def fire_all(self, limit=100):
        fired = 0
        while self.live and fired < limit:
            self.fire_next()
            fired += 1
        return fired


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeSyncClient:
    """Records requests; answers from a scripted list or a callable."""

    def __init__(self, configured=True):
        self.status = SyncStatus()
        self.configured = configured
        self.puts = []
        self.gets = 0
        self.fail_with = None
        self.state = {}
        self.put_response = None

    def get_state(self, include_log=False):
        self.gets += 1
        if self.fail_with:
            self.status.set_offline(self.fail_with)
            raise SyncError(self.fail_with)
        self.status.set_online()
        return self.state

    def put_update(self, envelope):
        self.puts.append(envelope)
        if self.fail_with:
            self.status.set_offline(self.fail_with)
            raise SyncError(self.fail_with)
        self.status.set_online()
        if callable(self.put_response):
            return self.put_response(envelope)
        return self.put_response or {}


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    s = SyncStateStore(str(tmp_path / "sync-state.json"), clock=clock)
    s.load()
    return s


@pytest.fixture
def local(tmp_path):
    return LocalStore(str(tmp_path / "local_state.json"))


@pytest.fixture
def fake_client():
    return FakeSyncClient()
