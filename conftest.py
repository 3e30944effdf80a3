from datetime import datetime, timedelta, timezone

import pytest

from hjx.cache import MemoryCacheStore
from hjx.workspace import Workspace


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep audit logs, global config and credentials out of the real ~/.hjx."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr("hjx.log.LOGS_FILE", home / ".hjx" / "logs.jsonl")
    monkeypatch.setattr("hjx.config.GLOBAL_CONFIG_FILE", home / ".hjx" / "config.json")
    monkeypatch.setattr("hjx.credentials.HJX_CREDENTIALS_FILE", home / ".hjx" / "credentials")
    monkeypatch.setattr("hjx.cache.local.CACHE_DIR", home / ".hjx" / "cache")
    return home


class ManualTimer:
    def __init__(self, clock, interval, callback):
        self.clock = clock
        self.interval = interval
        self.callback = callback
        self.due = None
        self.cancelled = False
        self.fired = False

    def start(self):
        self.due = self.clock.now + self.interval
        self.clock.timers.append(self)

    def cancel(self):
        self.cancelled = True


class ManualClock:
    """Timer factory + monotonic clock driven by advance()."""

    def __init__(self, start=None):
        self.now = 0.0
        self.timers = []
        self.wall = start or datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)

    def timer(self, interval, callback):
        return ManualTimer(self, interval, callback)

    def advance(self, seconds):
        self.now += seconds
        self.wall += timedelta(seconds=seconds)
        for timer in list(self.timers):
            if timer.cancelled or timer.fired or timer.due > self.now:
                continue
            timer.fired = True
            timer.callback()

    def datetime(self):
        return self.wall

    @property
    def live_timers(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache():
    return MemoryCacheStore()


@pytest.fixture
def workspace(cache, clock):
    return Workspace(
        {"debounce_seconds": 0.5},
        cache=cache,
        clock=clock.datetime,
        timer_factory=clock.timer,
    )
