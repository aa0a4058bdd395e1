"""
Shared fixtures: an isolated JITINFRA_HOME and a fake clock for the poller.
"""

import pytest


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def jitinfra_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("JITINFRA_HOME", str(home))
    return home
