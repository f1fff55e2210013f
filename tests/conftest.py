import collections
import time

import pytest

from certsync.events import ChangeEvent, ChangeKind, WatchedResource


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingStore:
    """In-memory ConfigStore that can be told to fail."""

    def __init__(self, failures=(), log=None):
        self.failures = list(failures)
        self.applied = []
        self.values = {}
        self.log = log if log is not None else []

    def describe(self):
        return "memory:test"

    def apply(self, updates):
        if self.failures:
            raise self.failures.pop(0)
        self.log.append("propagate")
        self.applied.append(dict(updates))
        changed = any(self.values.get(k) != v for k, v in updates.items())
        self.values.update(updates)
        return changed


class RecordingCapability:
    def __init__(self, errors=(), log=None):
        self.errors = list(errors)
        self.calls = 0
        self.log = log if log is not None else []

    def describe(self):
        return "fake:service"

    def reload(self, timeout):
        if self.errors:
            raise self.errors.pop(0)
        self.calls += 1
        self.log.append("reload")


class ScriptedWatcher:
    """Stands in for PathWatcher: ``get`` replays scripted steps.

    A step is a ChangeEvent, ``None``, or a callable returning either.
    When the script runs out the daemon is stopped (or ``None`` is
    returned forever with ``stop_when_empty=False``).
    """

    def __init__(self, steps=(), stop_when_empty=True):
        self.steps = collections.deque(steps)
        self.stop_when_empty = stop_when_empty
        self.daemon = None
        self.starts = 0
        self.stops = 0

    def start(self):
        self.starts += 1

    def stop(self):
        self.stops += 1

    def get(self, timeout=None):
        if not self.steps:
            if self.stop_when_empty and self.daemon is not None:
                self.daemon.stop()
            elif timeout:
                time.sleep(min(timeout, 0.01))
            return None
        step = self.steps.popleft()
        return step() if callable(step) else step


def write_pair(resource, cert, key="KEY"):
    with open(resource.cert_path, "w") as fh:
        fh.write(cert)
    with open(resource.key_path, "w") as fh:
        fh.write(key)


def event_for(resource, kind=ChangeKind.MODIFY):
    return ChangeEvent(
        resource=resource.name, path=resource.cert_path, timestamp=0.0, kind=kind
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ssl_dir(tmp_path):
    d = tmp_path / "ssl"
    d.mkdir()
    return d


@pytest.fixture
def resource(ssl_dir):
    return WatchedResource(
        name="panel",
        cert_path=str(ssl_dir / "cert.pem"),
        key_path=str(ssl_dir / "key.pem"),
    )
