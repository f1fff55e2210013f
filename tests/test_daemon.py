import errno
import json
import threading

import pytest
from watchdog.observers.polling import PollingObserver

from certsync.daemon import CertSyncDaemon, State
from certsync.debouncer import ChangeDebouncer, fingerprint
from certsync.errors import (
    ConfigRecordMissing,
    ConfigWriteError,
    TargetNotFound,
)
from certsync.monitor import PathWatcher
from certsync.propagator import ConfigPropagator
from certsync.reloader import ServiceReloader

from conftest import (
    RecordingCapability,
    RecordingStore,
    ScriptedWatcher,
    event_for,
    write_pair,
)


def make_daemon(
    resource,
    steps=(),
    store=None,
    capability=None,
    state_file=None,
    initial_sync=False,
    stop_when_empty=True,
    max_attempts=5,
    **kwargs,
):
    watcher = ScriptedWatcher(steps, stop_when_empty=stop_when_empty)
    daemon = CertSyncDaemon(
        [resource],
        watcher=watcher,
        debouncer=ChangeDebouncer([resource], window=0),
        propagator=ConfigPropagator(
            store if store is not None else RecordingStore(),
            max_attempts=max_attempts,
            timeout=None,
            sleep=lambda s: None,
        ),
        reloader=ServiceReloader(capability or RecordingCapability()),
        state_file=state_file,
        initial_sync=initial_sync,
        restart_backoff=0,
        idle_tick=0.01,
        **kwargs,
    )
    watcher.daemon = daemon
    return daemon


def rotate(resource, content):
    def step():
        write_pair(resource, content)
        return event_for(resource)

    return step


def test_rotation_there_and_back_propagates_twice(resource, tmp_path):
    write_pair(resource, "A")
    fp_a = fingerprint(resource)
    log = []
    store = RecordingStore(log=log)
    cap = RecordingCapability(log=log)
    state = tmp_path / "state.json"

    daemon = make_daemon(
        resource,
        steps=[
            rotate(resource, "B"),
            event_for(resource),  # duplicate notification, same content
            event_for(resource),
            rotate(resource, "A"),
        ],
        store=store,
        capability=cap,
        state_file=str(state),
    )

    assert daemon.run() == 0
    assert log == ["propagate", "reload", "propagate", "reload"]
    assert resource.last_good == fp_a
    assert json.loads(state.read_text()) == {"panel": fp_a}
    assert daemon.state is State.STOPPED


def test_startup_without_marker_propagates_existing_pair(resource, tmp_path):
    write_pair(resource, "A")
    store = RecordingStore()
    state = tmp_path / "state.json"

    daemon = make_daemon(resource, store=store, state_file=str(state), initial_sync=True)

    assert daemon.run() == 0
    assert len(store.applied) == 1
    assert json.loads(state.read_text()) == {"panel": fingerprint(resource)}


def test_startup_with_matching_marker_does_nothing(resource, tmp_path):
    write_pair(resource, "A")
    state = tmp_path / "state.json"
    state.write_text(json.dumps({"panel": fingerprint(resource)}))
    store = RecordingStore()
    cap = RecordingCapability()

    daemon = make_daemon(
        resource, store=store, capability=cap, state_file=str(state), initial_sync=True
    )

    assert daemon.run() == 0
    assert store.applied == []
    assert cap.calls == 0


def test_startup_with_stale_marker_propagates(resource, tmp_path):
    write_pair(resource, "B")
    state = tmp_path / "state.json"
    state.write_text(json.dumps({"panel": "sha256:old"}))
    store = RecordingStore()

    daemon = make_daemon(resource, store=store, state_file=str(state), initial_sync=True)

    assert daemon.run() == 0
    assert len(store.applied) == 1


def test_missing_record_is_reported_and_loop_continues(resource, caplog):
    write_pair(resource, "A")
    log = []
    store = RecordingStore(
        failures=[ConfigRecordMissing("memory:test", "no settings row for 'webKeyFile'")],
        log=log,
    )
    cap = RecordingCapability(log=log)

    daemon = make_daemon(
        resource,
        steps=[rotate(resource, "B"), rotate(resource, "C")],
        store=store,
        capability=cap,
    )

    assert daemon.run() == 0
    # The failed propagation was never followed by a reload
    assert log == ["propagate", "reload"]
    assert [r.success for r in daemon.records] == [False, True]
    assert "no settings row" in caplog.text
    assert resource.last_good == fingerprint(resource)


def test_failed_propagation_never_reloads(resource):
    write_pair(resource, "A")
    store = RecordingStore(failures=[ConfigWriteError("memory:test", "locked")] * 10)
    cap = RecordingCapability()

    daemon = make_daemon(
        resource,
        store=store,
        capability=cap,
        initial_sync=True,
        stop_when_empty=False,
        max_attempts=2,
        max_restarts=2,
    )

    assert daemon.run() == 1
    assert cap.calls == 0
    assert resource.last_good is None
    assert daemon.watcher.starts == 3
    assert daemon.watcher.stops == 3
    assert daemon.state is State.STOPPED


def test_unwatchable_path_exhausts_restarts(resource, monkeypatch, caplog):
    def denied(self, handler, path, recursive=False):
        raise PermissionError(errno.EACCES, "Permission denied", path)

    monkeypatch.setattr(PollingObserver, "schedule", denied)
    write_pair(resource, "A")
    daemon = make_daemon(resource, max_restarts=2)
    watcher = PathWatcher([resource], use_polling=True, poll_interval=0.1)
    daemon.watcher = watcher

    status = []
    runner = threading.Thread(target=lambda: status.append(daemon.run()), daemon=True)
    runner.start()
    runner.join(timeout=10)
    if runner.is_alive():
        daemon.stop()
        runner.join(timeout=5)
        pytest.fail("daemon kept running after the restart budget was spent")

    assert status == [1]
    assert daemon.failures == 3
    assert not watcher.running
    assert "manual intervention" in caplog.text


def test_apply_once_reports_unwatchable_path(resource, monkeypatch, caplog):
    def denied(self, handler, path, recursive=False):
        raise PermissionError(errno.EACCES, "Permission denied", path)

    monkeypatch.setattr(PollingObserver, "schedule", denied)
    daemon = make_daemon(resource)
    watcher = PathWatcher([resource], use_polling=True, poll_interval=0.1)
    daemon.watcher = watcher

    assert daemon.apply_once(wait_timeout=1, wait_interval=0.1) == 1
    assert not watcher.running
    assert "permission denied" in caplog.text


def test_missing_reload_target_is_retried_on_next_change(resource):
    write_pair(resource, "A")
    store = RecordingStore()
    cap = RecordingCapability(errors=[TargetNotFound("fake:service")])

    daemon = make_daemon(
        resource,
        steps=[rotate(resource, "B"), rotate(resource, "C")],
        store=store,
        capability=cap,
    )

    assert daemon.run() == 0
    assert len(store.applied) == 2
    assert cap.calls == 1


def test_stop_lets_in_flight_change_finish(resource):
    write_pair(resource, "A")
    store = RecordingStore()
    cap = RecordingCapability()
    daemon = make_daemon(resource, store=store, capability=cap)

    def rotate_then_stop():
        write_pair(resource, "B")
        daemon.stop()
        return event_for(resource)

    daemon.watcher.steps.extend([rotate_then_stop, rotate(resource, "C")])

    assert daemon.run() == 0
    assert len(store.applied) == 1
    assert cap.calls == 1
    # The step after stop() was never consumed
    assert len(daemon.watcher.steps) == 1


# ---------------------------------------------------------------------------
# One-shot mode
# ---------------------------------------------------------------------------


def test_apply_once_propagates_and_reloads(resource, tmp_path):
    write_pair(resource, "A")
    state = tmp_path / "state.json"
    state.write_text(json.dumps({"panel": fingerprint(resource)}))
    store = RecordingStore()
    cap = RecordingCapability()

    daemon = make_daemon(resource, store=store, capability=cap, state_file=str(state))

    assert daemon.apply_once(wait_timeout=1) == 0
    assert len(store.applied) == 1
    assert cap.calls == 1


def test_apply_once_times_out_waiting_for_certificate(resource, caplog):
    daemon = make_daemon(resource, stop_when_empty=False)
    assert daemon.apply_once(wait_timeout=0.05, wait_interval=0.01) == 1
    assert "Timed out" in caplog.text
    assert daemon.watcher.stops == 1


def test_apply_once_store_failure(resource):
    write_pair(resource, "A")
    cap = RecordingCapability()
    daemon = make_daemon(
        resource,
        store=RecordingStore(failures=[ConfigRecordMissing("memory:test", "missing")]),
        capability=cap,
    )
    assert daemon.apply_once(wait_timeout=1) == 1
    assert cap.calls == 0


@pytest.mark.parametrize("errors, expected", [([], 0), ([TargetNotFound("x")], 1)])
def test_apply_once_reports_reload_outcome(resource, errors, expected):
    write_pair(resource, "A")
    daemon = make_daemon(resource, capability=RecordingCapability(errors=errors))
    assert daemon.apply_once(wait_timeout=1) == expected
