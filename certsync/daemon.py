"""
daemon.py — Orchestrates watch → debounce → propagate → reload.

Combines the PathWatcher, ChangeDebouncer, ConfigPropagator and
ServiceReloader into a supervised loop:

  IDLE → WATCHING → DEBOUNCING → PROPAGATING → RELOADING → WATCHING

``ERROR`` is entered on any failure.  Structural store problems are
reported and the loop goes back to WATCHING; fatal failures
(unwatchable path, propagation retries exhausted) end the watch session,
which is restarted after a backoff until ``max_restarts`` consecutive
failures, at which point ``run()`` returns a non-zero status.

The per-resource fingerprints live on the WatchedResource objects owned by
the daemon; the marker file is only a snapshot of them, written after each
successful propagation so a restart does not re-apply the same pair.
"""

from __future__ import annotations

import enum
import logging
import signal
import threading
import time
from collections import deque
from typing import Callable, Iterable

from certsync.config import Settings
from certsync.debouncer import ChangeDebouncer, fingerprint
from certsync.errors import (
    ConfigError,
    PropagationFailed,
    WatchSetupError,
    WatchTransientError,
)
from certsync.events import PropagationRecord, WatchedResource
from certsync.monitor import PathWatcher
from certsync.propagator import ConfigPropagator
from certsync.reloader import ServiceReloader, make_reloader, parse_signal
from certsync.stores import open_store
from certsync.utils import backoff_delay, load_marker, save_marker

logger = logging.getLogger(__name__)


class State(str, enum.Enum):
    IDLE = "idle"
    WATCHING = "watching"
    DEBOUNCING = "debouncing"
    PROPAGATING = "propagating"
    RELOADING = "reloading"
    ERROR = "error"
    STOPPED = "stopped"


class CertSyncDaemon:
    """Supervised certificate-rotation propagation loop.

    Parameters:
        resources:       Pairs to keep in sync (shared with the components).
        watcher:         Event source.
        debouncer:       Burst coalescing and fingerprint comparison.
        propagator:      Store writer.
        reloader:        Service notifier.
        state_file:      Marker file path, or ``None`` to keep state in memory.
        initial_sync:    Propagate pairs that differ from the marker at
                         startup.  When ``False`` and there is no marker
                         entry, the pair on disk is taken as already applied.
        max_restarts:    Consecutive fatal failures tolerated.
        restart_backoff: First restart delay in seconds (doubles, capped at
                         ``restart_cap``).
        idle_tick:       Longest blocking wait, bounding shutdown latency.
    """

    def __init__(
        self,
        resources: Iterable[WatchedResource],
        watcher: PathWatcher,
        debouncer: ChangeDebouncer,
        propagator: ConfigPropagator,
        reloader: ServiceReloader,
        state_file: str | None = None,
        initial_sync: bool = True,
        max_restarts: int = 3,
        restart_backoff: float = 5.0,
        restart_cap: float = 60.0,
        idle_tick: float = 1.0,
    ) -> None:
        self.resources = list(resources)
        self.watcher = watcher
        self.debouncer = debouncer
        self.propagator = propagator
        self.reloader = reloader
        self.state_file = state_file
        self.initial_sync = initial_sync
        self.max_restarts = max_restarts
        self.restart_backoff = restart_backoff
        self.restart_cap = restart_cap
        self.idle_tick = idle_tick

        self.state = State.IDLE
        self.records: deque[PropagationRecord] = deque(maxlen=100)
        self.failures = 0
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Request a graceful shutdown; the in-flight cycle completes."""
        if not self._stop.is_set():
            logger.info("Shutdown requested.")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to ``stop()`` (main thread only)."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda signum, frame: self.stop())

    def _set_state(self, state: State, detail: str = "") -> None:
        if state is self.state:
            return
        logger.info(
            "State: %s → %s%s",
            self.state.value,
            state.value,
            f" ({detail})" if detail else "",
        )
        self.state = state

    # ------------------------------------------------------------------
    # Marker file
    # ------------------------------------------------------------------

    def load_state(self) -> None:
        marker = load_marker(self.state_file)
        for res in self.resources:
            res.last_good = marker.get(res.name)
            if res.last_good:
                logger.info("%s: last propagated %s", res.name, res.last_good[:19])

    def _persist(self) -> None:
        try:
            save_marker(
                self.state_file,
                {r.name: r.last_good for r in self.resources if r.last_good},
            )
        except OSError as exc:
            logger.warning("Could not write marker file %s: %s", self.state_file, exc)

    # ------------------------------------------------------------------
    # Daemon mode
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run until stopped.  Returns the process exit status."""
        self.load_state()
        self.failures = 0
        while not self._stop.is_set():
            try:
                self._run_session()
            except (WatchSetupError, PropagationFailed) as exc:
                self.failures += 1
                self._set_state(State.ERROR, type(exc).__name__)
                if self.failures > self.max_restarts:
                    logger.error(
                        "Fatal: %s. Gave up after %d restarts; manual intervention required.",
                        exc,
                        self.max_restarts,
                    )
                    self._set_state(State.STOPPED)
                    return 1
                delay = backoff_delay(
                    self.failures, self.restart_backoff, self.restart_cap
                )
                logger.error(
                    "Fatal: %s. Restarting in %.0fs (%d/%d).",
                    exc,
                    delay,
                    self.failures,
                    self.max_restarts,
                )
                self._stop.wait(delay)
        self._set_state(State.STOPPED)
        return 0

    def _run_session(self) -> None:
        try:
            self.watcher.start()
            self._set_state(State.WATCHING)
            self._reconcile()
            while not self._stop.is_set():
                wait = self.debouncer.time_until_due()
                wait = self.idle_tick if wait is None else min(wait, self.idle_tick)
                event = self.watcher.get(timeout=wait)
                if event is not None:
                    logger.debug("%s: %s %s", event.resource, event.kind.value, event.path)
                    self.debouncer.add(event)
                    self._set_state(State.DEBOUNCING, event.resource)
                for res in self.debouncer.due():
                    self.process(res)
                if not self.debouncer.pending:
                    self._set_state(State.WATCHING)
        finally:
            self.watcher.stop()

    def _reconcile(self) -> None:
        """Compare each pair on disk with its last propagated fingerprint."""
        for res in self.resources:
            if res.last_good is None and not self.initial_sync:
                try:
                    res.last_good = fingerprint(res, self.debouncer.mode)
                except WatchTransientError as exc:
                    logger.warning("%s", exc)
                if res.last_good:
                    logger.info("%s: recorded baseline %s", res.name, res.last_good[:19])
                continue
            self.debouncer.arm(res)

    def process(self, resource: WatchedResource) -> PropagationRecord | None:
        """Confirm, propagate and reload one resource whose window elapsed.

        Raises:
            PropagationFailed: when the store keeps failing transiently.
        """
        fp = self.debouncer.confirm(resource)
        if fp is None:
            return None

        self._set_state(State.PROPAGATING, resource.name)
        try:
            record = self.propagator.propagate(resource, fp)
        except ConfigError as exc:
            self._set_state(State.ERROR, type(exc).__name__)
            logger.error(
                "%s: %s (cert=%s key=%s). Waiting for the next change.",
                resource.name,
                exc,
                resource.cert_path,
                resource.key_path,
            )
            record = PropagationRecord(
                resource=resource.name,
                store=self.propagator.store.describe(),
                success=False,
                error=str(exc),
            )
            self.records.append(record)
            self._set_state(State.WATCHING)
            return record

        self.records.append(record)
        self.failures = 0
        self._persist()

        self._set_state(State.RELOADING, resource.name)
        self.reloader.reload()
        self._set_state(State.WATCHING)
        return record

    # ------------------------------------------------------------------
    # One-shot mode
    # ------------------------------------------------------------------

    def apply_once(self, wait_timeout: float = 180.0, wait_interval: float = 2.0) -> int:
        """Wait for every pair to exist, propagate them, reload once.

        Returns 0 on success and 1 on timeout, an unwatchable path, store
        failure or reload failure.
        """
        deadline = time.monotonic() + wait_timeout
        try:
            self.watcher.start()
            while True:
                missing = [r for r in self.resources if not r.exists()]
                if not missing:
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0 or self._stop.is_set():
                    logger.error(
                        "Timed out after %.0fs waiting for certificate(s): %s",
                        wait_timeout,
                        ", ".join(r.cert_path for r in missing),
                    )
                    return 1
                logger.info("Waiting for %s ...", ", ".join(r.name for r in missing))
                self.watcher.get(timeout=min(remaining, wait_interval))
        except WatchSetupError as exc:
            self._set_state(State.ERROR, type(exc).__name__)
            logger.error("%s", exc)
            return 1
        finally:
            self.watcher.stop()

        logger.info("Certificate(s) found.")
        for res in self.resources:
            try:
                fp = fingerprint(res, self.debouncer.mode)
                if fp is None:
                    logger.error("%s: certificate pair vanished", res.name)
                    return 1
                self._set_state(State.PROPAGATING, res.name)
                self.records.append(self.propagator.propagate(res, fp))
            except (ConfigError, PropagationFailed, WatchTransientError) as exc:
                self._set_state(State.ERROR, type(exc).__name__)
                logger.error("%s: %s", res.name, exc)
                return 1
        self._persist()

        self._set_state(State.RELOADING)
        ok = self.reloader.reload()
        self._set_state(State.STOPPED)
        return 0 if ok else 1


def build_daemon(settings: Settings, sleep: Callable[[float], None] = time.sleep) -> CertSyncDaemon:
    """Wire every component from *settings* (which must be validated)."""
    resources = settings.resources()
    store_options = {}
    if settings.store == "sqlite":
        store_options = {
            "table": settings.table,
            "key_column": settings.key_column,
            "value_column": settings.value_column,
            "timeout": settings.propagate_timeout,
        }
    store = open_store(settings.store, settings.store_path, **store_options)
    cert_setting, key_setting = settings.settings_keys()

    capability = make_reloader(
        settings.reload,
        settings.target,
        sig=parse_signal(settings.signal),
        docker_cmd=settings.docker_cmd,
        grace=settings.restart_grace,
    )
    return CertSyncDaemon(
        resources,
        watcher=PathWatcher(
            resources,
            use_polling=settings.poll,
            poll_interval=settings.poll_interval,
            retry_interval=settings.retry_interval,
        ),
        debouncer=ChangeDebouncer(
            resources,
            window=settings.debounce,
            max_wait=settings.debounce_max,
            mode=settings.fingerprint,
        ),
        propagator=ConfigPropagator(
            store,
            cert_setting=cert_setting,
            key_setting=key_setting,
            path_map=settings.path_map,
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base,
            max_delay=settings.retry_cap,
            timeout=settings.propagate_timeout,
            sleep=sleep,
        ),
        reloader=ServiceReloader(capability, timeout=settings.reload_timeout),
        state_file=settings.resolved_state_file(),
        initial_sync=settings.initial_sync,
        max_restarts=settings.max_restarts,
        restart_backoff=settings.restart_backoff,
    )
