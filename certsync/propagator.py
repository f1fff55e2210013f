"""
propagator.py — Writes certificate paths into the configuration store.

Wraps a ConfigStore with the retry policy: transient write failures are
retried with exponential backoff (base 2, capped), structural problems
(missing record, malformed store) are raised immediately, and running out
of attempts raises the fatal ``PropagationFailed``.

All writes go through one lock so two certificates rotating at the same
time never interleave their updates to a shared store.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Sequence

from certsync.errors import ConfigError, ConfigWriteError, PropagationFailed
from certsync.events import PropagationRecord, WatchedResource
from certsync.stores import ConfigStore
from certsync.utils import backoff_delay

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0


def map_path(path: str, mappings: Sequence[tuple[str, str]]) -> str:
    """Rewrite a host path into the path the service sees.

    *mappings* is a list of ``(host_prefix, service_prefix)`` pairs; the
    longest matching host prefix wins.  Unmatched paths are returned as is.

    >>> map_path("/srv/caddy_data/caddy/x.crt", [("/srv/caddy_data", "/data")])
    '/data/caddy/x.crt'
    """
    best: tuple[str, str] | None = None
    for host, target in mappings:
        host = os.path.abspath(host)
        if path == host or path.startswith(host.rstrip("/") + "/"):
            if best is None or len(host) > len(best[0]):
                best = (host, target)
    if best is None:
        return path
    host, target = best
    return target.rstrip("/") + path[len(host):] if path != host else target


class ConfigPropagator:
    """Applies a confirmed certificate change to a ConfigStore.

    Parameters:
        store:        Destination store.
        cert_setting: Store key that receives the certificate path.
        key_setting:  Store key that receives the private-key path.
        path_map:     ``(host_prefix, service_prefix)`` rewrites.
        max_attempts: Attempts before declaring the failure fatal.
        base_delay:   First retry delay in seconds.
        max_delay:    Retry delay ceiling in seconds.
        timeout:      Per-attempt timeout in seconds (``None`` disables).
        sleep:        Sleep function (injectable for tests).
    """

    def __init__(
        self,
        store: ConfigStore,
        cert_setting: str = "certFile",
        key_setting: str = "keyFile",
        path_map: Sequence[tuple[str, str]] = (),
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        timeout: float | None = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.cert_setting = cert_setting
        self.key_setting = key_setting
        self.path_map = list(path_map)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._sleep = sleep
        self._lock = threading.Lock()

    def updates_for(self, resource: WatchedResource) -> dict[str, str]:
        return {
            self.cert_setting: map_path(resource.cert_path, self.path_map),
            self.key_setting: map_path(resource.key_path, self.path_map),
        }

    def _apply_once(self, updates: dict[str, str]) -> bool:
        if not self.timeout:
            return self.store.apply(updates)
        executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="certsync-propagate"
        )
        future = executor.submit(self.store.apply, updates)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            timeout_error = ConfigWriteError(
                self.store.describe(), f"timed out after {self.timeout:.1f}s"
            )
        finally:
            executor.shutdown(wait=False)

        # The attempt must be over before another write may start.
        interrupt = getattr(self.store, "interrupt", None)
        if interrupt is not None:
            interrupt()
        logger.warning("%s; waiting for the write to finish", timeout_error)
        try:
            changed = future.result()
        except ConfigWriteError as exc:
            raise timeout_error from exc
        logger.warning("%s: write completed after the timeout", self.store.describe())
        return changed

    def propagate(
        self, resource: WatchedResource, fingerprint: str
    ) -> PropagationRecord:
        """Write *resource*'s paths to the store and mark *fingerprint* good.

        Returns:
            A successful PropagationRecord.

        Raises:
            ConfigRecordMissing / ConfigStoreMalformed: immediately, without
                retrying.
            PropagationFailed: once ``max_attempts`` transient failures
                have been seen.
        """
        updates = self.updates_for(resource)
        record = PropagationRecord(
            resource=resource.name,
            store=self.store.describe(),
            success=False,
            updates=updates,
        )
        with self._lock:
            for attempt in range(1, self.max_attempts + 1):
                record.attempts = attempt
                try:
                    record.changed = self._apply_once(updates)
                except ConfigWriteError as exc:
                    record.error = str(exc)
                    if attempt == self.max_attempts:
                        break
                    delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                    logger.warning(
                        "Propagation attempt %d/%d for %s failed: %s (retrying in %.1fs)",
                        attempt,
                        self.max_attempts,
                        resource.name,
                        exc,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                except ConfigError as exc:
                    record.error = str(exc)
                    raise

                record.success = True
                record.error = None
                resource.last_good = fingerprint
                logger.info(
                    "Propagated %s to %s (%s)",
                    resource.name,
                    record.store,
                    "updated" if record.changed else "already current",
                )
                return record

        logger.error(
            "Giving up on %s after %d attempts: cert=%s key=%s store=%s: %s",
            resource.name,
            record.attempts,
            resource.cert_path,
            resource.key_path,
            record.store,
            record.error,
        )
        raise PropagationFailed(record)
