"""
debouncer.py — Change confirmation for certsync.

Coalesces bursts of ChangeEvents per resource into a single evaluation and
decides, by fingerprint, whether the certificate pair really changed:

  1. ``add(event)`` arms (or pushes out) the resource's quiet-window deadline.
  2. ``due()`` returns the resources whose window has elapsed.
  3. ``confirm(resource)`` fingerprints the pair and returns the new
     fingerprint only if it differs from the last propagated one.

Content hashes are preferred over mtimes: copying a file while preserving
its timestamp, or touching it without changing it, must not trigger a
propagation.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from certsync.errors import WatchTransientError
from certsync.events import ChangeEvent, WatchedResource
from certsync.utils import backoff_delay, content_fingerprint, mtime_fingerprint

logger = logging.getLogger(__name__)

FINGERPRINTS = {
    "content": content_fingerprint,
    "mtime": mtime_fingerprint,
}


def fingerprint(resource: WatchedResource, mode: str = "content") -> str | None:
    """Fingerprint the resource's pair, or ``None`` if either file is absent.

    Raises:
        WatchTransientError: if a file exists but could not be read.
    """
    if not resource.exists():
        return None
    try:
        return FINGERPRINTS[mode](*resource.paths)
    except FileNotFoundError:
        # Replaced between the existence check and the read
        return None
    except OSError as exc:
        raise WatchTransientError(resource.cert_path, str(exc)) from exc


class ChangeDebouncer:
    """Per-resource quiet-window debouncer.

    Parameters:
        resources:     Resources the events refer to (looked up by name).
        window:        Quiet period in seconds after the last event before
                       the resource is evaluated.
        max_wait:      Longest a burst may postpone evaluation, measured
                       from its first event.
        mode:          ``"content"`` (SHA-256) or ``"mtime"``.
        max_retries:   Read failures tolerated per burst before giving up
                       until the next event.
        retry_cap:     Upper bound in seconds on the read-retry backoff.
        clock:         Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        resources: Iterable[WatchedResource],
        window: float = 1.5,
        max_wait: float = 10.0,
        mode: str = "content",
        max_retries: int = 5,
        retry_cap: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if mode not in FINGERPRINTS:
            raise ValueError(f"unknown fingerprint mode: {mode!r}")
        self.window = window
        self.max_wait = max(max_wait, window)
        self.mode = mode
        self.max_retries = max_retries
        self.retry_cap = retry_cap
        self._clock = clock
        self._resources = {r.name: r for r in resources}
        self._deadlines: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._coalesced: dict[str, int] = {}
        self._burst_start: dict[str, float] = {}

    @property
    def pending(self) -> bool:
        return bool(self._deadlines)

    def add(self, event: ChangeEvent) -> None:
        """Record *event*; pushes the resource's deadline out by ``window``,
        but never past ``max_wait`` after the burst's first event."""
        if event.resource not in self._resources:
            logger.debug("Ignoring event for unknown resource %s", event.resource)
            return
        now = self._clock()
        first = self._burst_start.setdefault(event.resource, now)
        self._deadlines[event.resource] = min(now + self.window, first + self.max_wait)
        self._coalesced[event.resource] = self._coalesced.get(event.resource, 0) + 1

    def arm(self, resource: WatchedResource, delay: float = 0.0) -> None:
        """Schedule *resource* for evaluation without a filesystem event."""
        self._deadlines[resource.name] = self._clock() + delay

    def next_deadline(self) -> float | None:
        return min(self._deadlines.values(), default=None)

    def time_until_due(self) -> float | None:
        """Seconds until the earliest deadline (0 if overdue), or None."""
        deadline = self.next_deadline()
        if deadline is None:
            return None
        return max(0.0, deadline - self._clock())

    def due(self, now: float | None = None) -> list[WatchedResource]:
        """Pop and return the resources whose quiet window has elapsed."""
        now = self._clock() if now is None else now
        ready = [name for name, dl in self._deadlines.items() if dl <= now]
        for name in ready:
            del self._deadlines[name]
            self._burst_start.pop(name, None)
            events = self._coalesced.pop(name, 0)
            if events > 1:
                logger.debug("Coalesced %d events for %s", events, name)
        return [self._resources[name] for name in ready]

    def confirm(self, resource: WatchedResource) -> str | None:
        """Return the new fingerprint if the pair changed, else ``None``.

        On success the fingerprint is stored as ``resource.expected``;
        ``resource.last_good`` is left for the propagator to update.
        A read failure re-arms the resource with backoff.
        """
        try:
            current = fingerprint(resource, self.mode)
        except WatchTransientError as exc:
            failures = self._failures.get(resource.name, 0) + 1
            if failures > self.max_retries:
                self._failures.pop(resource.name, None)
                logger.warning(
                    "Giving up on %s after %d read failures: %s",
                    resource.name,
                    self.max_retries,
                    exc,
                )
                return None
            self._failures[resource.name] = failures
            delay = backoff_delay(failures, 0.5, self.retry_cap)
            logger.warning("%s; retrying in %.1fs", exc, delay)
            self.arm(resource, delay)
            return None

        self._failures.pop(resource.name, None)
        if current is None:
            logger.info("%s: certificate pair incomplete, waiting", resource.name)
            return None
        if current == resource.last_good:
            logger.info("%s: unchanged since last propagation", resource.name)
            return None

        resource.expected = current
        logger.info("%s: change confirmed (%s)", resource.name, current[:19])
        return current
