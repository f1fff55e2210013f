"""
monitor.py — File-system watcher for certsync.

Uses the ``watchdog`` library to watch the directories that hold the
certificate and key files and converts raw events into ``ChangeEvent``
objects.  Events are queued so the orchestrator can block on them without
polling.

Certificates are usually replaced atomically (write a temp file, rename it
over the old one), and the directory may not exist until the first
certificate has been issued, so the *parent directory* of every watched
file is observed rather than the file itself.

Public API
----------
PathWatcher(resources, use_polling, poll_interval, retry_interval)
    start()           Register watches and begin delivering events.
    get(timeout)      Next ChangeEvent, or None after *timeout* seconds.
    events(stop)      Generator over ChangeEvents until *stop* is set.
    stop()            Stop watching.  ``start()`` may be called again.
"""

from __future__ import annotations

import errno
import logging
import os
import queue
import threading
import time
from typing import Iterable, Iterator

from watchdog.events import (
    DirDeletedEvent,
    DirMovedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from certsync.errors import WatchSetupError, WatchTransientError
from certsync.events import ChangeEvent, ChangeKind, WatchedResource
from certsync.utils import backoff_delay

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Mapping watchdog event types → ChangeKind.  inotify reports attribute
# changes (chmod/chown) as plain modifications; PathWatcher tells them apart
# by comparing size and mtime with the last event for the file.
# ---------------------------------------------------------------------------
_EVENT_MAP = {
    FileCreatedEvent: ChangeKind.CREATE,
    FileModifiedEvent: ChangeKind.MODIFY,
    FileClosedEvent: ChangeKind.MODIFY,
    FileMovedEvent: ChangeKind.CREATE,
}

# errno values meaning the native backend is exhausted or unavailable
_NATIVE_UNAVAILABLE = {errno.EMFILE, errno.ENOSPC, errno.ENOSYS}


class _CertHandler(FileSystemEventHandler):
    """Filters watchdog events down to the watched files."""

    def __init__(self, watcher: "PathWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            # The watched directory itself went away; re-register later.
            if isinstance(event, (DirDeletedEvent, DirMovedEvent)):
                self._watcher._directory_lost(os.fsdecode(event.src_path))
            return

        kind = _EVENT_MAP.get(type(event))
        if kind is None:
            return

        # For moved/renamed events, use the destination path
        path = os.fsdecode(getattr(event, "dest_path", "") or event.src_path)
        if type(event) is FileModifiedEvent:
            kind = self._watcher._modification_kind(path)
        self._watcher._emit(path, kind)


class PathWatcher:
    """Watches certificate/key pairs and queues ``ChangeEvent``s.

    Parameters:
        resources:      The pairs to watch.
        use_polling:    Force watchdog's PollingObserver.
        poll_interval:  Seconds between polls in polling mode.
        retry_interval: Upper bound in seconds between attempts to register
                        a directory that does not exist yet.
    """

    def __init__(
        self,
        resources: Iterable[WatchedResource],
        use_polling: bool = False,
        poll_interval: float = 2.0,
        retry_interval: float = 5.0,
    ) -> None:
        self._resources = list(resources)
        self.use_polling = use_polling
        self.poll_interval = poll_interval
        self.retry_interval = retry_interval

        self._by_path: dict[str, WatchedResource] = {}
        for res in self._resources:
            for path in res.paths:
                self._by_path[path] = res
        self._dirs = sorted({os.path.dirname(p) for p in self._by_path})

        self._queue: queue.Queue[ChangeEvent] = queue.Queue()
        self._lock = threading.Lock()
        self._observer = None
        self._watches: dict[str, object] = {}
        self._pending: dict[str, int] = {}
        self._lost: list = []
        self._fatal: WatchSetupError | None = None
        self._stats: dict[str, tuple[int, int]] = {}
        self._stopping = threading.Event()
        self._wake = threading.Event()
        self._retry_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._observer is not None

    @property
    def pending_directories(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def start(self) -> None:
        """Register every directory and start the observer.

        Directories that do not exist yet are retried in the background.

        Raises:
            WatchSetupError: if a directory exists but cannot be watched.
        """
        if self.running:
            return
        self._stopping.clear()
        self._fatal = None
        self._watches.clear()
        self._lost = []
        self._pending = {d: 0 for d in self._dirs}
        self._start_observer()

        try:
            for directory in list(self._pending):
                self._try_register(directory)
        except BaseException:
            self.stop()
            raise

        self._retry_thread = threading.Thread(
            target=self._retry_loop, name="certsync-watch-retry", daemon=True
        )
        self._retry_thread.start()

    def stop(self) -> None:
        """Stop the observer and the registration retry thread."""
        self._stopping.set()
        self._wake.set()
        if self._retry_thread is not None:
            self._retry_thread.join(timeout=5)
            self._retry_thread = None
        with self._lock:
            observer, self._observer = self._observer, None
            self._watches.clear()
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
            logger.info("Watcher stopped.")

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Block until the next event, or return ``None`` on timeout.

        Raises:
            WatchSetupError: if background registration hit a fatal error.
        """
        if self._fatal is not None:
            raise self._fatal
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            if self._fatal is not None:
                raise self._fatal
            return None

    def events(
        self, stop: threading.Event | None = None, tick: float = 1.0
    ) -> Iterator[ChangeEvent]:
        """Yield events until *stop* is set (forever if ``None``)."""
        while stop is None or not stop.is_set():
            event = self.get(timeout=tick)
            if event is not None:
                yield event

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _make_observer(self):
        if self.use_polling:
            return PollingObserver(timeout=self.poll_interval)
        return Observer()

    def _start_observer(self) -> None:
        observer = self._make_observer()
        observer.daemon = True
        try:
            observer.start()
        except OSError as exc:
            if self.use_polling:
                raise WatchSetupError("<observer>", str(exc)) from exc
            logger.warning(
                "Native file watching unavailable (%s); polling every %.1fs",
                exc,
                self.poll_interval,
            )
            self.use_polling = True
            observer = self._make_observer()
            observer.daemon = True
            observer.start()
        self._observer = observer
        logger.info(
            "Watcher started (%s).",
            "polling" if self.use_polling else type(observer).__name__,
        )

    def _fall_back_to_polling(self) -> None:
        with self._lock:
            old, self._observer = self._observer, None
            self._pending.update({d: 0 for d in self._watches})
            self._watches.clear()
        if old is not None:
            old.stop()
            old.join(timeout=5)
        self.use_polling = True
        self._start_observer()

    def _try_register(self, directory: str) -> bool:
        """Attempt to watch *directory*; return True once registered."""
        if not os.path.isdir(directory):
            logger.debug("Directory %s does not exist yet; will retry", directory)
            return False

        handler = _CertHandler(self)
        try:
            watch = self._observer.schedule(handler, directory, recursive=False)
        except PermissionError as exc:
            raise WatchSetupError(directory, "permission denied") from exc
        except FileNotFoundError:
            # Removed between the isdir() check and the schedule call
            return False
        except OSError as exc:
            if exc.errno in _NATIVE_UNAVAILABLE and not self.use_polling:
                logger.warning(
                    "Native watch limit reached on %s (%s); switching to polling",
                    directory,
                    exc,
                )
                self._fall_back_to_polling()
                return self._try_register(directory)
            with self._lock:
                self._pending[directory] = self._pending.get(directory, 0) + 1
            err = WatchTransientError(directory, str(exc))
            logger.warning("%s (attempt %d)", err, self._pending[directory])
            return False

        with self._lock:
            self._watches[directory] = watch
            self._pending.pop(directory, None)
        logger.info("Watching: %s", directory)

        # The files may have appeared before the watch existed.
        for path in self._by_path:
            if os.path.dirname(path) == directory and os.path.exists(path):
                self._emit(path, ChangeKind.CREATE)
        return True

    def _retry_loop(self) -> None:
        while not self._stopping.is_set():
            with self._lock:
                failures = list(self._pending.values())
            # Nothing pending: sleep until a directory is lost or stop()
            timeout = None
            if failures:
                timeout = backoff_delay(max(failures) + 1, 0.5, self.retry_interval)
            self._wake.wait(timeout=timeout)
            self._wake.clear()
            self._drop_lost_watches()
            for directory in self.pending_directories:
                if self._stopping.is_set():
                    return
                try:
                    self._try_register(directory)
                except WatchSetupError as exc:
                    logger.error("%s", exc)
                    self._fatal = exc
                    return

    def _drop_lost_watches(self) -> None:
        with self._lock:
            lost, self._lost = self._lost, []
            observer = self._observer
        for watch in lost:
            if observer is None:
                break
            try:
                observer.unschedule(watch)
            except KeyError:
                pass

    def _directory_lost(self, directory: str) -> None:
        # Runs on the observer thread; unscheduling happens in _retry_loop.
        with self._lock:
            watch = self._watches.pop(directory, None)
            if watch is None:
                return
            self._pending[directory] = 0
            self._lost.append(watch)
        logger.warning("Watched directory %s disappeared; re-registering", directory)
        self._wake.set()

    def _emit(self, path: str, kind: ChangeKind) -> None:
        path = os.path.abspath(path)
        res = self._by_path.get(path)
        if res is None:
            return
        stat = _size_and_mtime(path)
        if stat is not None:
            self._stats[path] = stat
        event = ChangeEvent(
            resource=res.name, path=path, timestamp=time.time(), kind=kind
        )
        logger.debug("Event: %s %s", kind.value, path)
        self._queue.put(event)

    def _modification_kind(self, path: str) -> ChangeKind:
        """ATTRIB if only metadata changed since the file's last event."""
        path = os.path.abspath(path)
        previous = self._stats.get(path)
        if previous is not None and _size_and_mtime(path) == previous:
            return ChangeKind.ATTRIB
        return ChangeKind.MODIFY


def _size_and_mtime(path: str) -> tuple[int, int] | None:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_size, st.st_mtime_ns
