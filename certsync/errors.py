"""
errors.py — Exception taxonomy for certsync.

Fatal conditions stop the current watch session (the orchestrator may
restart it); recoverable ones are logged and retried or deferred.
"""

from __future__ import annotations


class CertSyncError(Exception):
    """Base class for every error raised by certsync."""

    fatal = False


class WatchSetupError(CertSyncError):
    """A watched path cannot be registered (e.g. permission denied)."""

    fatal = True

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"cannot watch {path}: {reason}")
        self.path = path


class WatchTransientError(CertSyncError):
    """A recoverable error while registering or reading a watched path."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"transient error on {path}: {reason}")
        self.path = path


class ConfigError(CertSyncError):
    """Base class for configuration store failures."""

    retryable = False

    def __init__(self, store: str, reason: str) -> None:
        super().__init__(f"{store}: {reason}")
        self.store = store


class ConfigRecordMissing(ConfigError):
    """The store, or the record to update, does not exist yet."""


class ConfigStoreMalformed(ConfigError):
    """The store exists but cannot be parsed or has the wrong shape."""


class ConfigWriteError(ConfigError):
    """A transient write failure (I/O error, locked database, timeout)."""

    retryable = True


class PropagationFailed(CertSyncError):
    """Propagation kept failing until the retry budget ran out."""

    fatal = True

    def __init__(self, record) -> None:  # noqa: ANN001
        super().__init__(
            f"propagation of {record.resource} to {record.store} failed "
            f"after {record.attempts} attempts: {record.error}"
        )
        self.record = record


class TargetNotFound(CertSyncError):
    """The process or container to reload is not running."""

    def __init__(self, target: str) -> None:
        super().__init__(f"reload target not found: {target}")
        self.target = target


class ReloadError(CertSyncError):
    """Signalling or restarting the target failed or timed out."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"reload of {target} failed: {reason}")
        self.target = target
