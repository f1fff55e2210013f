"""
events.py — Shared data model for certsync.

Defines the watched certificate/key pair, the change notification that the
monitor emits and the debouncer consumes, and the outcome record of one
propagation attempt.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field


class ChangeKind(str, enum.Enum):
    """Kind of filesystem notification that produced a ChangeEvent."""

    CREATE = "create"
    MODIFY = "modify"
    ATTRIB = "attrib"


@dataclass
class WatchedResource:
    """A certificate/key file pair watched for rotation.

    Attributes:
        name:      Identifier used in logs and in the marker file.
        cert_path: Absolute path of the certificate file.
        key_path:  Absolute path of the private key file.
        expected:  Fingerprint most recently confirmed by the debouncer.
        last_good: Fingerprint of the last successful propagation.  Only
                   the propagator writes this, and only after the store
                   accepted the update.
    """

    name: str
    cert_path: str
    key_path: str
    expected: str | None = None
    last_good: str | None = None

    def __post_init__(self) -> None:
        self.cert_path = os.path.abspath(self.cert_path)
        self.key_path = os.path.abspath(self.key_path)

    @property
    def paths(self) -> tuple[str, str]:
        return (self.cert_path, self.key_path)

    def owns(self, path: str) -> bool:
        return os.path.abspath(path) in self.paths

    def exists(self) -> bool:
        """True once both halves of the pair are on disk."""
        return all(os.path.isfile(p) for p in self.paths)


@dataclass
class ChangeEvent:
    """A single filesystem notification for a watched resource.

    Attributes:
        resource:  Name of the WatchedResource the path belongs to.
        path:      Absolute path that changed.
        timestamp: Unix epoch time when the event was observed.
        kind:      create / modify / attrib.
    """

    resource: str
    path: str
    timestamp: float
    kind: ChangeKind = ChangeKind.MODIFY


@dataclass
class PropagationRecord:
    """Outcome of one propagation to the configuration store."""

    resource: str
    store: str
    success: bool
    changed: bool = False
    attempts: int = 0
    error: str | None = None
    updates: dict[str, str] = field(default_factory=dict)
