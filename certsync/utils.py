"""certsync utility functions."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from typing import Any

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


def atomic_write_json(path: str, data: Any, mode: int | None = None) -> None:
    """Write *data* as JSON to *path* via a temp file and ``os.replace``.

    The temp file lives in the target directory so the rename never
    crosses filesystems.  Readers see either the old or the new document.
    """
    dirname = os.path.dirname(os.path.abspath(path))
    fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=".tmp", dir=dirname)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def content_fingerprint(*paths: str) -> str:
    """SHA-256 over the contents of *paths*, in order."""
    digest = hashlib.sha256()
    for path in paths:
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK), b""):
                digest.update(chunk)
        # Separator so (ab, c) and (a, bc) differ
        digest.update(b"\0")
    return "sha256:" + digest.hexdigest()


def mtime_fingerprint(*paths: str) -> str:
    return "mtime:" + ":".join(str(os.stat(p).st_mtime_ns) for p in paths)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff (base 2) for the 1-based *attempt*, capped."""
    return min(cap, base * (2 ** max(attempt - 1, 0)))


def load_marker(path: str | None) -> dict[str, str]:
    """Read the persisted ``{resource: fingerprint}`` marker file.

    A missing or unreadable marker is treated as empty; the daemon then
    falls back to re-deriving state from disk.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable marker file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring marker file %s: not a JSON object", path)
        return {}
    return {str(k): str(v) for k, v in data.items()}


def save_marker(path: str | None, fingerprints: dict[str, str]) -> None:
    if not path:
        return
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    atomic_write_json(path, dict(sorted(fingerprints.items())))
