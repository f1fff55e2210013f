"""
config.py — Runtime settings for certsync.

Settings come from, in increasing precedence: built-in defaults, a ``.env``
file, ``CERTSYNC_*`` environment variables and command-line flags.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

from dotenv import load_dotenv

from certsync.events import WatchedResource
from certsync.reloader import RELOAD_KINDS, parse_signal
from certsync.debouncer import FINGERPRINTS

logger = logging.getLogger(__name__)

CADDY_ISSUER = "acme-v02.api.letsencrypt.org-directory"
STATE_FILENAME = ".certsync-state.json"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Store key defaults: 3x-ui's config.json and its x-ui.db settings table
DEFAULT_SETTINGS_KEYS = {
    "json": ("certFile", "keyFile"),
    "sqlite": ("webCertFile", "webKeyFile"),
}


def caddy_certificate_paths(
    data_dir: str, domain: str, issuer: str = CADDY_ISSUER
) -> tuple[str, str]:
    """Certificate and key paths Caddy uses for *domain* under *data_dir*."""
    base = os.path.join(data_dir, "caddy", "certificates", issuer, domain)
    return os.path.join(base, f"{domain}.crt"), os.path.join(base, f"{domain}.key")


def parse_path_map(entries: list[str] | str | None) -> list[tuple[str, str]]:
    """Parse ``HOST=SERVICE`` entries (a list, or one comma-separated string)."""
    if not entries:
        return []
    if isinstance(entries, str):
        entries = [e for e in entries.split(",") if e.strip()]
    result = []
    for entry in entries:
        host, sep, target = entry.partition("=")
        if not sep or not host.strip() or not target.strip():
            raise ValueError(f"invalid path mapping {entry!r}, expected HOST=SERVICE")
        result.append((host.strip(), target.strip()))
    return result


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _as_list(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


# env var → (field name, converter)
_ENV_VARS: dict[str, tuple[str, Any]] = {
    "CERTSYNC_CERT": ("certs", _as_list),
    "CERTSYNC_KEY": ("keys", _as_list),
    "CERTSYNC_DOMAIN": ("domain", str),
    "CERTSYNC_CADDY_DATA": ("caddy_data", str),
    "CERTSYNC_STORE": ("store", str),
    "CERTSYNC_STORE_PATH": ("store_path", str),
    "CERTSYNC_CERT_SETTING": ("cert_setting", str),
    "CERTSYNC_KEY_SETTING": ("key_setting", str),
    "CERTSYNC_TABLE": ("table", str),
    "CERTSYNC_PATH_MAP": ("path_map", parse_path_map),
    "CERTSYNC_RELOAD": ("reload", str),
    "CERTSYNC_TARGET": ("target", str),
    "CERTSYNC_SIGNAL": ("signal", str),
    "CERTSYNC_DOCKER_CMD": ("docker_cmd", str),
    "CERTSYNC_STATE_FILE": ("state_file", str),
    "CERTSYNC_FINGERPRINT": ("fingerprint", str),
    "CERTSYNC_DEBOUNCE": ("debounce", float),
    "CERTSYNC_DEBOUNCE_MAX": ("debounce_max", float),
    "CERTSYNC_POLL": ("poll", _as_bool),
    "CERTSYNC_POLL_INTERVAL": ("poll_interval", float),
    "CERTSYNC_MAX_ATTEMPTS": ("max_attempts", int),
    "CERTSYNC_PROPAGATE_TIMEOUT": ("propagate_timeout", float),
    "CERTSYNC_RELOAD_TIMEOUT": ("reload_timeout", float),
    "CERTSYNC_LOG_LEVEL": ("log_level", str),
}


@dataclass
class Settings:
    """Everything the daemon and the one-shot ``apply`` command need."""

    certs: list[str] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    domain: str | None = None
    caddy_data: str | None = None
    caddy_issuer: str = CADDY_ISSUER

    store: str = "json"
    store_path: str | None = None
    cert_setting: str | None = None
    key_setting: str | None = None
    table: str = "settings"
    key_column: str = "key"
    value_column: str = "value"
    path_map: list[tuple[str, str]] = field(default_factory=list)

    reload: str = "signal"
    target: str | None = None
    signal: str = "HUP"
    docker_cmd: str = "docker"
    restart_grace: int = 10

    state_file: str | None = None
    fingerprint: str = "content"
    debounce: float = 1.5
    debounce_max: float = 10.0
    poll: bool = False
    poll_interval: float = 2.0
    retry_interval: float = 5.0
    initial_sync: bool = True

    max_attempts: int = 5
    retry_base: float = 1.0
    retry_cap: float = 30.0
    propagate_timeout: float = 10.0
    reload_timeout: float = 30.0
    max_restarts: int = 3
    restart_backoff: float = 5.0

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        environ = os.environ if environ is None else environ
        settings = cls()
        for var, (name, convert) in _ENV_VARS.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                setattr(settings, name, convert(raw))
            except ValueError as exc:
                raise ValueError(f"{var}: {exc}") from exc
        # Compose-style .env files only set DOMAIN
        if settings.domain is None and environ.get("DOMAIN"):
            settings.domain = environ["DOMAIN"]
        return settings

    def override(self, values: Mapping[str, Any]) -> "Settings":
        """Apply non-``None`` entries of *values* (e.g. ``vars(args)``)."""
        known = {f.name for f in fields(self)}
        for name, value in values.items():
            if name in known and value is not None:
                setattr(self, name, value)
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def pairs(self) -> list[tuple[str, str]]:
        certs, keys = list(self.certs), list(self.keys)
        if not certs and self.domain and self.caddy_data:
            cert, key = caddy_certificate_paths(
                self.caddy_data, self.domain, self.caddy_issuer
            )
            certs, keys = [cert], [key]
        if len(certs) != len(keys):
            raise ValueError(
                f"{len(certs)} certificate path(s) but {len(keys)} key path(s)"
            )
        return list(zip(certs, keys))

    def resources(self) -> list[WatchedResource]:
        resources = []
        seen: set[str] = set()
        for cert, key in self.pairs():
            name = self.domain if (self.domain and not seen) else (
                os.path.splitext(os.path.basename(cert))[0] or "cert"
            )
            base, n = name, 2
            while name in seen:
                name = f"{base}-{n}"
                n += 1
            seen.add(name)
            resources.append(WatchedResource(name=name, cert_path=cert, key_path=key))
        return resources

    def settings_keys(self) -> tuple[str, str]:
        cert_default, key_default = DEFAULT_SETTINGS_KEYS.get(
            self.store, DEFAULT_SETTINGS_KEYS["json"]
        )
        return self.cert_setting or cert_default, self.key_setting or key_default

    def resolved_state_file(self) -> str | None:
        if self.state_file:
            return None if self.state_file == "-" else self.state_file
        pairs = self.pairs()
        if not pairs:
            return None
        return os.path.join(os.path.dirname(os.path.abspath(pairs[0][0])), STATE_FILENAME)

    def validate(self) -> None:
        """Raise ``ValueError`` describing the first invalid setting."""
        pairs = self.pairs()
        if not pairs:
            raise ValueError(
                "no certificate configured: pass --cert/--key or --domain with --caddy-data"
            )
        if len(pairs) > 1:
            # Every pair would write the same cert/key settings
            raise ValueError(
                "only one --cert/--key pair per store; run one certsync per pair"
            )
        if self.store not in DEFAULT_SETTINGS_KEYS:
            raise ValueError(f"unknown store type: {self.store!r}")
        if not self.store_path:
            raise ValueError("--store-path is required")
        if self.reload not in RELOAD_KINDS:
            raise ValueError(f"unknown reload mode: {self.reload!r}")
        if self.reload != "none" and not self.target:
            raise ValueError(f"reload mode {self.reload!r} needs --target")
        if self.fingerprint not in FINGERPRINTS:
            raise ValueError(f"unknown fingerprint mode: {self.fingerprint!r}")
        parse_signal(self.signal)
        if self.max_attempts < 1:
            raise ValueError("--max-attempts must be at least 1")
        if self.debounce < 0 or self.poll_interval <= 0:
            raise ValueError("--debounce and --poll-interval must be positive")
        if self.debounce_max < self.debounce:
            raise ValueError("--debounce-max must not be shorter than --debounce")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(
                f"unknown log level {self.log_level!r}, "
                f"expected one of {', '.join(LOG_LEVELS)}"
            )


def load_env_file(path: str | None = None) -> bool:
    """Load a ``.env`` file into ``os.environ`` without overriding it.

    With no *path*, ``./.env`` is used if present.
    """
    if path is None:
        path = os.path.join(os.getcwd(), ".env")
        if not os.path.exists(path):
            return False
    elif not os.path.exists(path):
        raise ValueError(f"env file not found: {path}")
    loaded = load_dotenv(path, override=False)
    logger.debug("Loaded environment from %s", path)
    return loaded
