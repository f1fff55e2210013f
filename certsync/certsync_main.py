#!/usr/bin/env python3
"""
certsync_main.py — CLI entry point for certsync.

Sub-commands
------------
watch   Run the daemon: watch the certificate/key pair(s), write their paths
        into the configuration store whenever the files change, and reload
        the dependent service.

apply   One-shot: wait for the certificate to be issued, write its paths
        into the store, reload the service and exit.

Usage
-----
    # 3x-ui JSON config, reload the panel process with SIGHUP
    certsync watch --cert /ssl/cert.pem --key /ssl/key.pem \\
        --store json --store-path /etc/x-ui/config.json --target x-ui

    # Caddy-issued certificate, 3x-ui database, restart the container
    certsync apply --domain panel.example.com --caddy-data ./caddy_data \\
        --path-map ./caddy_data=/data \\
        --store sqlite --store-path ./db/x-ui.db \\
        --reload container-restart --target 3x-ui

Every option can also be set through ``CERTSYNC_*`` environment variables or
a ``.env`` file.
"""

from __future__ import annotations

import argparse
import logging
import sys

from certsync.config import CADDY_ISSUER, Settings, load_env_file, parse_path_map
from certsync.daemon import build_daemon
from certsync.reloader import RELOAD_KINDS

logger = logging.getLogger("certsync")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def cmd_watch(settings: Settings) -> int:
    """Run the daemon until SIGINT/SIGTERM or a fatal failure."""
    daemon = build_daemon(settings)

    logger.info("=== certsync watch ===")
    for res in daemon.resources:
        logger.info("Resource : %s (cert=%s key=%s)", res.name, res.cert_path, res.key_path)
    logger.info("Store    : %s", daemon.propagator.store.describe())
    logger.info("Reload   : %s", daemon.reloader.capability.describe())
    logger.info("Marker   : %s", daemon.state_file or "(memory only)")

    daemon.install_signal_handlers()
    status = daemon.run()
    if status == 0:
        logger.info("certsync stopped.")
    return status


def cmd_apply(settings: Settings, wait_timeout: float, wait_interval: float) -> int:
    """Wait for the certificate, propagate it once and reload."""
    daemon = build_daemon(settings)
    daemon.install_signal_handlers()

    logger.info("=== certsync apply ===")
    logger.info("Waiting up to %.0fs for the certificate to be issued.", wait_timeout)
    status = daemon.apply_once(wait_timeout=wait_timeout, wait_interval=wait_interval)
    if status == 0:
        logger.info("Certificate paths applied to %s.", daemon.propagator.store.describe())
    return status


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _add_common_options(p: argparse.ArgumentParser) -> None:
    """Options shared by both sub-commands.  Defaults of ``None`` mean
    "keep the value from the environment or the built-in default"."""
    src = p.add_argument_group("certificate")
    src.add_argument("--cert", dest="certs", action="append", metavar="PATH",
                     help="Certificate file to watch.")
    src.add_argument("--key", dest="keys", action="append", metavar="PATH",
                     help="Private key file paired with --cert.")
    src.add_argument("--domain", help="Domain whose Caddy certificate to use.")
    src.add_argument("--caddy-data", help="Caddy data directory (with --domain).")
    src.add_argument("--caddy-issuer", default=None,
                     help=f"Caddy issuer directory (default: {CADDY_ISSUER}).")

    store = p.add_argument_group("configuration store")
    store.add_argument("--store", choices=("json", "sqlite"),
                       help="Store type (default: json).")
    store.add_argument("--store-path", help="JSON config file or SQLite database.")
    store.add_argument("--cert-setting",
                       help="Key receiving the certificate path "
                            "(default: certFile / webCertFile).")
    store.add_argument("--key-setting",
                       help="Key receiving the key path (default: keyFile / webKeyFile).")
    store.add_argument("--table", help="SQLite settings table (default: settings).")
    store.add_argument("--path-map", action="append", metavar="HOST=SERVICE",
                       help="Rewrite a host path prefix into the path the "
                            "service sees (repeatable).")
    store.add_argument("--max-attempts", type=int,
                       help="Write attempts before giving up (default: 5).")
    store.add_argument("--propagate-timeout", type=float,
                       help="Seconds allowed per write attempt (default: 10).")

    reload_ = p.add_argument_group("reload")
    reload_.add_argument("--reload", choices=RELOAD_KINDS,
                         help="How to notify the service (default: signal).")
    reload_.add_argument("--target",
                         help="Process pattern (signal) or container name.")
    reload_.add_argument("--signal", help="Signal to send (default: HUP).")
    reload_.add_argument("--docker-cmd", help="Docker CLI command (default: docker).")
    reload_.add_argument("--reload-timeout", type=float,
                         help="Seconds allowed per reload (default: 30).")

    watch = p.add_argument_group("watching")
    watch.add_argument("--state-file",
                       help="Marker file for the last propagated fingerprint "
                            "('-' to disable).")
    watch.add_argument("--fingerprint", choices=("content", "mtime"),
                       help="How changes are detected (default: content).")
    watch.add_argument("--debounce", type=float,
                       help="Quiet window in seconds (default: 1.5).")
    watch.add_argument("--debounce-max", type=float,
                       help="Longest a burst of changes may delay evaluation "
                            "(default: 10).")
    watch.add_argument("--poll", action="store_true", default=None,
                       help="Poll instead of using native file notifications.")
    watch.add_argument("--poll-interval", type=float,
                       help="Polling interval in seconds (default: 2).")

    p.add_argument("--env-file", help="Load environment from this file "
                                      "(default: ./.env if present).")
    p.add_argument("--log-level",
                   choices=("DEBUG", "INFO", "WARNING", "ERROR"),
                   help="Logging level (default: INFO).")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="certsync",
        description="certsync — propagate rotated TLS certificates to a service.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # -- watch --
    watch_p = sub.add_parser("watch", help="Run the certificate watch daemon.")
    _add_common_options(watch_p)
    watch_p.add_argument(
        "--no-initial-sync",
        dest="initial_sync",
        action="store_false",
        default=None,
        help="Treat the certificate on disk at startup as already applied.",
    )
    watch_p.add_argument(
        "--max-restarts",
        type=int,
        help="Consecutive fatal failures before exiting (default: 3).",
    )

    # -- apply --
    apply_p = sub.add_parser("apply", help="Propagate the certificate once.")
    _add_common_options(apply_p)
    apply_p.add_argument(
        "--wait-timeout",
        type=float,
        default=180.0,
        help="Seconds to wait for the certificate (default: 180).",
    )
    apply_p.add_argument(
        "--wait-interval",
        type=float,
        default=2.0,
        help="Re-check interval while waiting (default: 2).",
    )

    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """Merge ``.env``, environment and *args* into validated Settings."""
    load_env_file(args.env_file)
    settings = Settings.from_env()
    values = vars(args).copy()
    if values.get("path_map") is not None:
        values["path_map"] = parse_path_map(values["path_map"])
    settings.override(values)
    settings.validate()
    return settings


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    """Parse CLI args and dispatch to the appropriate sub-command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ValueError as exc:
        parser.error(str(exc))

    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

    if args.command == "watch":
        return cmd_watch(settings)
    return cmd_apply(settings, args.wait_timeout, args.wait_interval)


if __name__ == "__main__":
    sys.exit(main())
