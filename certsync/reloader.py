"""
reloader.py — Makes the dependent service pick up new certificates.

Provides reload capabilities behind one small interface
(``describe()`` / ``reload(timeout)``):

  ProcessSignalReloader     signal local processes matching a pattern
                            (``pkill -HUP -f x-ui``), found with psutil.
  ContainerSignalReloader   ``docker kill --signal=HUP <container>``
  ContainerRestartReloader  ``docker restart <container>``
  NullReloader              do nothing

Each capability checks that its target exists before acting and raises
``TargetNotFound`` otherwise.  ``ServiceReloader`` wraps a capability and
turns its failures into log lines: a missing or unresponsive target is
retried on the next confirmed change rather than stopping the daemon.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import signal
import subprocess
from typing import Callable, Protocol

import psutil

from certsync.errors import ReloadError, TargetNotFound

logger = logging.getLogger(__name__)

RELOAD_KINDS = ("signal", "container-signal", "container-restart", "none")


class ReloadCapability(Protocol):
    def describe(self) -> str: ...

    def reload(self, timeout: float) -> None: ...


def parse_signal(value: str | int) -> signal.Signals:
    """Accept ``HUP``, ``SIGHUP`` or ``1``."""
    if isinstance(value, int) or str(value).isdigit():
        return signal.Signals(int(value))
    name = str(value).upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"unknown signal: {value!r}") from None


class NullReloader:
    def describe(self) -> str:
        return "none"

    def reload(self, timeout: float) -> None:
        logger.debug("Reload disabled; nothing to do")


class ProcessSignalReloader:
    """Send *sig* to every process whose command line matches *pattern*.

    Matching follows ``pkill -f``: *pattern* is a regular expression
    searched in the full command line (or the process name when the
    command line is unavailable).  The daemon's own process is skipped.
    """

    def __init__(self, pattern: str, sig: signal.Signals = signal.SIGHUP) -> None:
        self.pattern = pattern
        self.sig = sig
        self._regex = re.compile(pattern)

    def describe(self) -> str:
        return f"process:{self.pattern}"

    def find(self) -> list[psutil.Process]:
        my_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            if proc.pid == my_pid:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or []) or proc.info.get("name") or ""
            if self._regex.search(cmdline):
                found.append(proc)
        return found

    def reload(self, timeout: float) -> None:
        procs = self.find()
        if not procs:
            raise TargetNotFound(self.describe())

        signalled = 0
        for proc in procs:
            try:
                proc.send_signal(self.sig)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                raise ReloadError(
                    self.describe(), f"permission denied signalling pid {proc.pid}"
                ) from exc
            signalled += 1
            logger.info("Sent %s to pid=%d", self.sig.name, proc.pid)

        if not signalled:
            # Every match exited between the scan and the signal
            raise TargetNotFound(self.describe())


class _DockerReloader:
    """Shared plumbing for the docker CLI based capabilities."""

    def __init__(
        self,
        container: str,
        docker_cmd: str = "docker",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.container = container
        self.docker_cmd = shlex.split(docker_cmd)
        self._run = runner

    def describe(self) -> str:
        return f"container:{self.container}"

    def _docker(self, *args: str, timeout: float) -> subprocess.CompletedProcess:
        cmd = [*self.docker_cmd, *args]
        try:
            return self._run(
                cmd, capture_output=True, text=True, timeout=timeout, check=False
            )
        except subprocess.TimeoutExpired as exc:
            raise ReloadError(
                self.describe(), f"{' '.join(cmd)} timed out after {timeout:.0f}s"
            ) from exc
        except FileNotFoundError as exc:
            raise ReloadError(self.describe(), f"{cmd[0]} not found") from exc

    def _state(self, timeout: float) -> str:
        res = self._docker(
            "inspect", "--format", "{{.State.Running}}", self.container, timeout=timeout
        )
        if res.returncode != 0:
            raise TargetNotFound(self.describe())
        return res.stdout.strip()

    def _check(self, res: subprocess.CompletedProcess) -> None:
        if res.returncode != 0:
            detail = (res.stderr or res.stdout or "").strip()
            raise ReloadError(
                self.describe(), f"exit status {res.returncode}: {detail}"
            )


class ContainerSignalReloader(_DockerReloader):
    """Send a signal to the main process of a running container."""

    def __init__(
        self,
        container: str,
        sig: signal.Signals = signal.SIGHUP,
        docker_cmd: str = "docker",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        super().__init__(container, docker_cmd, runner)
        self.sig = sig

    def reload(self, timeout: float) -> None:
        if self._state(timeout) != "true":
            raise TargetNotFound(self.describe())
        res = self._docker(
            "kill", f"--signal={self.sig.name}", self.container, timeout=timeout
        )
        self._check(res)
        logger.info("Sent %s to container %s", self.sig.name, self.container)


class ContainerRestartReloader(_DockerReloader):
    """Restart a container (stopped containers are started)."""

    def __init__(
        self,
        container: str,
        grace: int = 10,
        docker_cmd: str = "docker",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        super().__init__(container, docker_cmd, runner)
        self.grace = grace

    def reload(self, timeout: float) -> None:
        self._state(timeout)
        res = self._docker(
            "restart", "-t", str(self.grace), self.container, timeout=timeout
        )
        self._check(res)
        logger.info("Restarted container %s", self.container)


def make_reloader(
    kind: str,
    target: str | None = None,
    sig: signal.Signals = signal.SIGHUP,
    docker_cmd: str = "docker",
    grace: int = 10,
) -> ReloadCapability:
    """Build a capability from its CLI name (see ``RELOAD_KINDS``)."""
    if kind == "none":
        return NullReloader()
    if not target:
        raise ValueError(f"reload mode {kind!r} needs a target")
    if kind == "signal":
        return ProcessSignalReloader(target, sig)
    if kind == "container-signal":
        return ContainerSignalReloader(target, sig, docker_cmd)
    if kind == "container-restart":
        return ContainerRestartReloader(target, grace, docker_cmd)
    raise ValueError(f"unknown reload mode: {kind!r}")


class ServiceReloader:
    """Runs a reload capability with a timeout and reports the outcome."""

    def __init__(self, capability: ReloadCapability, timeout: float = 30.0) -> None:
        self.capability = capability
        self.timeout = timeout

    def reload(self) -> bool:
        """Return ``True`` if the service was reloaded."""
        try:
            self.capability.reload(self.timeout)
        except TargetNotFound as exc:
            logger.warning("%s; will retry on the next certificate change", exc)
            return False
        except ReloadError as exc:
            logger.warning("%s; will retry on the next certificate change", exc)
            return False
        logger.info("Reloaded %s", self.capability.describe())
        return True
