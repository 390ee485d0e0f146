"""Best-effort signals asking a running mosquitto to re-read its files.

A reload that cannot be delivered is never fatal: the artifacts are already
on disk and the broker picks them up on its next restart. Every reloader
therefore reports success as a boolean and only logs failures.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .errors import ReloadError


logger = logging.getLogger(__name__)

DEFAULT_RELOAD_TIMEOUT = 10.0


@dataclass
class CommandResult:
    """Outcome from invoking a command line helper."""

    command: List[str]
    returncode: int
    stdout: str
    stderr: str


def _run_command(args: List[str], *, timeout: float) -> CommandResult:
    try:
        completed = subprocess.run(
            args,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise ReloadError(f"{args[0]} timed out after {timeout:g}s") from None
    except OSError as exc:
        raise ReloadError(f"could not run {args[0]}: {exc.strerror or exc}") from exc
    return CommandResult(
        command=list(args),
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


class Reloader:
    """Deliver a reload signal to the broker.

    Subclasses implement :meth:`_signal` and raise :class:`ReloadError` when
    the broker could not be reached.
    """

    description = "broker"

    def reload(self) -> bool:
        try:
            self._signal()
        except ReloadError as exc:
            logger.warning(
                "Could not reload %s automatically: %s. "
                "Configuration files are written; restart the broker to apply them.",
                self.description,
                exc,
            )
            return False
        logger.info("Reloaded %s configuration", self.description)
        return True

    def _signal(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError


class NoopReloader(Reloader):
    """Reloader for deployments without process control."""

    description = "nothing"

    def reload(self) -> bool:
        logger.info("Broker reload disabled; restart the broker to apply changes")
        return False


class DockerReloader(Reloader):
    """Send ``SIGHUP`` to PID 1 of the broker container via ``docker exec``."""

    def __init__(
        self,
        container: str,
        *,
        timeout: float = DEFAULT_RELOAD_TIMEOUT,
        docker_binary: str = "docker",
    ) -> None:
        if not container:
            raise ValueError("container name cannot be empty")
        self.container = container
        self.timeout = timeout
        self.docker_binary = docker_binary
        self.description = f"container {container}"

    def command(self) -> List[str]:
        return [self.docker_binary, "exec", self.container, "kill", "-HUP", "1"]

    def _signal(self) -> None:
        result = _run_command(self.command(), timeout=self.timeout)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise ReloadError(
                f"docker exec exited with {result.returncode}"
                + (f": {detail}" if detail else ""),
                returncode=result.returncode,
            )


class PidFileReloader(Reloader):
    """Send ``SIGHUP`` to the process recorded in mosquitto's pid file."""

    def __init__(self, pid_file: Union[str, os.PathLike[str]]) -> None:
        self.pid_file = Path(pid_file)
        self.description = f"process from {self.pid_file}"

    def _read_pid(self) -> int:
        try:
            raw = self.pid_file.read_text().strip()
        except OSError as exc:
            raise ReloadError(f"cannot read {self.pid_file}: {exc.strerror or exc}") from exc
        try:
            pid = int(raw)
        except ValueError:
            raise ReloadError(f"{self.pid_file} does not contain a pid") from None
        if pid <= 0:
            raise ReloadError(f"{self.pid_file} contains invalid pid {pid}")
        return pid

    def _signal(self) -> None:
        pid = self._read_pid()
        try:
            os.kill(pid, signal.SIGHUP)
        except OSError as exc:
            raise ReloadError(f"cannot signal pid {pid}: {exc.strerror or exc}") from exc


def build_reloader(
    method: Optional[str] = None,
    *,
    container: Optional[str] = None,
    pid_file: Optional[Union[str, os.PathLike[str]]] = None,
    timeout: Optional[float] = None,
) -> Reloader:
    """Return the reloader configured by ``MOSQUITTO_RELOAD_METHOD``.

    A method that cannot be built falls back to :class:`NoopReloader` so the
    artifacts are still written; the broker then needs a manual restart.
    """

    from .config import settings

    selected = (method or settings.MOSQUITTO_RELOAD_METHOD or "none").strip().lower()
    if selected in {"none", "noop", "off", ""}:
        return NoopReloader()
    if selected == "pidfile":
        return PidFileReloader(pid_file or settings.MOSQUITTO_PID_FILE)
    if selected == "docker":
        name = container or settings.MOSQUITTO_CONTAINER_NAME
        if name:
            return DockerReloader(
                name,
                timeout=timeout if timeout is not None else settings.MOSQUITTO_RELOAD_TIMEOUT,
            )
        logger.warning("MOSQUITTO_CONTAINER_NAME is empty; broker reload disabled")
        return NoopReloader()
    logger.warning(
        "Unsupported reload method '%s' (expected docker, pidfile or none); "
        "broker reload disabled",
        selected,
    )
    return NoopReloader()


__all__ = [
    "CommandResult",
    "DockerReloader",
    "NoopReloader",
    "PidFileReloader",
    "Reloader",
    "build_reloader",
]
