"""Thin wrapper over the docker CLI.

All container-runtime subprocess calls are confined to this module.
"""

from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path

from microservice_manager.errors import LaunchError
from microservice_manager.logging import get_logger

log = get_logger("microservice_manager.container")


class ContainerRuntime:
    """Launch, inspect and stop containers through ``docker``."""

    def __init__(self, docker: str = "docker") -> None:
        self._docker = docker

    def run(self, image: str, host_port: int, container_port: int) -> str:
        """Start *image* detached with ``host_port`` published; return the container id."""
        proc = self._exec(
            [
                self._docker,
                "run",
                "--rm",
                "-d",
                "-p",
                f"{host_port}:{container_port}",
                image,
            ],
            timeout=300,
        )
        if proc is None:
            raise LaunchError(f"Could not invoke {self._docker} to run {image}")
        if proc.returncode != 0:
            raise LaunchError(
                f"docker run failed for {image} (rc={proc.returncode}): {proc.stderr.strip()[:500]}"
            )

        container_id = proc.stdout.strip().splitlines()[-1] if proc.stdout.strip() else ""
        if not container_id:
            raise LaunchError(f"docker run for {image} returned no container id")

        log.info("container_started", container_id=container_id[:12], port=host_port, image=image)
        return container_id

    def stop(self, container_id: str) -> bool:
        """Stop a container.  Returns False if it was not running or the call failed."""
        proc = self._exec([self._docker, "stop", container_id], timeout=120)
        if proc is None or proc.returncode != 0:
            log.warning(
                "container_stop_failed",
                container_id=container_id[:12],
                stderr=proc.stderr.strip()[:200] if proc is not None else "",
            )
            return False
        log.info("container_stopped", container_id=container_id[:12])
        return True

    def is_running(self, container_id: str) -> bool:
        """Return True if a running container matches *container_id*."""
        proc = self._exec(
            [self._docker, "ps", "-q", "--no-trunc", "-f", f"id={container_id}"],
            timeout=30,
        )
        if proc is None or proc.returncode != 0:
            return False
        return bool(proc.stdout.strip())

    def follow_logs(self, container_id: str, log_file: Path) -> int:
        """Stream container logs into *log_file* from a detached process; return its pid."""
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "ab") as sink:
            proc = subprocess.Popen(
                [self._docker, "logs", "-f", container_id],
                stdout=sink,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        log.debug("log_follower_started", pid=proc.pid, log_file=str(log_file))
        return proc.pid

    def _exec(self, args: list[str], timeout: int) -> subprocess.CompletedProcess[str] | None:
        """Run a command, returning None if it could not run to completion."""
        try:
            return subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            log.warning("container_cmd_timeout", cmd=" ".join(args), timeout=timeout)
            return None
        except OSError as exc:
            log.warning("container_cmd_error", cmd=" ".join(args), error=str(exc))
            return None


def terminate_process(pid: int) -> bool:
    """Send SIGTERM to *pid*.  Returns False if it was already gone."""
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError as exc:
        log.warning("process_terminate_denied", pid=pid, error=str(exc))
        return False
    log.debug("process_terminated", pid=pid)
    return True
