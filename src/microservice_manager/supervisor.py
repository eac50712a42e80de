"""Lifecycle of one local container instance.

The persisted state file, not the registry, is the source of truth for
"something is running under our management".  ``status`` and ``stop`` only
read that file and the container runtime, so they keep working even if a
previous registry update failed half-way.

Starting the same service name from two processes at once is not
coordinated: the state and open-port files are single-writer.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from microservice_manager.constants import READINESS_REQUEST_TIMEOUT
from microservice_manager.container import ContainerRuntime, terminate_process
from microservice_manager.errors import ReadinessTimeout
from microservice_manager.gradle import resolve_image_name
from microservice_manager.logging import get_logger
from microservice_manager.ports import PortAllocator
from microservice_manager.registry import ServiceStore
from microservice_manager.state import InstanceState, StateStore

if TYPE_CHECKING:
    from microservice_manager.config import Settings

log = get_logger("microservice_manager.supervisor")


class ServiceState(Enum):
    """Lifecycle state of the supervised instance."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    UNKNOWN = "unknown"


@dataclass
class StartResult:
    """Outcome of ``start()``."""

    container_id: str
    port: int | None
    url: str | None
    log_file: Path | None = None
    already_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "port": self.port,
            "url": self.url,
            "log_file": str(self.log_file) if self.log_file else None,
            "already_running": self.already_running,
        }


@dataclass
class StopResult:
    """Outcome of ``stop()``."""

    stopped: bool
    message: str
    container_id: str | None = None
    container_was_running: bool | None = None


@dataclass
class StatusReport:
    """Snapshot returned by ``status()``."""

    state: ServiceState
    container_id: str | None = None
    port: int | None = None
    log_dir: Path | None = None

    @property
    def running(self) -> bool:
        return self.state is ServiceState.RUNNING

    @property
    def message(self) -> str:
        if self.state is ServiceState.RUNNING:
            return f"Docker container is running. Container ID: {self.container_id}"
        if self.state is ServiceState.UNKNOWN:
            if self.container_id:
                return f"Docker container with ID {self.container_id} is not running."
            return "No container ID found in the state file."
        return "State file not found. Docker container is not running."

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "container_id": self.container_id,
            "port": self.port,
            "log_dir": str(self.log_dir) if self.log_dir else None,
        }


class ServiceSupervisor:
    """Start, probe, stop and report on one named service instance."""

    def __init__(
        self,
        service_name: str,
        registry: ServiceStore,
        state_store: StateStore,
        runtime: ContainerRuntime,
        image_resolver: Callable[[], str],
        allocator: PortAllocator | None = None,
        base_port: int = 8443,
        port_search_range: int = 100,
        container_port: int = 8443,
        log_dir: Path = Path("."),
        readiness_path: str = "/v3/api-docs",
        readiness_attempts: int = 20,
        readiness_interval: float = 5.0,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        kill: Callable[[int], bool] = terminate_process,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._service_name = service_name
        self._registry = registry
        self._state_store = state_store
        self._runtime = runtime
        self._image_resolver = image_resolver
        self._allocator = allocator or PortAllocator()
        self._base_port = base_port
        self._port_search_range = port_search_range
        self._container_port = container_port
        self._log_dir = Path(log_dir)
        self._readiness_path = readiness_path
        self._readiness_attempts = readiness_attempts
        self._readiness_interval = readiness_interval
        self._http_client = http_client
        self._sleep = sleep
        self._kill = kill
        self._now = now
        self._state = ServiceState.STOPPED

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ServiceStore,
        runtime: ContainerRuntime | None = None,
        **overrides: Any,
    ) -> ServiceSupervisor:
        """Wire a supervisor from configuration."""

        def image_resolver() -> str:
            return settings.image or resolve_image_name(settings.service_name)

        params: dict[str, Any] = {
            "service_name": settings.service_name,
            "registry": registry,
            "state_store": StateStore(settings.service_dir),
            "runtime": runtime or ContainerRuntime(),
            "image_resolver": image_resolver,
            "base_port": settings.base_port,
            "port_search_range": settings.port_search_range,
            "container_port": settings.container_port,
            "log_dir": settings.service_log_dir,
            "readiness_path": settings.readiness_path,
            "readiness_attempts": settings.readiness_attempts,
            "readiness_interval": settings.readiness_interval,
        }
        params.update(overrides)
        return cls(**params)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def service_name(self) -> str:
        return self._service_name

    @property
    def state(self) -> ServiceState:
        return self._state

    def start(self) -> StartResult:
        """Launch the container, persist its identity and register its URL.

        Nothing is registered unless the launch succeeded.  If anything fails
        (or the user interrupts) after the container is up, the partial start
        is rolled back before the exception propagates.
        """
        existing = self._state_store.load()
        if existing is not None:
            if self._runtime.is_running(existing.container_id):
                port = self._state_store.load_port()
                log.info(
                    "supervisor_already_running",
                    service=self._service_name,
                    container_id=existing.container_id[:12],
                )
                self._state = ServiceState.RUNNING
                return StartResult(
                    container_id=existing.container_id,
                    port=port,
                    url=self._url(port) if port else None,
                    already_running=True,
                )
            log.warning(
                "supervisor_stale_state",
                service=self._service_name,
                container_id=existing.container_id[:12],
            )
            self._discard_stale(existing)

        self._state = ServiceState.STARTING
        container_id: str | None = None
        follower_pid: int | None = None
        registered = False

        try:
            image = self._image_resolver()
            port = self._allocator.allocate(self._base_port, self._port_search_range)
            log.info("supervisor_starting", service=self._service_name, image=image, port=port)

            container_id = self._runtime.run(image, port, self._container_port)
            self._state_store.save(InstanceState(container_id))
            self._state_store.save_port(port)

            url = self._url(port)
            self._registry.register(self._service_name, url)
            registered = True

            log_file = self._log_file()
            follower_pid = self._runtime.follow_logs(container_id, log_file)
            self._state_store.save(InstanceState(container_id, follower_pid))
        except BaseException:
            self._state = ServiceState.STOPPED
            if container_id is not None:
                self._rollback(container_id, follower_pid, registered)
            raise

        self._state = ServiceState.RUNNING
        log.info(
            "supervisor_started",
            service=self._service_name,
            container_id=container_id[:12],
            url=url,
            log_file=str(log_file),
        )
        return StartResult(container_id=container_id, port=port, url=url, log_file=log_file)

    def wait_ready(self) -> int:
        """Poll the readiness endpoint until it answers.

        Returns the number of attempts used.

        Raises:
            ReadinessTimeout: no response after ``readiness_attempts`` tries.
        """
        port = self._state_store.load_port() or self._base_port
        url = f"{self._url(port)}{self._readiness_path}"
        # Probes target localhost; proxy settings from the environment do not apply
        client = self._http_client or httpx.Client(
            timeout=READINESS_REQUEST_TIMEOUT, trust_env=False
        )

        try:
            for attempt in range(1, self._readiness_attempts + 1):
                try:
                    response = client.get(url)
                except httpx.HTTPError:
                    pass
                else:
                    log.info(
                        "supervisor_ready",
                        service=self._service_name,
                        status=response.status_code,
                        attempt=attempt,
                    )
                    return attempt

                log.info(
                    "supervisor_waiting_ready",
                    service=self._service_name,
                    attempt=attempt,
                    max_attempts=self._readiness_attempts,
                )
                if attempt < self._readiness_attempts:
                    self._sleep(self._readiness_interval)
        finally:
            if self._http_client is None:
                client.close()

        raise ReadinessTimeout(url, self._readiness_attempts)

    def stop(self) -> StopResult:
        """Stop the instance recorded in the state file, if any."""
        state = self._state_store.load()
        if state is None:
            if self._state_store.has_state():
                # Unreadable state: nothing to stop, but drop it and the registry entry
                self._state_store.clear()
                self._registry.remove(self._service_name)
                self._state = ServiceState.STOPPED
                return StopResult(
                    stopped=False,
                    message="No container ID found in the state file. Cleaned up.",
                )
            log.info("supervisor_nothing_to_stop", service=self._service_name)
            return StopResult(stopped=False, message="State file not found. No container to stop.")

        self._state = ServiceState.STOPPING
        log.info(
            "supervisor_stopping",
            service=self._service_name,
            container_id=state.container_id[:12],
        )

        was_running = self._runtime.stop(state.container_id)
        if not was_running:
            log.info("supervisor_container_already_stopped", container_id=state.container_id[:12])

        if state.log_follower_pid is not None and not self._kill(state.log_follower_pid):
            log.info("supervisor_log_follower_already_stopped", pid=state.log_follower_pid)

        self._state_store.clear()
        self._registry.remove(self._service_name)
        self._state = ServiceState.STOPPED

        return StopResult(
            stopped=True,
            message=f"Stopped container {state.container_id}.",
            container_id=state.container_id,
            container_was_running=was_running,
        )

    def status(self) -> StatusReport:
        """Report what the state file says, checked against the runtime."""
        state = self._state_store.load()
        port = self._state_store.load_port()

        if state is None:
            if self._state_store.has_state():
                return StatusReport(ServiceState.UNKNOWN, log_dir=self._log_dir)
            return StatusReport(ServiceState.STOPPED)

        if self._runtime.is_running(state.container_id):
            return StatusReport(
                ServiceState.RUNNING,
                container_id=state.container_id,
                port=port,
                log_dir=self._log_dir,
            )

        log.warning(
            "supervisor_state_drift",
            service=self._service_name,
            container_id=state.container_id[:12],
        )
        return StatusReport(
            ServiceState.UNKNOWN,
            container_id=state.container_id,
            port=port,
            log_dir=self._log_dir,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _url(port: int) -> str:
        return f"http://localhost:{port}"

    def _log_file(self) -> Path:
        stamp = self._now().strftime("%Y%m%d_%H%M%S")
        return self._log_dir / f"{self._service_name}_{stamp}.log"

    def _discard_stale(self, state: InstanceState) -> None:
        if state.log_follower_pid is not None:
            self._kill(state.log_follower_pid)
        self._state_store.clear()

    def _rollback(self, container_id: str, follower_pid: int | None, registered: bool) -> None:
        """Best-effort undo of a partial start."""
        log.warning(
            "supervisor_start_rollback",
            service=self._service_name,
            container_id=container_id[:12],
        )
        steps: list[tuple[str, Callable[[], object]]] = [
            ("stop_container", lambda: self._runtime.stop(container_id)),
            ("clear_state", self._state_store.clear),
        ]
        if follower_pid is not None:
            steps.insert(1, ("kill_log_follower", lambda: self._kill(follower_pid)))
        if registered:
            steps.append(("deregister", lambda: self._registry.remove(self._service_name)))

        for name, step in steps:
            try:
                step()
            except Exception as exc:
                log.error("supervisor_rollback_step_failed", step=name, error=str(exc))
