"""Per-service state files.

``_state-file`` exists while an instance is believed to be running under our
management: line 1 is the container id, line 2 the pid of the background
``docker logs -f`` follower.  ``_open_port`` holds the host port of the most
recent start and is intentionally left behind on stop.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from microservice_manager.constants import OPEN_PORT_FILE_NAME, STATE_FILE_NAME
from microservice_manager.logging import get_logger

log = get_logger("microservice_manager.state")


@dataclass(frozen=True)
class InstanceState:
    """Identity of a supervised instance."""

    container_id: str
    log_follower_pid: int | None = None

    def to_text(self) -> str:
        lines = [self.container_id]
        if self.log_follower_pid is not None:
            lines.append(str(self.log_follower_pid))
        return "\n".join(lines) + "\n"

    @classmethod
    def from_text(cls, text: str) -> InstanceState | None:
        lines = [line.strip() for line in text.splitlines()]
        if not lines or not lines[0]:
            return None
        pid: int | None = None
        if len(lines) > 1 and lines[-1].isdigit():
            pid = int(lines[-1])
        return cls(container_id=lines[0], log_follower_pid=pid)


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class StateStore:
    """Reads and writes the state files in one service directory."""

    def __init__(self, service_dir: Path) -> None:
        self._dir = Path(service_dir)

    @property
    def state_path(self) -> Path:
        return self._dir / STATE_FILE_NAME

    @property
    def open_port_path(self) -> Path:
        return self._dir / OPEN_PORT_FILE_NAME

    def has_state(self) -> bool:
        return self.state_path.exists()

    def load(self) -> InstanceState | None:
        """Return the persisted instance, or None if absent or empty."""
        try:
            raw = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        state = InstanceState.from_text(raw)
        if state is None:
            log.warning("state_file_empty", path=str(self.state_path))
        return state

    def save(self, state: InstanceState) -> None:
        _atomic_write(self.state_path, state.to_text())
        log.debug("state_saved", path=str(self.state_path), container_id=state.container_id)

    def clear(self) -> None:
        self.state_path.unlink(missing_ok=True)
        log.debug("state_cleared", path=str(self.state_path))

    def load_port(self) -> int | None:
        try:
            raw = self.open_port_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not raw.isdigit():
            log.warning("open_port_file_invalid", path=str(self.open_port_path), content=raw[:20])
            return None
        return int(raw)

    def save_port(self, port: int) -> None:
        _atomic_write(self.open_port_path, f"{port}\n")
