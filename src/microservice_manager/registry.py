"""Shared service registry.

Maps logical service names to the URL a running instance is reachable at.
The file is plain ``name=url`` lines so other tools (and shell scripts) can
read it with ``grep``.  Writers hold the registry lock for the whole
read-modify-replace cycle; readers never lock and always see either the old
or the new file because updates go through ``os.replace``.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from microservice_manager.errors import RegistryIOError
from microservice_manager.locking import Mutex
from microservice_manager.logging import get_logger

log = get_logger("microservice_manager.registry")


def validate_name(name: str) -> str:
    """Reject names that would corrupt the ``name=url`` format."""
    if not name or "=" in name or "\n" in name or "\r" in name:
        raise ValueError(f"Invalid service name {name!r}: must be non-empty without '=' or newlines")
    return name


def _validate_url(url: str) -> str:
    if "\n" in url or "\r" in url:
        raise ValueError("Service URL must not contain newlines")
    return url


class ServiceStore(Protocol):
    """Registry operations the supervisor depends on."""

    def register(self, name: str, url: str) -> None: ...

    def remove(self, name: str) -> None: ...

    def find(self, name: str) -> str | None: ...

    def entries(self) -> dict[str, str]: ...


class FileServiceRegistry:
    """``name=url`` file guarded by a ``Mutex``."""

    def __init__(self, path: Path, lock: Mutex) -> None:
        self._path = Path(path)
        self._lock = lock

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Mutations (locked)
    # ------------------------------------------------------------------

    def register(self, name: str, url: str) -> None:
        """Add or replace the record for *name*."""
        validate_name(name)
        _validate_url(url)
        self._ensure_parent()

        with self._lock:
            lines = [line for line in self._read_lines() if not self._matches(line, name)]
            lines.append(f"{name}={url}")
            self._write_lines(lines)

        log.info("registry_registered", service=name, url=url)

    def remove(self, name: str) -> None:
        """Drop the record for *name*; absent records are a no-op."""
        validate_name(name)
        self._ensure_parent()

        with self._lock:
            lines = self._read_lines()
            kept = [line for line in lines if not self._matches(line, name)]
            if len(kept) == len(lines):
                log.debug("registry_remove_absent", service=name)
                return
            self._write_lines(kept)

        log.info("registry_removed", service=name)

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def find(self, name: str) -> str | None:
        """Return the URL registered for *name*, or None."""
        validate_name(name)
        for line in self._read_lines():
            if self._matches(line, name):
                return line.split("=", 1)[1]
        return None

    def entries(self) -> dict[str, str]:
        """Return every record, first occurrence winning."""
        result: dict[str, str] = {}
        for line in self._read_lines():
            if "=" not in line:
                continue
            key, url = line.split("=", 1)
            result.setdefault(key, url)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _matches(line: str, name: str) -> bool:
        return line.startswith(f"{name}=")

    def _ensure_parent(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RegistryIOError(f"Cannot create {self._path.parent}: {exc}") from exc

    def _read_lines(self) -> list[str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise RegistryIOError(f"Cannot read services file {self._path}: {exc}") from exc
        return [line for line in raw.splitlines() if line.strip()]

    def _write_lines(self, lines: list[str]) -> None:
        content = "".join(f"{line}\n" for line in lines)
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise RegistryIOError(f"Cannot write services file {self._path}: {exc}") from exc


class InMemoryServiceRegistry:
    """Registry kept in a dict, for tests and embedding."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._records: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def register(self, name: str, url: str) -> None:
        validate_name(name)
        _validate_url(url)
        with self._lock:
            self._records[name] = url

    def remove(self, name: str) -> None:
        validate_name(name)
        with self._lock:
            self._records.pop(name, None)

    def find(self, name: str) -> str | None:
        validate_name(name)
        return self._records.get(name)

    def entries(self) -> dict[str, str]:
        return dict(self._records)
