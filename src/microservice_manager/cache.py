"""TTL-gated cache for the manager payload.

The payload file's modification time is the fetch timestamp; no separate
metadata file is kept.  A cache is valid while ``age < ttl``.
"""

from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from microservice_manager.logging import get_logger

log = get_logger("microservice_manager.cache")


class PayloadCache(Protocol):
    """Storage the self-update controller keeps the manager payload in."""

    @property
    def ttl(self) -> float: ...

    def age(self) -> float | None: ...

    def is_valid(self) -> bool: ...

    def get(self) -> bytes | None: ...

    def put(self, payload: bytes) -> None: ...

    def touch(self) -> None: ...

    @property
    def location(self) -> Path | None: ...


class FilePayloadCache:
    """Executable payload file whose mtime marks when it was fetched."""

    def __init__(
        self,
        path: Path,
        ttl: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._ttl = ttl
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    @property
    def location(self) -> Path | None:
        return self._path

    @property
    def ttl(self) -> float:
        return self._ttl

    def age(self) -> float | None:
        """Seconds since the payload was fetched, or None if there is none."""
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, self._clock() - mtime)

    def is_valid(self) -> bool:
        age = self.age()
        return age is not None and age < self._ttl

    def get(self) -> bytes | None:
        try:
            return self._path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, payload: bytes) -> None:
        """Replace the payload wholesale and mark it executable."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.chmod(tmp_name, 0o755)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        now = self._clock()
        os.utime(self._path, (now, now))
        log.info("cache_updated", path=str(self._path), size=len(payload))

    def touch(self) -> None:
        """Restart the TTL without refetching."""
        now = self._clock()
        os.utime(self._path, (now, now))


class InMemoryPayloadCache:
    """Cache kept in memory, for tests."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._payload: bytes | None = None
        self._fetched_at: float | None = None

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def location(self) -> Path | None:
        return None

    def age(self) -> float | None:
        if self._fetched_at is None:
            return None
        return max(0.0, self._clock() - self._fetched_at)

    def is_valid(self) -> bool:
        age = self.age()
        return age is not None and age < self._ttl

    def get(self) -> bytes | None:
        return self._payload

    def put(self, payload: bytes) -> None:
        self._payload = payload
        self._fetched_at = self._clock()

    def touch(self) -> None:
        if self._payload is not None:
            self._fetched_at = self._clock()

