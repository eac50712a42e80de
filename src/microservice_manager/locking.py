"""Mutual exclusion for shared manager state.

Independent invocations of the manager (by one or several users) race over
the shared services file.  Writers serialize through one of these locks:

- ``DirectoryLock``: presence of a directory at a well-known path.  ``mkdir``
  is atomic, so whoever creates it holds the lock.  A holder that crashes
  leaves the directory behind; by default other processes then wait forever,
  unless ``timeout`` or ``stale_after`` is configured.
- ``FileLock``: advisory ``flock`` on a lock file.  The kernel drops it when
  the holder dies, so there is nothing stale to recover.
- ``InProcessLock``: a ``threading.Lock`` for single-process deployments and
  tests.
"""

from __future__ import annotations

import fcntl
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Protocol

from microservice_manager.errors import LockTimeout
from microservice_manager.logging import get_logger

if TYPE_CHECKING:
    from microservice_manager.config import Settings

log = get_logger("microservice_manager.locking")


class Mutex(Protocol):
    """Interface shared by every lock backend."""

    @property
    def locked(self) -> bool: ...

    def acquire(self) -> None: ...

    def release(self) -> None: ...

    def __enter__(self) -> Mutex: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


class _LockBase:
    """Context-manager plumbing shared by the backends."""

    def acquire(self) -> None:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> _LockBase:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class DirectoryLock(_LockBase):
    """Lock held while a directory exists at ``path``.

    Args:
        path: Lock directory location.  Its parent is created on demand.
        retry_interval: Seconds between acquisition attempts.
        timeout: Seconds to wait before raising ``LockTimeout``.
            ``None`` waits forever.
        stale_after: Age in seconds after which an existing lock directory
            is considered abandoned and removed.  ``None`` never breaks a
            lock.  A live holder whose critical section outlasts the
            threshold loses the lock, so keep it well above the slowest write.
    """

    def __init__(
        self,
        path: Path,
        retry_interval: float = 1.0,
        timeout: float | None = None,
        stale_after: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._break_path = self._path.with_name(self._path.name + ".break")
        self._retry_interval = retry_interval
        self._timeout = timeout
        self._stale_after = stale_after
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def locked(self) -> bool:
        return self._held

    def acquire(self) -> None:
        if self._held:
            raise RuntimeError(f"Lock {self._path} is already held by this instance")

        self._path.parent.mkdir(parents=True, exist_ok=True)
        started = self._clock()
        announced = False

        while True:
            try:
                self._path.mkdir()
            except FileExistsError:
                pass
            else:
                self._held = True
                log.debug("lock_acquired", path=str(self._path))
                return

            if self._break_if_stale():
                continue

            waited = self._clock() - started
            if self._timeout is not None and waited >= self._timeout:
                log.warning("lock_timeout", path=str(self._path), waited=round(waited, 2))
                raise LockTimeout(str(self._path), waited)

            if not announced:
                log.info(
                    "lock_waiting",
                    path=str(self._path),
                    detail="Another process is modifying the services file",
                )
                announced = True
            self._sleep(self._retry_interval)

    def release(self) -> None:
        if not self._held:
            log.warning("lock_release_not_held", path=str(self._path))
            return
        self._held = False
        try:
            self._path.rmdir()
        except FileNotFoundError:
            log.warning("lock_already_released", path=str(self._path))
        else:
            log.debug("lock_released", path=str(self._path))

    def _break_if_stale(self) -> bool:
        """Remove an abandoned lock directory.  Returns True to retry at once.

        Breakers serialize on an ``flock`` of ``<lock>.break`` and re-check
        the age while holding it, so a lock broken and re-taken by another
        waiter is never removed a second time.
        """
        if self._stale_after is None:
            return False
        age = self._age()
        if age is None:
            # Released between our mkdir and stat
            return True
        if age < self._stale_after:
            return False

        fd = os.open(self._break_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            age = self._age()
            if age is None:
                return True
            if age < self._stale_after:
                log.debug("lock_stale_break_skipped", path=str(self._path))
                return False
            try:
                self._path.rmdir()
            except FileNotFoundError:
                return True
            except OSError as exc:
                log.error("lock_stale_break_failed", path=str(self._path), error=str(exc))
                return False
        finally:
            os.close(fd)

        log.warning("lock_stale_broken", path=str(self._path), age=round(age, 1))
        return True

    def _age(self) -> float | None:
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            return None
        return self._wall_clock() - mtime


class FileLock(_LockBase):
    """Advisory ``flock`` lock on ``path``."""

    def __init__(
        self,
        path: Path,
        retry_interval: float = 1.0,
        timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = Path(path)
        self._retry_interval = retry_interval
        self._timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._fd: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            raise RuntimeError(f"Lock {self._path} is already held by this instance")

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        started = self._clock()
        announced = False

        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    pass
                else:
                    self._fd = fd
                    log.debug("lock_acquired", path=str(self._path))
                    return

                waited = self._clock() - started
                if self._timeout is not None and waited >= self._timeout:
                    log.warning("lock_timeout", path=str(self._path), waited=round(waited, 2))
                    raise LockTimeout(str(self._path), waited)

                if not announced:
                    log.info("lock_waiting", path=str(self._path))
                    announced = True
                self._sleep(self._retry_interval)
        except BaseException:
            os.close(fd)
            raise

    def release(self) -> None:
        if self._fd is None:
            log.warning("lock_release_not_held", path=str(self._path))
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        log.debug("lock_released", path=str(self._path))


class InProcessLock(_LockBase):
    """Thread lock for single-process use."""

    def __init__(self, timeout: float | None = None) -> None:
        self._lock = threading.Lock()
        self._timeout = timeout

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def acquire(self) -> None:
        timeout = -1 if self._timeout is None else self._timeout
        if not self._lock.acquire(timeout=timeout):
            raise LockTimeout("<in-process>", float(self._timeout or 0))

    def release(self) -> None:
        if not self._lock.locked():
            log.warning("lock_release_not_held", path="<in-process>")
            return
        self._lock.release()


def create_lock(settings: Settings) -> DirectoryLock | FileLock | InProcessLock:
    """Build the registry lock selected by ``settings.lock_backend``."""
    if settings.lock_backend == "flock":
        return FileLock(
            settings.lock_path.with_name(settings.lock_path.name + ".flock"),
            retry_interval=settings.lock_retry_interval,
            timeout=settings.lock_timeout,
        )
    if settings.lock_backend == "memory":
        return InProcessLock(timeout=settings.lock_timeout)
    return DirectoryLock(
        settings.lock_path,
        retry_interval=settings.lock_retry_interval,
        timeout=settings.lock_timeout,
        stale_after=settings.lock_stale_after,
    )
