"""Self-updating wrapper.

Every checkout of the wrapper runs the same flow before delegating:

1. ``check_self_update()``: warn if a newer wrapper is published
2. ``ensure_latest_manager()``: refresh the cached manager payload if stale
3. ``exec_manager(args)``: replace this process with the cached payload

Passive steps degrade on network failure; ``update_self()`` and
``install()`` are explicit requests and fail loudly instead.
"""

from __future__ import annotations

import os
import stat
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from microservice_manager import __version__
from microservice_manager.cache import FilePayloadCache, PayloadCache
from microservice_manager.errors import ExternalToolError, FetchError, UpdateFailed
from microservice_manager.fetcher import RemoteFetcher
from microservice_manager.logging import get_logger
from microservice_manager.resolver import Action, CachePolicy, resolve
from microservice_manager.versioning import VersionTag, parse_version, read_version_marker

if TYPE_CHECKING:
    from microservice_manager.config import Settings

log = get_logger("microservice_manager.selfupdate")


def _discard_warning(message: str) -> None:
    pass


def replace_file(path: Path, payload: bytes) -> None:
    """Atomically replace *path* with *payload*, keeping it executable.

    The previous file is left untouched if anything fails.
    """
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = 0o755
    mode |= ((mode & 0o444) >> 2) | stat.S_IXUSR

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".new")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class SelfUpdateController:
    """Keeps the wrapper and the cached manager payload current."""

    def __init__(
        self,
        fetcher: RemoteFetcher,
        cache: PayloadCache,
        wrapper_path: Path,
        wrapper_url: str,
        wrapper_version_url: str,
        manager_url: str,
        manager_version_url: str | None = None,
        warn: Callable[[str], None] = _discard_warning,
        verify_wrapper: bool = False,
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._wrapper_path = Path(wrapper_path)
        self._wrapper_url = wrapper_url
        self._wrapper_version_url = wrapper_version_url
        self._manager_url = manager_url
        self._manager_version_url = manager_version_url
        self._warn = warn
        # Only replace a wrapper_path that carries a version marker
        self._verify_wrapper = verify_wrapper

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        warn: Callable[[str], None] = _discard_warning,
    ) -> SelfUpdateController:
        return cls(
            fetcher=RemoteFetcher(timeout=settings.fetch_timeout),
            cache=FilePayloadCache(settings.cache_path, ttl=settings.cache_ttl),
            wrapper_path=settings.resolved_wrapper_path,
            wrapper_url=settings.wrapper_url,
            wrapper_version_url=settings.wrapper_version_url,
            manager_url=settings.manager_url,
            manager_version_url=settings.manager_version_url,
            warn=warn,
            verify_wrapper=settings.wrapper_path is None,
        )

    @property
    def wrapper_path(self) -> Path:
        return self._wrapper_path

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def local_version(self) -> VersionTag | None:
        """Version marker of the wrapper script, else the package version."""
        return self._wrapper_marker() or parse_version(__version__)

    def _wrapper_marker(self) -> VersionTag | None:
        try:
            text = self._wrapper_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        return read_version_marker(text)

    def cached_manager_version(self) -> VersionTag | None:
        payload = self._cache.get()
        if payload is None:
            return None
        return read_version_marker(payload.decode("utf-8", errors="replace"))

    # ------------------------------------------------------------------
    # Passive flow
    # ------------------------------------------------------------------

    def check_self_update(self) -> VersionTag | None:
        """Warn when a newer wrapper is published.

        Never raises on network trouble.  Returns the newer remote version,
        or None when up to date or unknown.
        """
        local = self.local_version()
        try:
            remote = self._fetcher.fetch_version(self._wrapper_version_url)
        except FetchError as exc:
            log.debug("self_update_check_skipped", reason=exc.reason)
            return None

        action = resolve(local, remote, CachePolicy(ttl=0, auto_update=False))
        if action is not Action.WARN_ONLY:
            log.debug("self_update_up_to_date", local=str(local), remote=str(remote))
            return None

        log.info("self_update_available", local=str(local), remote=str(remote))
        self._warn(f"A new version of managerw is available: {remote}.")
        self._warn(
            "Update by running: managerw update "
            f"(or: curl -sSL {self._wrapper_url} -o managerw && chmod +x managerw)"
        )
        return remote

    def ensure_latest_manager(self) -> Action:
        """Refresh the cached manager payload when its TTL has expired.

        Returns the action taken.  A failed refresh falls back to an existing
        (stale) payload; with nothing cached it raises ``FetchError``.
        """
        policy = CachePolicy(ttl=self._cache.ttl, age=self._cache.age())
        remote: VersionTag | None = None
        if not policy.fresh and policy.age is not None and self._manager_version_url:
            try:
                remote = self._fetcher.fetch_version(self._manager_version_url)
            except FetchError as exc:
                log.debug("manager_version_check_failed", reason=exc.reason)

        action = resolve(self.cached_manager_version(), remote, policy)
        if action is Action.USE_CACHED:
            if not policy.fresh:
                self._cache.touch()
                log.info("cache_revalidated", version=str(remote))
            else:
                log.info("cache_hit", age=round(policy.age or 0.0, 1))
            return action

        log.info("manager_fetching", url=self._manager_url)
        try:
            payload = self._fetcher.fetch_bytes(self._manager_url)
            if not payload.strip():
                raise FetchError(self._manager_url, "empty payload")
        except FetchError:
            if self._cache.get() is None:
                raise
            self._warn("Could not refresh the manager script; using the cached copy.")
            return Action.USE_CACHED

        self._cache.put(payload)
        return action

    def exec_manager(self, args: Sequence[str]) -> NoReturn:
        """Replace the current process with the cached manager payload."""
        path = self._cache.location
        if path is None or not path.exists():
            raise ExternalToolError("No cached manager script to execute")
        if not os.access(path, os.X_OK):
            path.chmod(stat.S_IMODE(path.stat().st_mode) | stat.S_IXUSR)
        log.debug("manager_exec", path=str(path), args=list(args))
        try:
            os.execv(path, [str(path), *args])
        except OSError as exc:
            raise ExternalToolError(f"Could not execute {path}: {exc}") from exc

    def run(self, args: Sequence[str]) -> NoReturn:
        """Check, refresh, then hand over to the manager."""
        self.check_self_update()
        self.ensure_latest_manager()
        self.exec_manager(args)

    # ------------------------------------------------------------------
    # Explicit flow
    # ------------------------------------------------------------------

    def update_self(self) -> tuple[VersionTag | None, VersionTag | None]:
        """Replace the wrapper script with the published one.

        Returns ``(old_version, new_version)``.

        Raises:
            UpdateFailed: download or replacement failed, or the wrapper
                path is not a managerw script; the existing file is
                unchanged.
        """
        if self._verify_wrapper and self._wrapper_marker() is None:
            raise UpdateFailed(
                f"{self._wrapper_path} has no '# Version:' marker and is not a managerw "
                "script; set PAQQETS_WRAPPER_PATH to the wrapper to replace"
            )
        old = self.local_version()
        new = self._download_wrapper(self._wrapper_path)
        log.info("self_update_complete", old=str(old), new=str(new), path=str(self._wrapper_path))
        return old, new

    def install(self, dest: Path) -> VersionTag | None:
        """Download the wrapper into *dest* and make it executable."""
        version = self._download_wrapper(Path(dest))
        log.info("wrapper_installed", path=str(dest), version=str(version))
        return version

    def _download_wrapper(self, dest: Path) -> VersionTag:
        try:
            payload = self._fetcher.fetch_bytes(self._wrapper_url)
        except FetchError as exc:
            raise UpdateFailed(f"Failed to download managerw from {exc.url}: {exc.reason}") from exc

        version = read_version_marker(payload.decode("utf-8", errors="replace"))
        if version is None:
            raise UpdateFailed(
                f"Downloaded file from {self._wrapper_url} has no '# Version:' marker; not installing it"
            )

        try:
            replace_file(dest, payload)
        except OSError as exc:
            raise UpdateFailed(f"Could not write {dest}: {exc}") from exc
        return version
