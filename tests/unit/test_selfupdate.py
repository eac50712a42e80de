"""Unit tests for the self-update controller."""

import stat
import sys
from unittest.mock import patch

import pytest

from microservice_manager.cache import FilePayloadCache, InMemoryPayloadCache
from microservice_manager.config import Settings
from microservice_manager.errors import ExternalToolError, FetchError, UpdateFailed
from microservice_manager.resolver import Action
from microservice_manager.selfupdate import SelfUpdateController, replace_file
from microservice_manager.versioning import VersionTag, parse_version

BASE = "https://repo.example.com/raw"
WRAPPER_URL = f"{BASE}/managerw"
WRAPPER_VERSION_URL = f"{BASE}/managerw-version"
MANAGER_URL = f"{BASE}/microservices-manager.sh"
MANAGER_VERSION_URL = f"{BASE}/microservices-manager-version"

OLD_WRAPPER = b"#!/bin/bash\n# Version: 2024.49.100000+abc\necho old\n"
NEW_WRAPPER = b"#!/bin/bash\n# Version: 2024.50.000001+def\necho new\n"
MANAGER_V1 = b"#!/bin/bash\n# Version: 2024.49.100000+abc\necho manager\n"
MANAGER_V2 = b"#!/bin/bash\n# Version: 2024.50.000001+def\necho manager\n"

CONSOLE_SCRIPT_SHIM = (
    "#!/usr/bin/python3\n"
    "import sys\n"
    "from microservice_manager.cli.wrapper import main\n"
    "sys.exit(main())\n"
)


class FakeFetcher:
    """Serves canned payloads by URL; anything else fails."""

    def __init__(self, payloads: dict[str, bytes] | None = None) -> None:
        self.payloads = dict(payloads or {})
        self.requested: list[str] = []

    def fetch_bytes(self, url: str) -> bytes:
        self.requested.append(url)
        if url not in self.payloads:
            raise FetchError(url, "HTTP 404")
        return self.payloads[url]

    def fetch_text(self, url: str) -> str:
        return self.fetch_bytes(url).decode()

    def fetch_version(self, url: str) -> VersionTag | None:
        return parse_version(self.fetch_text(url).strip())


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_controller(tmp_path, fetcher, cache=None, warnings=None, **overrides):
    params = {
        "fetcher": fetcher,
        "cache": cache if cache is not None else InMemoryPayloadCache(ttl=3600),
        "wrapper_path": tmp_path / "managerw",
        "wrapper_url": WRAPPER_URL,
        "wrapper_version_url": WRAPPER_VERSION_URL,
        "manager_url": MANAGER_URL,
        "warn": (warnings.append if warnings is not None else (lambda _msg: None)),
    }
    params.update(overrides)
    return SelfUpdateController(**params)


# ----------------------------------------------------------------------
# replace_file
# ----------------------------------------------------------------------


class TestReplaceFile:
    """Tests for atomic executable replacement."""

    def test_new_file_is_executable(self, tmp_path) -> None:
        target = tmp_path / "bin" / "managerw"
        replace_file(target, NEW_WRAPPER)
        assert target.read_bytes() == NEW_WRAPPER
        assert stat.S_IMODE(target.stat().st_mode) == 0o755

    def test_keeps_existing_mode_and_adds_exec(self, tmp_path) -> None:
        target = tmp_path / "managerw"
        target.write_bytes(OLD_WRAPPER)
        target.chmod(0o640)
        replace_file(target, NEW_WRAPPER)
        assert stat.S_IMODE(target.stat().st_mode) == 0o750

    def test_failure_leaves_previous_file(self, tmp_path) -> None:
        target = tmp_path / "managerw"
        target.write_bytes(OLD_WRAPPER)
        with patch("microservice_manager.selfupdate.os.replace", side_effect=OSError("busy")):
            with pytest.raises(OSError):
                replace_file(target, NEW_WRAPPER)
        assert target.read_bytes() == OLD_WRAPPER
        assert sorted(p.name for p in tmp_path.iterdir()) == ["managerw"]


# ----------------------------------------------------------------------
# check_self_update
# ----------------------------------------------------------------------


class TestCheckSelfUpdate:
    """Tests for the passive wrapper version check."""

    def test_warns_when_remote_newer(self, tmp_path) -> None:
        (tmp_path / "managerw").write_bytes(OLD_WRAPPER)
        warnings: list[str] = []
        fetcher = FakeFetcher({WRAPPER_VERSION_URL: b"2024.50.000001+def\n"})
        controller = _make_controller(tmp_path, fetcher, warnings=warnings)

        newer = controller.check_self_update()

        assert newer == VersionTag(2024, 50, 1, "def")
        assert len(warnings) == 2
        assert "2024.50.000001+def" in warnings[0]
        assert "managerw update" in warnings[1]

    def test_silent_when_up_to_date(self, tmp_path) -> None:
        (tmp_path / "managerw").write_bytes(NEW_WRAPPER)
        warnings: list[str] = []
        fetcher = FakeFetcher({WRAPPER_VERSION_URL: b"2024.50.000001+def\n"})
        assert _make_controller(tmp_path, fetcher, warnings=warnings).check_self_update() is None
        assert warnings == []

    def test_network_failure_is_swallowed(self, tmp_path) -> None:
        (tmp_path / "managerw").write_bytes(OLD_WRAPPER)
        warnings: list[str] = []
        controller = _make_controller(tmp_path, FakeFetcher(), warnings=warnings)
        assert controller.check_self_update() is None
        assert warnings == []

    def test_garbage_remote_version_is_ignored(self, tmp_path) -> None:
        (tmp_path / "managerw").write_bytes(OLD_WRAPPER)
        warnings: list[str] = []
        fetcher = FakeFetcher({WRAPPER_VERSION_URL: b"<html>502</html>"})
        assert _make_controller(tmp_path, fetcher, warnings=warnings).check_self_update() is None
        assert warnings == []

    def test_local_version_falls_back_to_package(self, tmp_path) -> None:
        controller = _make_controller(tmp_path, FakeFetcher())
        assert controller.local_version() == VersionTag(2024, 50, 123456)


# ----------------------------------------------------------------------
# ensure_latest_manager
# ----------------------------------------------------------------------


class TestEnsureLatestManager:
    """Tests for refreshing the cached manager payload."""

    def test_empty_cache_fetches(self, tmp_path) -> None:
        cache = InMemoryPayloadCache(ttl=3600)
        fetcher = FakeFetcher({MANAGER_URL: MANAGER_V1})
        controller = _make_controller(tmp_path, fetcher, cache=cache)

        assert controller.ensure_latest_manager() is Action.REFETCH
        assert cache.get() == MANAGER_V1

    def test_fresh_cache_skips_network(self, tmp_path) -> None:
        cache = InMemoryPayloadCache(ttl=3600)
        cache.put(MANAGER_V1)
        fetcher = FakeFetcher({MANAGER_URL: MANAGER_V2})

        assert _make_controller(tmp_path, fetcher, cache=cache).ensure_latest_manager() is (
            Action.USE_CACHED
        )
        assert fetcher.requested == []
        assert cache.get() == MANAGER_V1

    def test_stale_cache_refetches(self, tmp_path) -> None:
        clock = FakeClock()
        cache = InMemoryPayloadCache(ttl=3600, clock=clock)
        cache.put(MANAGER_V1)
        clock.now += 3601
        fetcher = FakeFetcher({MANAGER_URL: MANAGER_V2})

        assert _make_controller(tmp_path, fetcher, cache=cache).ensure_latest_manager() is (
            Action.REFETCH
        )
        assert cache.get() == MANAGER_V2
        assert cache.is_valid() is True

    def test_stale_cache_revalidated_by_version(self, tmp_path) -> None:
        clock = FakeClock()
        cache = InMemoryPayloadCache(ttl=3600, clock=clock)
        cache.put(MANAGER_V2)
        clock.now += 3601
        fetcher = FakeFetcher({MANAGER_VERSION_URL: b"2024.50.000001+def\n"})
        controller = _make_controller(
            tmp_path, fetcher, cache=cache, manager_version_url=MANAGER_VERSION_URL
        )

        assert controller.ensure_latest_manager() is Action.USE_CACHED
        assert MANAGER_URL not in fetcher.requested
        assert cache.is_valid() is True

    def test_stale_cache_with_newer_remote_version(self, tmp_path) -> None:
        clock = FakeClock()
        cache = InMemoryPayloadCache(ttl=3600, clock=clock)
        cache.put(MANAGER_V1)
        clock.now += 3601
        fetcher = FakeFetcher(
            {MANAGER_VERSION_URL: b"2024.50.000001+def\n", MANAGER_URL: MANAGER_V2}
        )
        controller = _make_controller(
            tmp_path, fetcher, cache=cache, manager_version_url=MANAGER_VERSION_URL
        )

        assert controller.ensure_latest_manager() is Action.REFETCH
        assert cache.get() == MANAGER_V2

    def test_refresh_failure_falls_back_to_stale_copy(self, tmp_path) -> None:
        clock = FakeClock()
        cache = InMemoryPayloadCache(ttl=3600, clock=clock)
        cache.put(MANAGER_V1)
        clock.now += 3601
        warnings: list[str] = []

        controller = _make_controller(tmp_path, FakeFetcher(), cache=cache, warnings=warnings)

        assert controller.ensure_latest_manager() is Action.USE_CACHED
        assert cache.get() == MANAGER_V1
        assert warnings == ["Could not refresh the manager script; using the cached copy."]

    def test_nothing_cached_and_offline_raises(self, tmp_path) -> None:
        with pytest.raises(FetchError):
            _make_controller(tmp_path, FakeFetcher()).ensure_latest_manager()

    def test_empty_payload_is_rejected(self, tmp_path) -> None:
        cache = InMemoryPayloadCache(ttl=3600)
        fetcher = FakeFetcher({MANAGER_URL: b"  \n"})
        with pytest.raises(FetchError, match="empty payload"):
            _make_controller(tmp_path, fetcher, cache=cache).ensure_latest_manager()
        assert cache.get() is None


# ----------------------------------------------------------------------
# exec_manager
# ----------------------------------------------------------------------


class TestExecManager:
    """Tests for handing over to the cached payload."""

    @patch("microservice_manager.selfupdate.os.execv")
    def test_execs_cached_file_with_args(self, mock_execv, tmp_path) -> None:
        cache = FilePayloadCache(tmp_path / "cache" / "manager.sh", ttl=3600)
        cache.put(MANAGER_V1)
        controller = _make_controller(tmp_path, FakeFetcher(), cache=cache)

        controller.exec_manager(["start", "--service", "pricequote"])

        path = tmp_path / "cache" / "manager.sh"
        mock_execv.assert_called_once_with(path, [str(path), "start", "--service", "pricequote"])

    def test_nothing_cached(self, tmp_path) -> None:
        cache = FilePayloadCache(tmp_path / "manager.sh", ttl=3600)
        with pytest.raises(ExternalToolError):
            _make_controller(tmp_path, FakeFetcher(), cache=cache).exec_manager([])

    @patch("microservice_manager.selfupdate.os.execv", side_effect=OSError("Exec format error"))
    def test_exec_failure(self, _mock_execv, tmp_path) -> None:
        cache = FilePayloadCache(tmp_path / "manager.sh", ttl=3600)
        cache.put(MANAGER_V1)
        with pytest.raises(ExternalToolError, match="Exec format error"):
            _make_controller(tmp_path, FakeFetcher(), cache=cache).exec_manager([])

    @patch("microservice_manager.selfupdate.os.execv")
    def test_run_checks_then_execs(self, mock_execv, tmp_path) -> None:
        (tmp_path / "managerw").write_bytes(NEW_WRAPPER)
        cache = FilePayloadCache(tmp_path / "manager.sh", ttl=3600)
        fetcher = FakeFetcher(
            {WRAPPER_VERSION_URL: b"2024.50.000001+def\n", MANAGER_URL: MANAGER_V1}
        )

        _make_controller(tmp_path, fetcher, cache=cache).run(["status"])

        assert fetcher.requested == [WRAPPER_VERSION_URL, MANAGER_URL]
        mock_execv.assert_called_once()


# ----------------------------------------------------------------------
# update_self / install
# ----------------------------------------------------------------------


class TestUpdateSelf:
    """Tests for the explicit wrapper update."""

    def test_replaces_wrapper(self, tmp_path) -> None:
        wrapper = tmp_path / "managerw"
        wrapper.write_bytes(OLD_WRAPPER)
        wrapper.chmod(0o755)
        controller = _make_controller(tmp_path, FakeFetcher({WRAPPER_URL: NEW_WRAPPER}))

        old, new = controller.update_self()

        assert old == VersionTag(2024, 49, 100000)
        assert new == VersionTag(2024, 50, 1)
        assert wrapper.read_bytes() == NEW_WRAPPER
        assert wrapper.stat().st_mode & stat.S_IXUSR

    def test_unmarked_wrapper_is_not_overwritten(self, tmp_path) -> None:
        shim = tmp_path / "managerw"
        shim.write_text(CONSOLE_SCRIPT_SHIM)
        fetcher = FakeFetcher({WRAPPER_URL: NEW_WRAPPER})
        controller = _make_controller(tmp_path, fetcher, verify_wrapper=True)

        with pytest.raises(UpdateFailed, match="PAQQETS_WRAPPER_PATH"):
            controller.update_self()

        assert shim.read_text() == CONSOLE_SCRIPT_SHIM
        assert fetcher.requested == []

    def test_marked_wrapper_is_updated_when_verified(self, tmp_path) -> None:
        wrapper = tmp_path / "managerw"
        wrapper.write_bytes(OLD_WRAPPER)
        fetcher = FakeFetcher({WRAPPER_URL: NEW_WRAPPER})
        _make_controller(tmp_path, fetcher, verify_wrapper=True).update_self()
        assert wrapper.read_bytes() == NEW_WRAPPER

    def test_explicit_path_is_replaced_without_marker(self, tmp_path) -> None:
        target = tmp_path / "managerw"
        target.write_text("#!/bin/bash\necho hand-written\n")
        fetcher = FakeFetcher({WRAPPER_URL: NEW_WRAPPER})
        _make_controller(tmp_path, fetcher).update_self()
        assert target.read_bytes() == NEW_WRAPPER


    def test_download_failure_keeps_wrapper(self, tmp_path) -> None:
        wrapper = tmp_path / "managerw"
        wrapper.write_bytes(OLD_WRAPPER)
        with pytest.raises(UpdateFailed, match="Failed to download managerw"):
            _make_controller(tmp_path, FakeFetcher()).update_self()
        assert wrapper.read_bytes() == OLD_WRAPPER

    def test_payload_without_marker_is_refused(self, tmp_path) -> None:
        wrapper = tmp_path / "managerw"
        wrapper.write_bytes(OLD_WRAPPER)
        fetcher = FakeFetcher({WRAPPER_URL: b"<html>Not Found</html>"})
        with pytest.raises(UpdateFailed, match="Version:"):
            _make_controller(tmp_path, fetcher).update_self()
        assert wrapper.read_bytes() == OLD_WRAPPER

    def test_write_failure(self, tmp_path) -> None:
        fetcher = FakeFetcher({WRAPPER_URL: NEW_WRAPPER})
        with patch("microservice_manager.selfupdate.replace_file", side_effect=OSError("ro fs")):
            with pytest.raises(UpdateFailed, match="ro fs"):
                _make_controller(tmp_path, fetcher).update_self()

    def test_install_into_project(self, tmp_path) -> None:
        dest = tmp_path / "project" / "managerw"
        version = _make_controller(tmp_path, FakeFetcher({WRAPPER_URL: NEW_WRAPPER})).install(dest)
        assert version == VersionTag(2024, 50, 1)
        assert dest.read_bytes() == NEW_WRAPPER
        assert stat.S_IMODE(dest.stat().st_mode) == 0o755


class TestFromSettings:
    """Tests for wiring from configuration."""

    def test_urls_and_paths(self, tmp_path) -> None:
        settings = Settings(
            _env_file=None,
            repo_url="https://mirror.example.com/raw/",
            cache_dir=tmp_path / "cache",
            wrapper_path=tmp_path / "managerw",
        )
        controller = SelfUpdateController.from_settings(settings)
        assert controller.wrapper_path == tmp_path / "managerw"
        assert controller._manager_url == "https://mirror.example.com/raw/microservices-manager.sh"
        assert controller._cache.location == tmp_path / "cache" / "microservices-manager.sh"

    def test_default_wrapper_path_must_be_a_wrapper_script(self, tmp_path, monkeypatch) -> None:
        monkeypatch.delenv("PAQQETS_WRAPPER_PATH", raising=False)
        shim = tmp_path / "venv" / "bin" / "managerw"
        shim.parent.mkdir(parents=True)
        shim.write_text(CONSOLE_SCRIPT_SHIM)
        monkeypatch.setattr(sys, "argv", [str(shim), "update"])
        settings = Settings(_env_file=None, cache_dir=tmp_path / "cache")

        controller = SelfUpdateController.from_settings(settings)

        assert controller.wrapper_path == shim.resolve()
        with pytest.raises(UpdateFailed, match="is not a managerw script"):
            controller.update_self()
        assert shim.read_text() == CONSOLE_SCRIPT_SHIM
