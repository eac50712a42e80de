"""Shared test fixtures."""

import logging

import pytest

from microservice_manager.config import get_settings


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path, monkeypatch):
    """Point every path setting at tmp_path and drop cached settings."""
    for name in (
        "PAQQETS_SERVICE_NAME",
        "PAQQETS_IMAGE",
        "PAQQETS_LOG_DIR",
        "PAQQETS_LOCK_BACKEND",
        "PAQQETS_LOCK_TIMEOUT",
        "PAQQETS_ENVIRONMENT",
        "PAQQETS_LOG_LEVEL",
        "PAQQETS_LOG_TO_FILE",
        "PAQQETS_MANAGER_VERSION_URL",
        "PAQQETS_REPO_URL",
        "REPO_URL_OVERRIDE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PAQQETS_BASE_DIR", str(tmp_path / "paqqets"))
    monkeypatch.setenv("PAQQETS_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("PAQQETS_WRAPPER_PATH", str(tmp_path / "bin" / "managerw"))
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Undo handler changes made by setup_logging()."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    root.handlers.clear()
    root.handlers.extend(original_handlers)
    root.setLevel(original_level)
