from __future__ import annotations

import pytest

from cookhound.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("ch_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SESSION_STORE", "memory")
    monkeypatch.setenv("QUEUE_BACKEND", "local")
    monkeypatch.setenv("COOKIE_SECURE", "0")
    monkeypatch.setenv("QUEUE_POLL_INTERVAL_MS", "20")
    monkeypatch.setenv("QUEUE_SCHEDULER_INTERVAL_MS", "20")
    monkeypatch.setenv("QUEUE_CLOSE_TIMEOUT_SEC", "2")
    get_settings.cache_clear()
