from __future__ import annotations

import pytest

from coach_pipeline.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("coach_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "_state").mkdir(parents=True, exist_ok=True)
    (root / "audio-files").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("COACH_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("COACH_STATE_DIR", str(root / "_state"))
    monkeypatch.setenv("COACH_STORAGE_DIR", str(root / "audio-files"))
    monkeypatch.delenv("STORAGE_BASE_URL", raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "test-gemini-key-not-real")
    monkeypatch.setenv("SESSION_SECRET", "test-session-secret-0123456789")
    monkeypatch.setenv("WORKER_AUTOSTART", "0")
    monkeypatch.setenv("RATE_LIMIT_JITTER", "0")
    monkeypatch.delenv("MAX_CONCURRENT_JOBS", raising=False)
    get_settings.cache_clear()
