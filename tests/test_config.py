from pathlib import Path

import pytest

from transcribe_queue.config import load_settings

ENV_VARS = (
    "GEMINI_API_KEY",
    "API_KEY",
    "CHUNK_DURATION_SECONDS",
    "CONCURRENCY_LIMIT",
    "DOWNMIX",
    "MCP_PATH",
    "RETRY_MAX_ATTEMPTS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "key")

    settings = load_settings()

    assert settings.gemini_api_key == "key"
    assert settings.chunk_duration_seconds == 60.0
    assert settings.concurrency_limit == 3
    assert settings.retry_max_attempts == 3
    assert settings.downmix == "average"
    assert settings.mcp_path == "/mcp"
    assert settings.request_timeout_seconds == 120.0


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("API_KEY", "legacy-key")
    monkeypatch.setenv("CHUNK_DURATION_SECONDS", "25")
    monkeypatch.setenv("CONCURRENCY_LIMIT", "5")
    monkeypatch.setenv("DOWNMIX", "First")
    monkeypatch.setenv("MCP_PATH", "rpc")

    settings = load_settings()

    assert settings.gemini_api_key == "legacy-key"
    assert settings.chunk_duration_seconds == 25.0
    assert settings.concurrency_limit == 5
    assert settings.downmix == "first"
    assert settings.mcp_path == "/rpc"


def test_api_key_is_required() -> None:
    with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
        load_settings()


@pytest.mark.parametrize(
    ("name", "value"),
    [("DOWNMIX", "loudest"), ("CONCURRENCY_LIMIT", "0"), ("CHUNK_DURATION_SECONDS", "-1")],
)
def test_invalid_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "key")
    monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError):
        load_settings()
