"""Tests for settings loading, secret persistence and telemetry snapshots."""
from __future__ import annotations

from pathlib import Path

import pytest

from citrus_agent.config import AgentSettings, ConfigError
from citrus_agent.services.secrets import EnvFileSecretStore
from citrus_agent.services.telemetry import TelemetryCollector

_ENV_VARS = (
    "AGENT_ID",
    "AGENT_KEY",
    "ENGINE_WS_URL",
    "AGENT_DIR",
    "AGENT_ENV_FILE",
    "RESTART_MODE",
    "RECONNECT_DELAY",
    "HEARTBEAT_INTERVAL",
    "AGENT_API_PORT",
    "UPDATE_SCRIPT",
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for name in _ENV_VARS:
        # setenv first so teardown also removes values a .env file loaded
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("AGENT_DIR", str(tmp_path))
    return tmp_path


def test_settings_from_env(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_ID", "agent-7")
    monkeypatch.setenv("AGENT_KEY", "s3cret")
    monkeypatch.setenv("ENGINE_WS_URL", "wss://engine.example/ws")
    monkeypatch.setenv("RESTART_MODE", "EXIT")
    monkeypatch.setenv("RECONNECT_DELAY", "2.5")

    settings = AgentSettings.from_env(env_file=str(clean_env / "missing.env"))
    settings.validate()

    assert settings.agent_id == "agent-7"
    assert settings.restart_mode == "exit"
    assert settings.reconnect_delay == 2.5
    assert settings.heartbeat_interval == 60.0
    assert settings.update_ref == "origin/main"
    assert settings.update_script == clean_env / "updates" / "update-agent.sh"
    assert settings.env_file == clean_env / "missing.env"


def test_rotated_key_file_is_the_one_loaded_at_startup(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    agent_dir = clean_env / "agent"
    agent_dir.mkdir()
    elsewhere = clean_env / "elsewhere"
    elsewhere.mkdir()
    (agent_dir / ".env").write_text("AGENT_KEY=rotated\n")
    monkeypatch.setenv("AGENT_DIR", str(agent_dir))
    monkeypatch.chdir(elsewhere)

    settings = AgentSettings.from_env()

    assert settings.agent_key == "rotated"
    assert settings.env_file == agent_dir / ".env"


def test_settings_loaded_from_dotenv_file(clean_env: Path) -> None:
    env_file = clean_env / "agent.env"
    env_file.write_text("AGENT_ID=from-file\nAGENT_KEY=k\nENGINE_WS_URL=ws://localhost:9000\n")

    settings = AgentSettings.from_env(env_file=str(env_file))

    assert settings.agent_id == "from-file"
    settings.validate()


def test_missing_identity_fails_validation(clean_env: Path) -> None:
    settings = AgentSettings.from_env(env_file=str(clean_env / "missing.env"))

    with pytest.raises(ConfigError, match="AGENT_ID"):
        settings.validate()


def test_bad_numbers_are_config_errors(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECONNECT_DELAY", "soon")
    with pytest.raises(ConfigError):
        AgentSettings.from_env(env_file=str(clean_env / "missing.env"))

    monkeypatch.delenv("RECONNECT_DELAY")
    monkeypatch.setenv("AGENT_API_PORT", "http")
    with pytest.raises(ConfigError):
        AgentSettings.from_env(env_file=str(clean_env / "missing.env"))


def test_unknown_restart_mode_fails_validation() -> None:
    settings = AgentSettings(
        agent_id="a", agent_key="k", engine_url="ws://x", restart_mode="reboot"
    )

    with pytest.raises(ConfigError, match="RESTART_MODE"):
        settings.validate()


@pytest.mark.anyio
async def test_secret_store_rewrites_agent_key(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("AGENT_ID=agent-7\nAGENT_KEY=old\n")

    await EnvFileSecretStore(env_file).save("new-secret")

    content = env_file.read_text()
    assert "AGENT_KEY=new-secret" in content
    assert "AGENT_KEY=old" not in content
    assert "AGENT_ID=agent-7" in content


@pytest.mark.anyio
async def test_secret_store_creates_missing_file(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"

    await EnvFileSecretStore(env_file).save("first")

    assert "AGENT_KEY=first" in env_file.read_text()


class StaticGit:
    async def safe_revision(self) -> str:
        return "abc1234"


@pytest.mark.anyio
async def test_telemetry_snapshot_shape() -> None:
    snapshot = await TelemetryCollector(StaticGit()).collect()

    assert snapshot["gitVersion"] == "abc1234"
    assert snapshot["hostname"]
    assert snapshot["cpu"]["cores"] >= 1
    assert snapshot["memory"]["total"] > 0
    assert isinstance(snapshot["disk"], list)
    assert isinstance(snapshot["timestamp"], int)
