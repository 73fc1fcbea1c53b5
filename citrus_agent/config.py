"""Configuration management for the agent."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

RESTART_MODES = ("systemctl", "exit")


class ConfigError(ValueError):
    """Raised when the agent configuration is incomplete or malformed."""


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class AgentSettings:
    """Agent configuration loaded from environment variables."""

    agent_id: str = ""
    agent_key: str = ""
    engine_url: str = ""
    agent_dir: Path = Path(".")
    env_file: Path = Path(".env")
    service_name: str = "citrus-agent"
    restart_mode: str = "systemctl"
    update_ref: str = "origin/main"
    update_script: Path = Path("updates/update-agent.sh")
    site_cli: str = "ee"
    reconnect_delay: float = 5.0
    heartbeat_interval: float = 60.0
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8787

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> AgentSettings:
        """Load configuration from environment variables (and a .env file if present).

        The file read here is the one a rotated key gets written back to.
        """
        agent_dir = Path(os.getenv("AGENT_DIR") or os.getcwd())
        dotenv_path = Path(env_file or os.getenv("AGENT_ENV_FILE") or agent_dir / ".env")
        load_dotenv(dotenv_path)

        agent_dir = Path(os.getenv("AGENT_DIR") or agent_dir)
        port = os.getenv("AGENT_API_PORT", "8787")
        if not port.isdigit():
            raise ConfigError(f"AGENT_API_PORT must be an integer, got {port!r}")

        return cls(
            agent_id=os.getenv("AGENT_ID", ""),
            agent_key=os.getenv("AGENT_KEY", ""),
            engine_url=os.getenv("ENGINE_WS_URL", ""),
            agent_dir=agent_dir,
            env_file=dotenv_path,
            service_name=os.getenv("AGENT_SERVICE_NAME", "citrus-agent"),
            restart_mode=os.getenv("RESTART_MODE", "systemctl").lower(),
            update_ref=os.getenv("UPDATE_REF", "origin/main"),
            update_script=Path(
                os.getenv("UPDATE_SCRIPT", str(agent_dir / "updates" / "update-agent.sh"))
            ),
            site_cli=os.getenv("SITE_CLI", "ee"),
            reconnect_delay=_float_env("RECONNECT_DELAY", 5.0),
            heartbeat_interval=_float_env("HEARTBEAT_INTERVAL", 60.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_host=os.getenv("AGENT_API_HOST", "127.0.0.1"),
            api_port=int(port),
        )

    def validate(self) -> None:
        """Ensure the settings needed to reach the controller are present."""
        missing = [
            name
            for name, value in (
                ("AGENT_ID", self.agent_id),
                ("AGENT_KEY", self.agent_key),
                ("ENGINE_WS_URL", self.engine_url),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")
        if self.restart_mode not in RESTART_MODES:
            raise ConfigError(
                f"RESTART_MODE must be one of {RESTART_MODES}, got {self.restart_mode!r}"
            )
        if self.reconnect_delay < 0 or self.heartbeat_interval <= 0:
            raise ConfigError("RECONNECT_DELAY must be >= 0 and HEARTBEAT_INTERVAL > 0")


# Global config instance
config = AgentSettings.from_env()
