"""Persistence for the rotated agent secret."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from dotenv import set_key

logger = logging.getLogger("secrets")


class SecretStore(Protocol):
    async def save(self, secret: str) -> None: ...


class EnvFileSecretStore:
    """Rewrites ``AGENT_KEY`` in the agent's .env file."""

    def __init__(self, env_file: Path, key: str = "AGENT_KEY") -> None:
        self._env_file = env_file
        self._key = key

    async def save(self, secret: str) -> None:
        await asyncio.to_thread(self._write, secret)
        logger.info("Agent key persisted", extra={"service": "secrets"})

    def _write(self, secret: str) -> None:
        self._env_file.touch(mode=0o600, exist_ok=True)
        success, _, _ = set_key(str(self._env_file), self._key, secret, quote_mode="never")
        if not success:
            raise OSError(f"Could not write {self._key} to {self._env_file}")
