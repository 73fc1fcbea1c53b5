"""Version-control collaborator used for self-update and rollback."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from citrus_agent.services.process import ProcessEngine, ProcessFailed

logger = logging.getLogger("git")


@dataclass(slots=True)
class ResetResult:
    """Outcome of a fetch + hard reset."""

    version: str
    output: str
    diagnostics: str

    @property
    def log(self) -> str:
        return self.output + (f"\n{self.diagnostics}" if self.diagnostics else "")


class GitRepository:
    """Reads and moves the agent's own working tree."""

    def __init__(self, engine: ProcessEngine, *, git: str = "git") -> None:
        self._engine = engine
        self._git = git

    async def current_revision(self) -> str:
        run = await self._engine.run(self._git, "rev-parse", "HEAD")
        return run.stdout.strip()

    async def safe_revision(self) -> str:
        """Current revision, or ``"unknown"`` when git cannot answer."""
        try:
            return await self.current_revision()
        except ProcessFailed as exc:
            logger.warning(
                "Could not read git version",
                extra={"service": "git", "error": str(exc)},
            )
            return "unknown"

    async def fetch_and_reset(self, ref: str) -> ResetResult:
        """Fetch every remote and hard-reset the working tree to ``ref``."""
        await self._engine.run(self._git, "fetch", "--all")
        reset = await self._engine.run(self._git, "reset", "--hard", ref)
        version = await self.current_revision()
        logger.info(
            "Working tree reset",
            extra={"service": "git", "revision": version, "status": ref},
        )
        return ResetResult(version=version, output=reset.stdout, diagnostics=reset.stderr)
