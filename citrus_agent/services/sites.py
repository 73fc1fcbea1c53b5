"""Wrapper around the site-management CLI (EasyEngine `ee`)."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from citrus_agent.core.models import ProcessResult, PromptRule
from citrus_agent.services.process import ProcessEngine

logger = logging.getLogger("sites")

# Shown when a certificate for the domain is already in the certificate store.
DEPLOY_RULES = (
    PromptRule(
        required=(
            "Please select an option from below",
            "1: Reinstall existing certificate",
            "Type the appropriate number",
        ),
        response="1",
    ),
)
REDEPLOY_RULES = (
    PromptRule(
        required=("Please select an option from below", "Type the appropriate number"),
        response="2",
    ),
)

# options key -> ee flag; booleans become bare flags
_CREATE_FLAGS = {
    "cache": "--cache",
    "ssl": "--ssl",
    "php": "--php",
    "title": "--title",
    "admin_email": "--admin-email",
    "admin_user": "--admin-user",
    "wildcard": "--wildcard",
}


class SiteInfoError(RuntimeError):
    """The CLI info query failed or returned something we cannot read."""


@dataclass(slots=True)
class SslInfo:
    enabled: bool
    provider: Optional[str]
    expiry: Optional[str]

    def to_payload(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "provider": self.provider, "expiry": self.expiry}


def build_create_args(domain: str, options: Dict[str, Any]) -> List[str]:
    args = ["site", "create", domain, f"--type={options.get('type', 'wp')}"]
    opts = {"cache": True, **options}
    for key, flag in _CREATE_FLAGS.items():
        value = opts.get(key)
        if value is None or value is False:
            continue
        args.append(flag if value is True else f"{flag}={value}")
    return args


def parse_ssl_info(raw: str) -> SslInfo:
    try:
        info = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SiteInfoError(f"Could not parse site info: {exc}") from exc
    if isinstance(info, list):
        info = info[0] if info else {}
    if not isinstance(info, dict):
        raise SiteInfoError("Site info is not a JSON object")

    provider = info.get("site_ssl") or info.get("ssl")
    if provider in ("", "off", False, None):
        provider = None
    expiry = info.get("ssl_expiry") or info.get("site_ssl_expiry") or info.get("expiry")
    return SslInfo(enabled=provider is not None, provider=provider, expiry=expiry)


class SiteManager:
    """Translates site commands into CLI invocations."""

    def __init__(self, engine: ProcessEngine, *, cli: str = "ee") -> None:
        self._engine = engine
        self._cli = cli

    async def create(self, domain: str, options: Dict[str, Any]) -> str:
        run = await self._engine.run(self._cli, *build_create_args(domain, options))
        return run.stdout

    async def delete(self, domain: str) -> str:
        run = await self._engine.run(self._cli, "site", "delete", domain, "--yes")
        return run.stdout

    async def info(self, domain: str) -> SslInfo:
        try:
            run = await self._engine.run(self._cli, "site", "info", domain, "--format=json")
        except RuntimeError as exc:
            raise SiteInfoError(str(exc)) from exc
        return parse_ssl_info(run.stdout)

    async def deploy_ssl(self, domain: str) -> ProcessResult:
        return await self._engine.run_interactive(
            "SSL deployment",
            self._cli,
            "site",
            "update",
            domain,
            "--ssl=le",
            rules=DEPLOY_RULES,
        )

    async def turn_off_ssl(self, domain: str) -> ProcessResult:
        return await self._engine.run_interactive(
            "SSL turn off", self._cli, "site", "update", domain, "--ssl=off"
        )

    async def redeploy_ssl(
        self,
        domain: str,
        *,
        on_redeploying: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> ProcessResult:
        """Turn SSL off, then deploy again forcing a renewal of the certificate."""
        off = await self.turn_off_ssl(domain)
        if not off.success:
            # Nothing to turn off when the site had no certificate yet.
            logger.warning(
                "SSL turn off failed before redeploy, continuing",
                extra={"service": "sites", "domain": domain, "error": off.error},
            )
        if on_redeploying is not None:
            await on_redeploying()
        return await self._engine.run_interactive(
            "SSL redeployment",
            self._cli,
            "site",
            "update",
            domain,
            "--ssl=le",
            rules=REDEPLOY_RULES,
        )
