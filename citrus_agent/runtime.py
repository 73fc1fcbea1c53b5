"""Agent runtime composition helpers."""
from __future__ import annotations

import logging
from functools import lru_cache

from citrus_agent.config import config
from citrus_agent.core.channel import ControlChannel
from citrus_agent.core.models import AgentIdentity
from citrus_agent.core.transport import WebSocketTransport
from citrus_agent.dispatch.dispatcher import CommandDispatcher
from citrus_agent.services.git import GitRepository
from citrus_agent.services.process import ProcessEngine
from citrus_agent.services.secrets import EnvFileSecretStore
from citrus_agent.services.sites import SiteManager
from citrus_agent.services.telemetry import TelemetryCollector
from citrus_agent.services.updater import (
    ExitRestarter,
    Restarter,
    SelfUpdater,
    ServiceRestarter,
)

logger = logging.getLogger("runtime")


@lru_cache
def get_engine() -> ProcessEngine:
    return ProcessEngine()


@lru_cache
def get_git() -> GitRepository:
    # git always runs inside the agent's own checkout
    return GitRepository(ProcessEngine(cwd=config.agent_dir))


@lru_cache
def get_telemetry() -> TelemetryCollector:
    return TelemetryCollector(get_git())


@lru_cache
def get_channel() -> ControlChannel:
    return ControlChannel(
        url=config.engine_url,
        identity=AgentIdentity(agent_id=config.agent_id, secret=config.agent_key),
        transport=WebSocketTransport(),
        collect_status=get_telemetry().collect,
        reconnect_delay=config.reconnect_delay,
        heartbeat_interval=config.heartbeat_interval,
    )


@lru_cache
def get_restarter() -> Restarter:
    if config.restart_mode == "exit":
        return ExitRestarter()
    return ServiceRestarter(get_engine(), config.service_name)


@lru_cache
def get_updater() -> SelfUpdater:
    return SelfUpdater(
        git=get_git(),
        engine=ProcessEngine(cwd=config.agent_dir),
        restarter=get_restarter(),
        send=get_channel().send,
        update_ref=config.update_ref,
        update_script=config.update_script,
    )


@lru_cache
def get_dispatcher() -> CommandDispatcher:
    channel = get_channel()
    dispatcher = CommandDispatcher(
        send=channel.send,
        sites=SiteManager(get_engine(), cli=config.site_cli),
        updater=get_updater(),
        secret_store=EnvFileSecretStore(config.env_file),
        rotate_secret=channel.rotate_secret,
    )
    # Wire inbound messages
    channel.set_message_handler(dispatcher.submit)
    return dispatcher


async def start_agent() -> None:
    """Validate configuration and bring the control channel up."""
    config.validate()
    get_dispatcher()
    logger.info(
        "Starting agent",
        extra={"service": "runtime", "agent_id": config.agent_id, "url": config.engine_url},
    )
    await get_channel().start()


async def stop_agent() -> None:
    await get_channel().stop()
    await get_dispatcher().drain()
