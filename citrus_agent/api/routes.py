"""Local HTTP API exposing the agent's connection and command state."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from citrus_agent.core.channel import ControlChannel
from citrus_agent.dispatch.dispatcher import CommandDispatcher
from citrus_agent.runtime import get_channel, get_dispatcher

router = APIRouter(prefix="/agent", tags=["agent"])


class AgentStatusResponse(BaseModel):
    agent_id: str
    connection_state: str
    in_flight: int

    @classmethod
    def from_runtime(
        cls, channel: ControlChannel, dispatcher: CommandDispatcher
    ) -> "AgentStatusResponse":
        return cls(
            agent_id=channel.identity.agent_id,
            connection_state=channel.state.name,
            in_flight=dispatcher.in_flight,
        )


@router.get("/status", response_model=AgentStatusResponse)
async def agent_status(
    channel: ControlChannel = Depends(get_channel),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> AgentStatusResponse:
    return AgentStatusResponse.from_runtime(channel, dispatcher)
