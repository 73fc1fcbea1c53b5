"""FastAPI entry-point hosting the control channel and a local status API."""
from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from citrus_agent.api.routes import router as agent_router
from citrus_agent.config import config
from citrus_agent.logging_config import setup_logging
from citrus_agent.runtime import start_agent, stop_agent


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the agent process."""
    setup_logging(config.log_level)
    # Startup: connect to the controller in the background
    await start_agent()
    yield
    # Shutdown: close the channel and let running commands finish briefly
    await stop_agent()


app = FastAPI(title="Citrus Agent", lifespan=lifespan)
app.include_router(agent_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


def run() -> None:
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_config=None)


if __name__ == "__main__":
    run()
