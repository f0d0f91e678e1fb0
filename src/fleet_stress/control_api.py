"""
HTTP control surface for front ends: read fleet metrics, start/stop the
fleet, spawn/despawn bots and change runtime settings.

The app shares the event loop of the fleet it controls.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import ConfigurationError
from .errors import BotExistsError, CapacityError, SessionConnectionError
from .fleet import FleetController
from .metrics import summarize_history
from .movement import MovementPattern

logger = logging.getLogger(__name__)

MAX_BOT_ID = 64


class SpawnBody(BaseModel):
    """Request body for spawning a bot; the id is generated when omitted."""

    bot_id: str | None = Field(default=None, min_length=1, max_length=MAX_BOT_ID)


class PatternBody(BaseModel):
    pattern: MovementPattern


class CapacityBody(BaseModel):
    capacity: int


class SpawnRateBody(BaseModel):
    spawn_rate: int


def create_app(controller: FleetController) -> FastAPI:
    """Create the FastAPI application controlling ``controller``."""
    app = FastAPI(title="fleet-stress control API", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.get("/")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {"status": "ok", "fleet": controller.describe()}

    @app.get("/v1/metrics")
    async def get_metrics() -> dict[str, Any]:
        return controller.metrics().to_dict()

    @app.get("/v1/metrics/history")
    async def get_history() -> dict[str, Any]:
        history = controller.history()
        return {
            "samples": [snapshot.to_dict() for snapshot in history],
            "summary": summarize_history(history),
        }

    @app.post("/v1/start")
    async def start() -> dict[str, Any]:
        controller.start()
        return controller.describe()

    @app.post("/v1/stop")
    async def stop() -> dict[str, Any]:
        controller.stop(reason="stopped via control API")
        return controller.describe()

    @app.post("/v1/bots", status_code=201)
    async def spawn(body: SpawnBody | None = None) -> dict[str, Any]:
        bot_id = body.bot_id if body else None
        try:
            bot = await controller.spawn_bot(bot_id)
        except (CapacityError, BotExistsError) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except SessionConnectionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if bot is None:
            raise HTTPException(
                status_code=409, detail="Fleet stopped while the bot was connecting"
            )
        return bot.describe()

    @app.delete("/v1/bots/{bot_id}")
    async def despawn(bot_id: str) -> dict[str, Any]:
        if not controller.despawn_bot(bot_id):
            raise HTTPException(status_code=404, detail=f"Unknown bot {bot_id}")
        return {"bot_id": bot_id, "despawned": True}

    @app.put("/v1/pattern")
    async def set_pattern(body: PatternBody) -> dict[str, Any]:
        controller.set_pattern(body.pattern)
        return controller.describe()

    @app.put("/v1/capacity")
    async def set_capacity(body: CapacityBody) -> dict[str, Any]:
        try:
            controller.set_capacity(body.capacity)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors) from exc
        return controller.describe()

    @app.put("/v1/spawn-rate")
    async def set_spawn_rate(body: SpawnRateBody) -> dict[str, Any]:
        try:
            controller.set_spawn_rate(body.spawn_rate)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors) from exc
        return controller.describe()

    return app


class ControlServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the fleet runner."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def create_control_server(
    controller: FleetController, host: str = "127.0.0.1", port: int = 8800
) -> ControlServer:
    """Build a Uvicorn server for the control API; run it with ``await server.serve()``."""
    config = uvicorn.Config(
        app=create_app(controller),
        host=host,
        port=port,
        log_level="warning",
        lifespan="off",
        log_config=None,
    )
    return ControlServer(config=config)
