"""
GoldenPie Engine API

Control surface for the launcher UI.

Endpoints:
- POST   /engine/start            - Start a game session
- POST   /engine/stop             - Stop it (idempotent)
- GET    /engine/status           - Running flag + pipeline stats
- PUT    /engine/players          - Replace the authenticated player registry
- GET    /engine/participants     - Per-slot counters and baselines
- GET    /engine/errors/{slot}    - Payment errors for a slot
- DELETE /engine/errors/{slot}    - Clear them
- WS     /engine/events           - Push events (snapshot, reward, payment-error, session, connectivity)

Usage:
    goldenpie run --port 8765
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import GoldenPieConfig
from .engine import RewardEngine

logger = logging.getLogger(__name__)


class PlayersRequest(BaseModel):
    players: Dict[int, Optional[str]]


class StartResponse(BaseModel):
    started: bool
    running: bool


class StopResponse(BaseModel):
    stopped: bool
    running: bool


def _check_slot(engine: RewardEngine, slot: int) -> None:
    if slot not in engine.detector.slots:
        raise HTTPException(status_code=404, detail=f"Unknown player slot: {slot}")


def create_app(
    engine: Optional[RewardEngine] = None,
    config: Optional[GoldenPieConfig] = None,
    autostart: bool = False,
) -> FastAPI:
    """Build the engine API around ``engine`` (one is created from config if omitted)."""
    engine = engine or RewardEngine(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Engine API starting up")
        if autostart:
            await engine.start()
        yield
        await engine.stop()
        logger.info("Engine API shut down")

    app = FastAPI(
        title="GoldenPie Engine",
        description="Kill/headshot reward engine control",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @app.post("/engine/start", response_model=StartResponse)
    async def start_engine():
        started = await engine.start()
        return StartResponse(started=started, running=engine.running)

    @app.post("/engine/stop", response_model=StopResponse)
    async def stop_engine():
        stopped = await engine.stop()
        return StopResponse(stopped=stopped, running=engine.running)

    @app.get("/engine/status")
    async def engine_status():
        return engine.get_stats()

    # ========================================================================
    # Players
    # ========================================================================

    @app.put("/engine/players")
    async def set_players(body: PlayersRequest):
        try:
            engine.set_authenticated_players(body.players)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"players": engine.authenticated_players()}

    @app.get("/engine/participants")
    async def participants():
        return {
            "participants": [p.to_dict() for p in engine.participants()],
            "earnings": engine.earnings(),
        }

    # ========================================================================
    # Payment errors
    # ========================================================================

    @app.get("/engine/errors/{slot}")
    async def get_errors(slot: int):
        _check_slot(engine, slot)
        return {"slot": slot, "errors": [a.to_dict() for a in engine.payment_errors(slot)]}

    @app.delete("/engine/errors/{slot}")
    async def clear_errors(slot: int):
        _check_slot(engine, slot)
        return {"slot": slot, "cleared": engine.clear_payment_errors(slot)}

    # ========================================================================
    # Push events
    # ========================================================================

    @app.websocket("/engine/events")
    async def engine_events(websocket: WebSocket, replay: bool = False):
        """Stream engine events. Clients may send "ping" to get "pong"."""
        await websocket.accept()
        sid, queue = engine.bus.subscribe(replay=replay)
        logger.info(f"Event subscriber {sid} connected")

        async def forward():
            while True:
                event = await queue.get()
                await websocket.send_json(event)

        sender = asyncio.create_task(forward())
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Event subscriber {sid} sender ended: {e}")
            engine.bus.unsubscribe(sid)
            logger.info(f"Event subscriber {sid} disconnected")

    return app
