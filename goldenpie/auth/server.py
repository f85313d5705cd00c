"""
GoldenPie Auth Server

LUD-22 address-request login for player slots.

Endpoints (each also served without the /auth prefix):
- POST /auth/session            - Create a session, returns k1 + lnurl
- GET  /auth/callback           - Wallet fetches request details
- POST /auth/callback           - Wallet submits its Lightning address
- GET  /auth/status/{id}        - UI polls for authentication
- GET  /health                  - Liveness + storage kind

Usage:
    goldenpie-auth --port 3000
    uvicorn --factory goldenpie.auth.server:create_app
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from ..config import AuthConfig, GoldenPieConfig
from .errors import AuthError, InvalidRequest
from .sessions import ADDRESS_REQUEST_TAG, AuthSessionManager
from .store import create_store

logger = logging.getLogger(__name__)


# ============================================================
# Request Models
# ============================================================

class SessionRequest(BaseModel):
    slot_number: int = Field(validation_alias=AliasChoices("slotNumber", "playerNumber", "slot_number"))


class CallbackRequest(BaseModel):
    k1: Optional[str] = Field(default=None, validation_alias=AliasChoices("k1", "nonce"))
    address: Optional[str] = None


# ============================================================
# Helpers
# ============================================================

def base_url(request: Request, config: AuthConfig) -> str:
    """Public URL wallets can reach this server on."""
    if config.public_base_url:
        return config.public_base_url.rstrip("/")
    host = request.headers.get("host", "")
    if host and "localhost" not in host:
        return f"https://{host}"
    return f"http://localhost:{config.port}"


def callback_url(request: Request, config: AuthConfig) -> str:
    return f"{base_url(request, config)}/auth/callback"


async def _cleanup_loop(manager: AuthSessionManager, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await manager.purge_expired()
        except Exception as e:
            logger.error(f"Session cleanup failed: {e}")


# ============================================================
# Routes
# ============================================================

router = APIRouter()


@router.post("/session")
async def create_session(body: SessionRequest, request: Request):
    """Create an auth session for a player slot."""
    manager: AuthSessionManager = request.app.state.manager
    created = await manager.create_session(body.slot_number, callback_url(request, request.app.state.config))
    return {
        "sessionId": created.session_id,
        "k1": created.nonce,
        "nonce": created.nonce,
        "lnurlAddress": created.lnurl_address,
        "challenge": created.challenge.to_dict(),
    }


@router.get("/callback")
async def callback_details(
    request: Request,
    k1: Optional[str] = None,
    nonce: Optional[str] = None,
    tag: Optional[str] = None,
):
    """LUD-22 step 1: wallet asks what is being requested."""
    if tag is not None and tag != ADDRESS_REQUEST_TAG:
        raise InvalidRequest("Invalid tag")
    value = k1 or nonce
    if not value:
        raise InvalidRequest("Missing k1")
    manager: AuthSessionManager = request.app.state.manager
    challenge = await manager.resolve_challenge(value, callback_url(request, request.app.state.config))
    return challenge.to_dict()


@router.post("/callback")
async def callback_submit(body: CallbackRequest, request: Request):
    """LUD-22 step 2: wallet submits its Lightning address."""
    if not body.k1 or not body.address:
        raise InvalidRequest("Missing k1 or address")
    manager: AuthSessionManager = request.app.state.manager
    await manager.redeem(body.k1, body.address)
    return {"status": "OK"}


@router.get("/status/{session_id}")
async def session_status(session_id: str, request: Request):
    manager: AuthSessionManager = request.app.state.manager
    status = await manager.status(session_id)
    return {
        "authenticated": status.authenticated,
        "address": status.address,
        "slotNumber": status.slot_number,
    }


# ============================================================
# App Factory
# ============================================================

def create_app(
    manager: Optional[AuthSessionManager] = None,
    config: Optional[AuthConfig] = None,
) -> FastAPI:
    """Build the auth app. ``manager`` defaults to one backed by the configured store."""
    config = config or AuthConfig()
    if manager is None:
        manager = AuthSessionManager(
            create_store(config.redis_url),
            ttl=config.session_ttl,
            app_name=config.app_name,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup = None
        if manager.store.kind == "in-memory" and config.cleanup_interval > 0:
            cleanup = asyncio.create_task(_cleanup_loop(manager, config.cleanup_interval))
        logger.info(f"Auth server ready (storage: {manager.store.kind})")
        yield
        if cleanup is not None:
            cleanup.cancel()
            try:
                await cleanup
            except asyncio.CancelledError:
                pass
        await manager.store.close()

    app = FastAPI(
        title="GoldenPie Auth",
        description="LUD-22 Lightning address login for player slots",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "storage": manager.store.kind,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(router, prefix="/auth")
    app.include_router(router)
    return app


def main():
    """Run the auth server."""
    import argparse

    parser = argparse.ArgumentParser(description="GoldenPie Auth Server")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--redis-url", default=None, help="Redis URL for session storage")
    args = parser.parse_args()

    from pathlib import Path
    config = GoldenPieConfig.load(Path(args.config) if args.config else None)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    auth = config.auth
    if args.host:
        auth.host = args.host
    if args.port:
        auth.port = args.port
    if args.redis_url:
        auth.redis_url = args.redis_url

    logger.info(f"Starting GoldenPie Auth Server on {auth.host}:{auth.port}")
    uvicorn.run(create_app(config=auth), host=auth.host, port=auth.port)


if __name__ == "__main__":
    main()
