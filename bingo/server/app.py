from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

import structlog
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute

from bingo.messaging.router import MessageRouter
from bingo.playback.credentials import DeviceStore, TokenStore
from bingo.playback.spotify import SpotifyPlaybackController
from bingo.server.settings import BingoServerSettings
from bingo.server.websocket import is_valid_room_id, websocket_endpoint
from bingo.session.manager import SessionManager
from shared.build_info import APP_NAME, APP_VERSION, GIT_COMMIT
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request
    from starlette.websockets import WebSocket

    from bingo.playback.controller import PlaybackController


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "name": APP_NAME, "version": APP_VERSION, "commit": GIT_COMMIT})


async def list_rooms(request: Request) -> JSONResponse:
    session_manager: SessionManager = request.app.state.session_manager
    return JSONResponse(
        {
            "rooms": [summary.model_dump(mode="json") for summary in session_manager.room_summaries()],
            "room_count": session_manager.room_count,
        },
    )


async def get_room(request: Request) -> JSONResponse:
    session_manager: SessionManager = request.app.state.session_manager
    room_id = request.path_params["room_id"]
    room = session_manager.get_room(room_id) if is_valid_room_id(room_id) else None
    if room is None:
        return JSONResponse({"error": "Room not found"}, status_code=404)
    return JSONResponse(room.summary().model_dump(mode="json"))


def _build_controller(settings: BingoServerSettings) -> PlaybackController:
    return SpotifyPlaybackController(
        TokenStore(settings.token_file),
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        api_url=settings.spotify_api_url,
        accounts_url=settings.spotify_accounts_url,
    )


def create_app(
    settings: BingoServerSettings | None = None,
    controller: PlaybackController | None = None,
    session_manager: SessionManager | None = None,
    message_router: MessageRouter | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = BingoServerSettings()

    if controller is None:  # pragma: no cover
        controller = _build_controller(settings)

    if session_manager is None:
        session_manager = SessionManager(
            controller,
            DeviceStore(settings.device_file),
            max_rooms=settings.max_rooms,
            room_ttl_seconds=settings.room_ttl_seconds,
            default_snippet_seconds=settings.default_snippet_seconds,
        )

    if message_router is None:
        message_router = MessageRouter(session_manager)

    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket_endpoint(websocket, message_router)

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/rooms", list_rooms, methods=["GET"]),
        Route("/api/rooms/{room_id}", get_room, methods=["GET"]),
        WebSocketRoute("/ws/{room_id}", ws_endpoint),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        session_manager.start_room_reaper()
        yield
        await session_manager.shutdown()
        await controller.aclose()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET"],
        allow_headers=["Content-Type"],
    )
    app.state.settings = settings
    app.state.session_manager = session_manager

    logger.info("bingo server ready", max_rooms=settings.max_rooms)
    return app


def get_app() -> Starlette:  # pragma: no cover
    """ASGI application factory for production use (e.g., uvicorn --factory)."""
    settings = BingoServerSettings()
    setup_logging(log_dir=settings.log_dir)
    return create_app(settings=settings)
