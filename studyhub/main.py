"""FastAPI application entry point."""

import asyncio
import json
import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, settings
from .database import database_status, dispose_engine, verify_database_connection
from .middleware import AccessLogMiddleware, BodySizeLimitMiddleware, SecurityHeadersMiddleware
from .services.auth_service import JWTIdentityVerifier
from .websocket import (
    ConnectionState,
    Coordinator,
    LeaveReason,
    MessageType,
    RealtimeError,
    WebSocketTransport,
    build_message,
    check_room_access,
    error_message,
)

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def build_coordinator(config: Settings, transport: WebSocketTransport) -> Coordinator:
    """Wire the realtime coordinator from settings."""
    return Coordinator(
        transport,
        JWTIdentityVerifier(),
        room_authorizer=check_room_access,
        grace_period=config.room_grace_period,
        strict_rejoin=config.room_strict_rejoin,
        idle_timeout=config.presence_idle_timeout,
        sweep_interval=config.presence_sweep_interval,
        call_timeout=config.external_call_timeout,
        retry_backoff=config.external_retry_backoff,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown tasks."""
    # Startup - a database failure here aborts the process
    logger.info("Connecting to database...")
    await verify_database_connection()

    logger.info("Starting realtime coordinator...")
    await app.state.coordinator.start()

    logger.info(f"Server running at http://{app.state.settings.host}:{app.state.settings.port}")

    yield

    # Shutdown
    logger.info("Stopping realtime coordinator...")
    await app.state.coordinator.stop()

    logger.info("Disposing database engine...")
    await dispose_engine()


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application with its own coordinator."""
    config = config or settings

    app = FastAPI(
        title=config.app_name,
        description="Study planner API with real-time session rooms",
        version="1.0.0",
        lifespan=lifespan,
    )

    transport = WebSocketTransport()
    app.state.settings = config
    app.state.transport = transport
    app.state.coordinator = build_coordinator(config, transport)

    # Added last runs first: security headers wrap everything
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.cors_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=config.max_body_bytes)
    app.add_middleware(SecurityHeadersMiddleware)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Report unknown routes with the requested path."""
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={"detail": f"Not Found - {request.url.path}"},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Log all unhandled exceptions with full traceback."""
        logger.error(f"Unhandled exception on {request.method} {request.url}:")
        logger.error(f"Exception type: {type(exc).__name__}")
        logger.error(f"Exception message: {str(exc)}")
        logger.error(f"Traceback:\n{traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.get("/")
    async def root():
        """Root endpoint - liveness check."""
        return {
            "status": "healthy",
            "message": "API is running",
            "service": config.app_name,
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint for monitoring."""
        coordinator: Coordinator = request.app.state.coordinator
        return {
            "status": "healthy",
            "database": database_status(),
            "websocket": coordinator.stats(),
            "coordinator": {"running": coordinator.is_running},
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: str | None = None):
        """
        WebSocket endpoint for session rooms and study sessions.

        Clients authenticate either with a `token` query parameter or by
        sending an `auth` event after connecting. Frames are JSON objects
        of the form {"type": ..., "data": {...}}.

        Usage:
            ws://localhost:3000/ws?token=<jwt_token>
        """
        await _serve_connection(websocket, token, websocket.app.state.coordinator, config)

    return app


async def _send_frame_error(websocket: WebSocket, code: str, message: str) -> None:
    await websocket.send_json(error_message(code, message))


async def _serve_connection(
    websocket: WebSocket,
    token: Optional[str],
    coordinator: Coordinator,
    config: Settings,
) -> None:
    transport: WebSocketTransport = coordinator.transport

    await websocket.accept()
    connection_id = uuid4().hex
    transport.attach(connection_id, websocket)

    try:
        await coordinator.connect(connection_id)
    except RealtimeError as e:
        logger.warning(f"WebSocket connection rejected: {e}")
        transport.detach(connection_id)
        await websocket.close(code=1011, reason=e.code)
        return

    # Rate limiting state
    message_timestamps: list[float] = []
    reason = LeaveReason.DISCONNECTED
    loop = asyncio.get_running_loop()

    try:
        if token:
            await coordinator.message(connection_id, MessageType.AUTH.value, {"token": token})

        while coordinator.state_of(connection_id) is not ConnectionState.DISCONNECTED:
            # Receive with timeout to detect stale connections
            try:
                raw_message = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=config.ws_receive_timeout,
                )
            except asyncio.TimeoutError:
                # No message received within timeout - send ping to verify
                try:
                    await websocket.send_json(build_message(MessageType.PING))
                    raw_message = await asyncio.wait_for(
                        websocket.receive_text(),
                        timeout=config.ws_ping_timeout,
                    )
                except WebSocketDisconnect:
                    raise
                except Exception:
                    logger.info(f"Connection timeout: {connection_id}")
                    reason = LeaveReason.TIMEOUT
                    break

            # Rate limiting check
            current_time = loop.time()
            message_timestamps[:] = [
                t for t in message_timestamps
                if current_time - t < config.ws_rate_limit_window
            ]
            if len(message_timestamps) >= config.ws_rate_limit_messages:
                logger.warning(f"Rate limit exceeded for connection {connection_id}")
                await _send_frame_error(websocket, "RATE_LIMIT", "Too many messages, slow down")
                continue
            message_timestamps.append(current_time)

            # Validate message size
            if len(raw_message) > config.ws_max_message_size:
                logger.warning(
                    f"Message too large from {connection_id}: "
                    f"{len(raw_message)} bytes (max: {config.ws_max_message_size})"
                )
                await _send_frame_error(
                    websocket,
                    "MESSAGE_TOO_LARGE",
                    f"Message exceeds maximum size of {config.ws_max_message_size} bytes",
                )
                continue

            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from {connection_id}")
                await _send_frame_error(websocket, "INVALID_JSON", "Invalid JSON format")
                continue

            if not isinstance(data, dict) or not isinstance(data.get("type"), str):
                await _send_frame_error(
                    websocket, "INVALID_PAYLOAD", "Frames must be objects with a string 'type'"
                )
                continue

            await coordinator.message(connection_id, data["type"], data.get("data"))

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnect: {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket exception for {connection_id}: {e}")
    finally:
        try:
            await coordinator.disconnect(connection_id, reason)
            if reason is LeaveReason.TIMEOUT:
                await transport.close(connection_id, code=4008, reason="Idle timeout")
        finally:
            transport.detach(connection_id)


app = create_app()
