"""
FastAPI server for the Twilio voice relay.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Generate TwiML for Twilio webhook
- POST /calls: Place an outbound call
- WS /ws: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from twilio.base.exceptions import TwilioException

from src.relay.carrier import CarrierConnection
from src.relay.config import ConfigError, get_config, init_config
from src.relay.errors import CarrierClosed
from src.relay.models import CallDirection
from src.relay.session import SessionManager
from src.relay.telephony import build_stream_twiml, place_outbound_call


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    outbound_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "outbound_calls": self.outbound_calls,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()

_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    global _manager
    if _manager is None:
        _manager = SessionManager(get_config())
    return _manager


class FastAPICarrier(CarrierConnection):
    """CarrierConnection over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket

    async def receive_text(self) -> str:
        while True:
            try:
                message = await self._websocket.receive()
            except RuntimeError as e:
                # Starlette raises RuntimeError once the socket is no longer connected.
                raise CarrierClosed(str(e)) from e
            if message["type"] == "websocket.disconnect":
                raise CarrierClosed(f"WebSocket disconnected ({message.get('code', 1000)})")
            text = message.get("text")
            if text is not None:
                return text
            # Media Streams only sends JSON text frames.
            logger.warning("Dropping non-text carrier frame", size=len(message.get("bytes") or b""))

    async def send_text(self, message: str) -> None:
        try:
            await self._websocket.send_text(message)
        except WebSocketDisconnect as e:
            raise CarrierClosed(f"WebSocket disconnected ({e.code})") from e

    async def close(self, code: int = 1000) -> None:
        await self._websocket.close(code=code)


class OutboundCallRequest(BaseModel):
    to: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice relay server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Fail fast on a wrong model name rather than on the first call
        if config.pipeline_mode == "cascaded" and config.validate_llm_model:
            from src.relay.llm import validate_llm_model
            await validate_llm_model(config)

        get_session_manager()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            pipeline_mode=config.pipeline_mode,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Voice Relay",
    description="Bridges Twilio phone calls to a cascaded or realtime voice AI backend",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": get_session_manager().metrics.active_sessions,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    content.update(get_session_manager().metrics.to_dict())
    return JSONResponse(content=content)


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    Returns TwiML that connects the inbound call to our WebSocket endpoint.
    """
    config = get_config()
    twiml = build_stream_twiml(config.ws_url, CallDirection.INBOUND)

    logger.info("Generated TwiML", ws_url=config.ws_url)

    return Response(content=twiml, media_type="application/xml")


@app.post("/calls", status_code=201)
async def create_call(request: OutboundCallRequest) -> JSONResponse:
    """Place an outbound call that streams back to /ws with direction=outbound."""
    try:
        call_sid = await place_outbound_call(request.to, get_config())
    except ConfigError as e:
        logger.error("Outbound call not configured", error=str(e))
        return JSONResponse(status_code=503, content={"error": "Outbound calling is not configured"})
    except TwilioException as e:
        metrics.errors += 1
        return JSONResponse(status_code=502, content={"error": "Carrier rejected the call", "detail": str(e)})

    metrics.outbound_calls += 1
    return JSONResponse(status_code=201, content={"call_sid": call_sid})


@app.get("/calls/{call_sid}")
async def get_call(call_sid: str) -> JSONResponse:
    """State of the live session streaming for `call_sid`."""
    session = get_session_manager().get_session_by_call_sid(call_sid)
    if session is None:
        return JSONResponse(status_code=404, content={"error": "No active session for call"})
    return JSONResponse(content=session.to_dict())


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    The session manager owns the call from here until the stream ends.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    try:
        await get_session_manager().handle_connection(FastAPICarrier(websocket))
    except Exception as e:
        logger.error("WebSocket handler error", error_type=type(e).__name__, error=str(e))
        metrics.errors += 1
    finally:
        metrics.active_connections -= 1
        logger.info("WebSocket closed", active_connections=metrics.active_connections)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
