"""
FastAPI server for the phone call agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Generate TwiML for Twilio webhook
- WS /ws: Twilio Media Streams WebSocket
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.callagent.config import Config, get_config, init_config, ConfigError


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
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "errors": self.errors,
        }


metrics = ServerMetrics()


async def build_runtime(config: Config):
    """Create the process-wide collaborators and the session orchestrator."""
    from src.callagent.call_control import TwilioCallControl
    from src.callagent.delivery import load_fallback_audio
    from src.callagent.llm import OpenAIChatGenerator
    from src.callagent.orchestrator import SessionOrchestrator
    from src.callagent.stt import DeepgramSTT
    from src.callagent.tts import create_synthesizer

    generator = OpenAIChatGenerator(config)
    await generator.validate_model()

    synthesizer = create_synthesizer(config)
    fallback_audio = await load_fallback_audio(config, synthesizer)

    call_control = TwilioCallControl(config)
    orchestrator = SessionOrchestrator(
        recognizer_factory=lambda: DeepgramSTT(config=config),
        generator=generator,
        synthesizer=synthesizer,
        call_control=call_control,
        fallback_audio=fallback_audio,
        config=config,
    )
    return orchestrator, call_control


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call agent server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        orchestrator, call_control = await build_runtime(config)
        app.state.orchestrator = orchestrator
        app.state.call_control = call_control

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error_type=type(e).__name__, error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await orchestrator.close_all("shutdown")
    await orchestrator.generator.close()
    await orchestrator.synthesizer.close()


app = FastAPI(
    title="Phone Call Agent",
    description="Real-time voice agent for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


def _orchestrator(app: FastAPI) -> Optional[Any]:
    return getattr(app.state, "orchestrator", None)


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    orchestrator = _orchestrator(request.app)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": orchestrator.active_count if orchestrator else 0,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    orchestrator = _orchestrator(request.app)
    if orchestrator is not None:
        content["sessions"] = orchestrator.stats()
    return JSONResponse(content=content)


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    Returns TwiML that connects the call to our WebSocket endpoint.
    """
    config = get_config()

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{config.ws_url}" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=config.ws_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One connection carries one call: inbound caller audio and outbound agent audio.
    """
    from src.callagent.media_stream import MediaStreamConnection

    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    logger.info("WebSocket connected", active_connections=metrics.active_connections)

    connection = MediaStreamConnection(
        websocket.app.state.orchestrator,
        websocket.app.state.call_control,
        websocket.send_text,
    )

    try:
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", stream_sid=connection.stream_sid)
                break
            await connection.handle_message(message)

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            stream_sid=connection.stream_sid,
            error_type=type(e).__name__,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        await connection.close()
        metrics.active_connections -= 1
        logger.info(
            "Call ended",
            stream_sid=connection.stream_sid,
            active_connections=metrics.active_connections,
        )


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
