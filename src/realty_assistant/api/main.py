from __future__ import annotations

from contextlib import asynccontextmanager
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.requests import ClientDisconnect
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .routers.chat import router as chat_router
from .routers.documents import router as documents_router
from .routers.health import router as health_router
from ..config import LLMSettings, cors_origins
from ..observability.metrics import metrics_middleware_factory
from ..services.chat_service import drain_chat_service

load_dotenv()  # Load environment variables from .env if present (AZURE_OPENAI_*, AZURE_FUNCTION_URL, etc.)

logger = logging.getLogger("realty.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    missing = LLMSettings.from_env().missing()
    if missing:
        logger.warning("LLM settings missing (%s); chat requests will fail until configured", ", ".join(missing))
    yield
    # Let audit saves started by finished streams complete
    await drain_chat_service()


class ClientDisconnectMiddleware:
    """End a response quietly when the client hangs up mid-body.

    The transport reports a dropped connection as an ``OSError`` from ``send``;
    it surfaces here as ``ClientDisconnect`` and is logged, not re-raised.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def guarded_send(message: Message) -> None:
            try:
                await send(message)
            except OSError as exc:
                raise ClientDisconnect() from exc

        try:
            await self.app(scope, receive, guarded_send)
        except ClientDisconnect:
            logger.info("Client disconnected during %s %s", scope.get("method"), scope.get("path"))


app = FastAPI(title="RR Realty AI Assistant API", version="0.1.0", lifespan=lifespan)

logging.basicConfig(level=logging.INFO)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(health_router)
app.include_router(chat_router)
app.include_router(documents_router)

# The deployed frontend calls everything under /api
app.include_router(health_router, prefix="/api")
app.include_router(chat_router, prefix="/api")
app.include_router(documents_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-Id"],
)

# Added last so it wraps the other middleware and stops disconnects before the 500 handler
app.add_middleware(ClientDisconnectMiddleware)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/")
def root():
    return {"name": "RR Realty AI Assistant API", "version": "0.1.0"}


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
