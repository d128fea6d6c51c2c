"""
FastAPI Application Module

HTTP surface of the chat service: owners create, list, search, edit, share
and delete chats and exchange messages with the assistant. Shared chats are
readable without authentication through their share token.

Key Features:
- JSON envelopes ``{success, data|error}`` with stable error codes
- Per-owner throttling of message-generating routes
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

The owner identity is resolved upstream by the authentication layer and
arrives as the ``X-Owner-Id`` header.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from structlog import get_logger

from ..config import Settings, get_settings
from ..domain.errors import ChatServiceError, RateLimitedError, UnauthorizedError
from ..domain.models import ChatUpdate
from ..logging_config import configure_logging
from ..repositories.base import ChatRepository
from ..repositories.memory import InMemoryChatRepository
from ..services.chat_manager import ChatLifecycleManager
from ..services.history import HistoryQueryService
from ..services.llm import GeminiGateway, GenerationGateway
from ..services.sharing import ShareService
from .rate_limiter import OWNER_HEADER, RateLimiter, RateLimitExceeded, rate_limit_middleware
from .schemas import (
    ChatCreate,
    FeedbackUpdate,
    MessageCreate,
    RegenerateRequest,
    SharedChatView,
    failure,
)

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

# Core operational metrics for monitoring
REQUESTS = Counter(
    "chat_requests_total", "Total requests by route", ["method", "route"], registry=CUSTOM_REGISTRY
)
ERRORS = Counter("chat_errors_total", "Total errors by code", ["code"], registry=CUSTOM_REGISTRY)
PROCESSING_TIME = Counter(
    "chat_processing_time_seconds", "Total processing time by route", ["route"], registry=CUSTOM_REGISTRY
)
REPLIES = Counter("chat_replies_total", "Assistant replies persisted", registry=CUSTOM_REGISTRY)

logger = get_logger()


def success(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "data": jsonable_encoder(data)},
    )


def get_owner_id(x_owner_id: Optional[str] = Header(default=None, alias=OWNER_HEADER)) -> str:
    """Returns the owner resolved by the upstream authentication layer"""
    if not x_owner_id or not x_owner_id.strip():
        raise UnauthorizedError("Authentication required")
    return x_owner_id.strip()


def get_manager(request: Request) -> ChatLifecycleManager:
    """Returns the chat lifecycle manager"""
    return request.app.state.manager


def get_history(request: Request) -> HistoryQueryService:
    """Returns the history query service"""
    return request.app.state.history


def get_sharing(request: Request) -> ShareService:
    """Returns the share lifecycle service"""
    return request.app.state.sharing


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[ChatRepository] = None,
    gateway: Optional[GenerationGateway] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Builds the application with its services wired together"""
    settings = settings or get_settings()
    configure_logging(settings)

    repository = repository or InMemoryChatRepository()
    gateway = gateway or GeminiGateway(settings)
    rate_limiter = rate_limiter or RateLimiter(
        rate_limit=settings.request_rate_limit,
        time_window=settings.request_rate_window_seconds,
    )
    manager = ChatLifecycleManager(repository, gateway, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        await rate_limiter.start()
        logger.info("application_startup_complete")

        yield

        await rate_limiter.stop()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Aelyra Chat API",
        description="Conversational chat service with AI replies, history search and sharing",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.manager = manager
    app.state.sharing = manager.sharing
    app.state.history = HistoryQueryService(repository, settings)
    app.state.rate_limiter = rate_limiter

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and enforces rate limits"""
        started = time.perf_counter()
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            await rate_limit_middleware(request, rate_limiter)
        except RateLimitExceeded as e:
            ERRORS.labels(code="TOO_MANY_REQUESTS").inc()
            return JSONResponse(
                status_code=429,
                content=failure("TOO_MANY_REQUESTS", str(e), retry_after=e.retry_after),
                headers={"Retry-After": str(e.retry_after)},
            )

        response = await call_next(request)

        route = getattr(request.scope.get("route"), "path", "unmatched")
        REQUESTS.labels(method=request.method, route=route).inc()
        PROCESSING_TIME.labels(route=route).inc(time.perf_counter() - started)
        logger.info(
            "request_finished",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response

    @app.exception_handler(ChatServiceError)
    async def chat_error_handler(request: Request, exc: ChatServiceError) -> JSONResponse:
        ERRORS.labels(code=exc.code).inc()
        logger.warning("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        if isinstance(exc, RateLimitedError):
            return JSONResponse(
                status_code=exc.status_code,
                content=failure(exc.code, exc.message, retry_after=exc.retry_after),
                headers={"Retry-After": str(exc.retry_after)},
            )
        return JSONResponse(status_code=exc.status_code, content=failure(exc.code, exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        ERRORS.labels(code="VALIDATION_ERROR").inc()
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
        return JSONResponse(status_code=400, content=failure("VALIDATION_ERROR", message))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        ERRORS.labels(code="INTERNAL_ERROR").inc()
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(status_code=500, content=failure("INTERNAL_ERROR", "Internal server error"))

    @app.post("/chats", status_code=201)
    async def create_chat(
        body: Optional[ChatCreate] = None,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        """Starts a new, empty chat"""
        chat = await manager.create_chat(owner_id, body.title if body else None)
        return success({"chat": chat}, status_code=201)

    @app.get("/chats")
    async def list_chats(
        q: Optional[str] = None,
        page: Optional[str] = None,
        limit: Optional[str] = None,
        owner_id: str = Depends(get_owner_id),
        history: HistoryQueryService = Depends(get_history),
    ) -> JSONResponse:
        """Gets a page of chat summaries, ranked by relevance when searching"""
        result = await history.list_chats(owner_id, query=q, page=page, page_size=limit)
        return success(result)

    @app.post("/chats/sweep-expired")
    async def sweep_expired(sharing: ShareService = Depends(get_sharing)) -> JSONResponse:
        """Removes chats whose public share window has passed"""
        count = await sharing.sweep_expired_shares()
        return success({"deleted_count": count})

    @app.post("/chats/messages")
    async def send_to_new_chat(
        body: MessageCreate,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        """Starts a chat with its first message and returns the reply"""
        result = await manager.send_message(
            owner_id, None, body.content, image=body.image, timeout=body.timeout_seconds
        )
        REPLIES.inc()
        return success(result)

    @app.get("/chats/{chat_id}")
    async def get_chat(
        chat_id: str,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        """Retrieves a specific chat with its messages"""
        chat = await manager.get_chat(owner_id, chat_id)
        return success({"chat": chat})

    @app.patch("/chats/{chat_id}")
    async def update_chat(
        chat_id: str,
        body: ChatUpdate,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        """Edits title, star, tags or the share flag"""
        chat = await manager.update_chat(owner_id, chat_id, body)
        return success({"chat": chat})

    @app.delete("/chats/{chat_id}")
    async def delete_chat(
        chat_id: str,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        await manager.delete_chat(owner_id, chat_id)
        return success({"deleted": True})

    @app.post("/chats/{chat_id}/messages")
    async def send_message(
        chat_id: str,
        body: MessageCreate,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        """Appends a user message and returns the assistant reply"""
        result = await manager.send_message(
            owner_id, chat_id, body.content, image=body.image, timeout=body.timeout_seconds
        )
        REPLIES.inc()
        return success(result)

    @app.post("/chats/{chat_id}/regenerate")
    async def regenerate(
        chat_id: str,
        body: Optional[RegenerateRequest] = None,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        """Replaces the trailing assistant reply with a fresh one"""
        result = await manager.regenerate(
            owner_id, chat_id, timeout=body.timeout_seconds if body else None
        )
        if result is None:
            chat = await manager.get_chat(owner_id, chat_id)
            return success({"regenerated": False, "reply": None, "chat": chat})
        REPLIES.inc()
        return success({"regenerated": True, "reply": result.reply, "chat": result.chat})

    @app.put("/chats/{chat_id}/messages/{message_id}/feedback")
    async def set_feedback(
        chat_id: str,
        message_id: str,
        body: FeedbackUpdate,
        owner_id: str = Depends(get_owner_id),
        manager: ChatLifecycleManager = Depends(get_manager),
    ) -> JSONResponse:
        message = await manager.set_feedback(owner_id, chat_id, message_id, body.feedback)
        return success({"message": message})

    @app.post("/chats/{chat_id}/share")
    async def share_chat(
        chat_id: str,
        owner_id: str = Depends(get_owner_id),
        sharing: ShareService = Depends(get_sharing),
    ) -> JSONResponse:
        """Issues a public share link valid for the configured window"""
        link = await sharing.share(owner_id, chat_id)
        return success(link)

    @app.delete("/chats/{chat_id}/share")
    async def unshare_chat(
        chat_id: str,
        owner_id: str = Depends(get_owner_id),
        sharing: ShareService = Depends(get_sharing),
    ) -> JSONResponse:
        chat = await sharing.unshare(owner_id, chat_id)
        return success({"chat": chat})

    @app.get("/shared/{token}")
    async def get_shared_chat(
        token: str,
        sharing: ShareService = Depends(get_sharing),
    ) -> JSONResponse:
        """Public read-only view of a shared chat"""
        chat = await sharing.get_shared_chat(token)
        return success({"chat": SharedChatView.from_chat(chat)})

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
