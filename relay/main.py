import logging
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from relay.auth import authenticate, end_session, require_tenant, start_session
from relay.config import Settings, get_settings
from relay.errors import QueueFull, RelayError, ValidationError, relay_error_handler
from relay.logging_utils import RequestLoggingMiddleware, log_post_data, setup_logging
from relay.metrics import get_metrics, get_metrics_content_type
from relay.runtime import Relay
from relay.schemas import (
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MessageRecord,
    PostMessageResponse,
    RelayHealthResponse,
    SuccessResponse,
)
from relay.service import MessageService, UploadedFile
from relay.ui import CHAT_UI_HTML

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: connect the store (or start queued mode) and the reconnect monitor
    - Shutdown: stop the monitor and release the engine
    """
    relay: Relay = app.state.relay
    await relay.start()
    yield
    await relay.stop()


def get_relay(request: Request) -> Relay:
    return request.app.state.relay


def get_service(request: Request) -> MessageService:
    return request.app.state.relay.service


def parse_media_id(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError("Invalid media id")


async def read_upload(file: Optional[UploadFile]) -> Optional[UploadedFile]:
    """Browsers send an empty, unnamed part when no file was picked."""
    if file is None:
        return None
    data = await file.read()
    if not file.filename and not data:
        return None
    return UploadedFile(
        filename=file.filename or "file",
        mime_type=file.content_type or "application/octet-stream",
        data=data,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Chat Relay API",
        description="Passcode-gated multi-tenant chat relay with an offline write queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.relay = Relay(settings)

    app.add_exception_handler(RelayError, relay_error_handler)

    # Last added runs first: logging wraps CORS wraps sessions
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie="session",
        max_age=settings.SESSION_MAX_AGE,
        same_site=settings.SESSION_SAME_SITE,
        https_only=settings.SESSION_HTTPS_ONLY,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=settings.CORS_ALLOW_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health", response_model=RelayHealthResponse)
    async def health(service: MessageService = Depends(get_service)) -> RelayHealthResponse:
        """
        Store connectivity, per-tenant queue depths and states, and
        configured vs. initialized tenants. Always 200: a disconnected store
        is a degraded mode, not an outage.
        """
        return RelayHealthResponse(**service.health())

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(response: Response, relay: Relay = Depends(get_relay)) -> HealthResponse:
        """
        Readiness probe - 200 only while the durable store is connected,
        503 while writes are being queued.
        """
        if not relay.store.is_connected:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable, messages are being queued"
            )
        return HealthResponse(status="ready")

    # =========================================================================
    # Session Routes
    # =========================================================================

    @app.post(
        "/api/login",
        response_model=LoginResponse,
        responses={401: {"model": ErrorResponse, "description": "Invalid password"}},
    )
    async def login(
        payload: LoginRequest,
        request: Request,
        relay: Relay = Depends(get_relay),
    ) -> LoginResponse:
        """Exchange today's passcode for an authenticated session."""
        tenant = authenticate(relay.registry, payload.password)
        start_session(request, tenant)
        logger.info(f"Login succeeded for tenant {tenant}")
        return LoginResponse(success=True, ui=CHAT_UI_HTML)

    @app.post("/api/logout", response_model=SuccessResponse)
    async def logout(request: Request) -> SuccessResponse:
        end_session(request)
        return SuccessResponse(success=True)

    # =========================================================================
    # Message Routes
    # =========================================================================

    @app.get(
        "/api/messages",
        response_model=List[MessageRecord],
        responses={
            401: {"model": ErrorResponse},
            500: {"model": ErrorResponse, "description": "Database error"},
        },
    )
    async def list_messages(
        tenant: str = Depends(require_tenant),
        service: MessageService = Depends(get_service),
    ) -> List[MessageRecord]:
        """
        Latest messages for the session's tenant, oldest first, at most 100.

        While the database is unreachable this returns the messages still
        waiting in the offline queue, each with pending=true.
        """
        records = await service.list_messages(tenant)
        logger.debug(f"GET /api/messages: returned {len(records)} messages for tenant {tenant}")
        return [MessageRecord(**record) for record in records]

    @app.post(
        "/api/messages",
        response_model=PostMessageResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Content required"},
            401: {"model": ErrorResponse},
            503: {"model": ErrorResponse, "description": "Offline queue full"},
        },
    )
    async def post_message(
        request: Request,
        content: Annotated[str, Form()] = "",
        file: Annotated[Optional[UploadFile], File()] = None,
        mediaId: Annotated[Optional[str], Form()] = None,
        tenant: str = Depends(require_tenant),
        service: MessageService = Depends(get_service),
    ) -> PostMessageResponse:
        """
        Post a message with an optional attachment (multipart form).

        Returns queued=true when the database could not take the write right
        away; the message is retried in order until it is persisted.
        """
        try:
            media_id = parse_media_id(mediaId)
            upload = await read_upload(file)
            result = await service.post_message(tenant, content, file=upload, media_id=media_id)
        except ValidationError:
            log_post_data(request, tenant=tenant, result="validation_error")
            raise
        except QueueFull:
            log_post_data(request, tenant=tenant, result="rejected")
            raise

        log_post_data(request, tenant=tenant, result=result.status)
        return PostMessageResponse(success=True, queued=result.queued)

    @app.get(
        "/api/media/{media_id}",
        responses={
            200: {"content": {"application/octet-stream": {}}},
            401: {"model": ErrorResponse},
            404: {"model": ErrorResponse, "description": "Media not found"},
            503: {"model": ErrorResponse, "description": "Database offline"},
        },
    )
    async def get_media(
        media_id: int,
        tenant: str = Depends(require_tenant),
        service: MessageService = Depends(get_service),
    ) -> Response:
        media = await service.fetch_media(tenant, media_id)
        return Response(
            content=media.data,
            media_type=media.mime_type,
            headers={
                "Content-Disposition": f"inline; filename*=UTF-8''{quote(media.filename)}",
            },
        )

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """
        Expose Prometheus-style metrics.

        Includes HTTP request counts and latency, message post outcomes,
        queue drain results, per-tenant queue depth and store connectivity.
        """
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


settings = get_settings()

# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)

app = create_app(settings)
