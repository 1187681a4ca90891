import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatsync.broadcast import BroadcastCoordinator, ClientSession
from chatsync.config import Settings, get_settings
from chatsync.gateway import (
    InvalidSendRequest,
    ProviderNotReady,
    RecipientNotRegistered,
    SendError,
    SendFailed,
    SendGateway,
)
from chatsync.ingestion import IngestionPipeline
from chatsync.logging_utils import RequestLoggingMiddleware, log_event_data, setup_logging
from chatsync.metrics import get_metrics, get_metrics_content_type
from chatsync.provider import BridgeProvider, MessagingProvider, ProviderState
from chatsync.schemas import (
    Chat,
    ErrorResponse,
    EventAcceptedResponse,
    HealthResponse,
    ProviderEvent,
    ProviderStatus,
    SendMessageRequest,
    SendMessageResponse,
    StartChatRequest,
    ViewedResponse,
)
from chatsync.storage import ChatRepository, check_db_health, create_db_engine, init_db
from chatsync.store import ChatStore
from chatsync.unread import UnreadTracker
from chatsync.utils import verify_hmac_signature


logger = logging.getLogger(__name__)

SEND_ERROR_STATUS = {
    InvalidSendRequest: status.HTTP_400_BAD_REQUEST,
    ProviderNotReady: status.HTTP_503_SERVICE_UNAVAILABLE,
    RecipientNotRegistered: status.HTTP_404_NOT_FOUND,
    SendFailed: status.HTTP_502_BAD_GATEWAY,
}


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ChatStore:
    return request.app.state.store


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def get_gateway(request: Request) -> SendGateway:
    return request.app.state.gateway


def get_tracker(request: Request) -> UnreadTracker:
    return request.app.state.tracker


router = APIRouter()


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    request: Request,
    response: Response,
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable). Provider readiness is
    reported separately by /provider/status.
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not check_db_health(request.app.state.engine):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Provider Routes
# =============================================================================

@router.post(
    "/provider/events",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Event queue full"},
    },
)
async def provider_events(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    settings: Settings = Depends(get_app_settings),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> EventAcceptedResponse:
    """
    Inbound provider feed.

    - Verifies X-Signature (hex HMAC-SHA256 of the raw body)
    - Validates the {type, payload} envelope
    - Queues the event for the ingestion loop; payload problems are
      handled there and do not fail this request
    """
    raw_body = await request.body()

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Provider event with missing or invalid signature")
        log_event_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        event = ProviderEvent.model_validate(json.loads(raw_body))
    except json.JSONDecodeError as e:
        log_event_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid JSON: {e}")
    except ValidationError as e:
        log_event_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if not pipeline.submit(event):
        log_event_data(request, event_type=event.type, result="queue_full")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="event queue full")

    log_event_data(request, event_type=event.type, result="accepted")
    return EventAcceptedResponse()


@router.get("/provider/status", response_model=ProviderStatus)
async def provider_status(request: Request) -> ProviderStatus:
    return request.app.state.provider_state.status()


# =============================================================================
# Chat Routes
# =============================================================================

@router.get("/chats", response_model=List[Chat])
async def list_chats(store: ChatStore = Depends(get_store)) -> List[Chat]:
    return store.list()


@router.get("/chats/{chat_id}", response_model=Chat, responses={404: {"model": ErrorResponse}})
async def get_chat(chat_id: str, store: ChatStore = Depends(get_store)) -> Chat:
    chat = store.get(chat_id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="chat not found")
    return chat


@router.post("/chats", response_model=Chat)
async def start_chat(
    data: StartChatRequest,
    gateway: SendGateway = Depends(get_gateway),
) -> Chat:
    """Open a chat with a registered phone number without sending anything."""
    return await gateway.start_chat(data.phone_number)


@router.post("/chats/{chat_id}/viewed", response_model=ViewedResponse)
async def mark_viewed(chat_id: str, tracker: UnreadTracker = Depends(get_tracker)) -> ViewedResponse:
    """Reset the unread count. Unknown chats are accepted and ignored."""
    return ViewedResponse(chat=await tracker.mark_viewed(chat_id))


@router.post(
    "/send-message",
    response_model=SendMessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request"},
        404: {"model": ErrorResponse, "description": "Recipient not registered"},
        502: {"model": ErrorResponse, "description": "Provider send failed"},
        503: {"model": ErrorResponse, "description": "Provider not ready"},
    },
)
async def send_message(
    data: SendMessageRequest,
    gateway: SendGateway = Depends(get_gateway),
) -> SendMessageResponse:
    chat = await gateway.send(data.chat_id, data.body)
    message_id = chat.last_message.id if chat.last_message is not None else None
    return SendMessageResponse(message_id=message_id, chat=chat)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Client Sessions
# =============================================================================

async def handle_command(app: FastAPI, command: Any) -> Optional[Dict[str, Any]]:
    """
    Run one client command.

    Returns:
        A reply for the issuing session, or None when the resulting store
        change is delivered by broadcast alone
    """
    if not isinstance(command, dict):
        return {"type": "error", "error": "command must be an object"}

    command_type = command.get("type")
    if command_type == "sendMessage":
        reply: Dict[str, Any] = {"type": "send-result", "requestId": command.get("requestId")}
        try:
            chat = await app.state.gateway.send(str(command.get("chatId") or ""), str(command.get("body") or ""))
        except SendError as e:
            reply.update(ok=False, error=e.detail, retryable=e.retryable)
            return reply
        reply.update(ok=True, chatId=chat.chat_id)
        return reply

    if command_type == "markViewed":
        await app.state.tracker.mark_viewed(str(command.get("chatId") or ""))
        return None

    return {"type": "error", "error": f"unknown command: {command_type}"}


def reply_to_session(session: ClientSession, reply: Dict[str, Any]) -> bool:
    """Queue a command reply for one session. A full queue drops the reply."""
    if session.offer(reply):
        return True
    logger.warning(f"Dropped {reply.get('type')} reply for session_id={session.session_id}")
    return False


@router.websocket("/ws")
async def client_session(websocket: WebSocket):
    await websocket.accept()
    coordinator: BroadcastCoordinator = websocket.app.state.coordinator
    session = await coordinator.register(websocket.send_json)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                command = json.loads(raw)
            except json.JSONDecodeError:
                reply_to_session(session, {"type": "error", "error": "invalid JSON"})
                continue
            reply = await handle_command(websocket.app, command)
            if reply is not None:
                reply_to_session(session, reply)
    except WebSocketDisconnect:
        pass
    finally:
        coordinator.unregister(session)


# =============================================================================
# Application
# =============================================================================

async def send_error_handler(request: Request, exc: SendError) -> JSONResponse:
    status_code = SEND_ERROR_STATUS.get(type(exc), status.HTTP_502_BAD_GATEWAY)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "detail": exc.detail, "retryable": exc.retryable},
    )


def create_app(settings: Optional[Settings] = None, provider: Optional[MessagingProvider] = None) -> FastAPI:
    """
    Build the service.

    Args:
        settings: Settings to use instead of the environment
        provider: Provider collaborator; defaults to the HTTP bridge client
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: load the durable mirror into the store, wire components,
        start the ingestion loop. Shutdown: stop the loop, drop sessions,
        close the provider client.
        """
        engine = create_db_engine(settings.DATABASE_URL)
        init_db(engine)
        store = ChatStore.load(ChatRepository(engine))

        provider_state = ProviderState()
        coordinator = BroadcastCoordinator(
            store,
            queue_size=settings.SESSION_QUEUE_SIZE,
            status_source=provider_state.to_wire,
        )
        pipeline = IngestionPipeline(
            store,
            coordinator,
            provider_state=provider_state,
            dedup_window_ms=settings.DEDUP_WINDOW_MS,
            dedup_scan_limit=settings.DEDUP_SCAN_LIMIT,
            queue_size=settings.EVENT_QUEUE_SIZE,
        )
        messaging = provider or BridgeProvider(settings.PROVIDER_BASE_URL, settings.PROVIDER_TIMEOUT_SECONDS)

        app.state.settings = settings
        app.state.engine = engine
        app.state.store = store
        app.state.provider_state = provider_state
        app.state.coordinator = coordinator
        app.state.pipeline = pipeline
        app.state.tracker = UnreadTracker(store, coordinator)
        app.state.gateway = SendGateway(
            messaging,
            pipeline,
            provider_state,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

        ingestion_task = asyncio.create_task(pipeline.run())
        logger.info(f"Chat sync service started with {len(store)} chats")
        yield

        ingestion_task.cancel()
        with suppress(asyncio.CancelledError):
            await ingestion_task
        coordinator.close()
        await messaging.aclose()
        engine.dispose()

    app = FastAPI(
        title="Chat Sync API",
        description="Keeps chats and unread counts in sync between a messaging provider and connected clients",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "X-Signature"],
        allow_credentials=True,
    )
    app.add_exception_handler(SendError, send_error_handler)
    app.include_router(router)
    return app


app = create_app()
