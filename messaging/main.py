import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from messaging.config import settings
from messaging.hub import ConnectionHub
from messaging.registry import ConnectionRegistry
from messaging.storage import (
    ConversationNotFoundError,
    NotParticipantError,
    SessionLocal,
    StorageError,
    check_db_health,
    get_conversation_messages,
    get_db,
    get_or_create_conversation,
    init_db,
    list_conversations,
    mark_conversation_read,
)
from messaging.logging_utils import setup_logging, RequestLoggingMiddleware, log_chat_data
from messaging.metrics import get_metrics, get_metrics_content_type
from messaging.utils import AuthenticationError, authenticate_cookies
from messaging.schemas import (
    ConversationRef,
    ConversationRefResponse,
    ConversationsListResponse,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    HistoryMessage,
    MarkReadResponse,
    MessagesListResponse,
    Pagination,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, create the connection registry and hub
    - Shutdown: Drop the registry with the process
    """
    init_db()
    app.state.registry = ConnectionRegistry()
    app.state.hub = ConnectionHub(app.state.registry, SessionLocal)
    yield
    logger.info(f"Shutting down with {len(app.state.registry)} live connections")


app = FastAPI(
    title="Messaging API",
    description="Real-time two-party messaging: live socket delivery plus conversation history",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

if settings.CLIENT_URL:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.CLIENT_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


AUTH_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing, invalid or expired token"},
}
PARTICIPANT_RESPONSES = {
    **AUTH_RESPONSES,
    403: {"model": ErrorResponse, "description": "Not a participant in this conversation"},
    404: {"model": ErrorResponse, "description": "Conversation not found"},
}


def get_current_user_id(request: Request) -> str:
    """
    Dependency resolving the authenticated user from the auth cookie.
    Uses the same token format as the socket handshake.
    """
    try:
        claims = authenticate_cookies(request.cookies)
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.reason)
    return claims.user_id


def raise_for_conversation_error(error: Exception) -> None:
    """Map gateway exceptions to HTTP errors."""
    if isinstance(error, ConversationNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    if isinstance(error, NotParticipantError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a participant in this conversation"
        )
    if isinstance(error, StorageError):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
    raise error


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. JWT_SECRET_KEY is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.JWT_SECRET_KEY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="JWT_SECRET_KEY not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Live Connection Route
# =============================================================================

@app.websocket("/ws")
async def live_connection(websocket: WebSocket) -> None:
    """
    Persistent event channel. Authenticated at handshake by the auth cookie.

    Inbound events: send_message, typing, stop_typing
    Outbound events: connected, message_sent, receive_message, user_typing,
    user_stop_typing, error
    """
    await websocket.app.state.hub.serve(websocket)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse, responses=AUTH_RESPONSES)
def get_conversations(
    page: Annotated[int, Query(ge=1, description="Page number, 1-based")] = 1,
    limit: Annotated[int, Query(ge=1, le=50, description="Conversations per page")] = 20,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> ConversationsListResponse:
    """
    List the caller's conversations, most recent activity first.

    Each entry carries the other participant's profile fields, the last
    message summary and the caller's unread count.
    """
    try:
        rows, total = list_conversations(db, user_id, page=page, limit=limit)
    except StorageError as e:
        raise_for_conversation_error(e)

    logger.info(f"GET /conversations: returned {len(rows)} of {total} for user {user_id}")

    return ConversationsListResponse(
        data=[ConversationSummary.model_validate(row) for row in rows],
        pagination=Pagination.build(page, limit, total),
    )


@app.post(
    "/conversations/with/{recipient_id}",
    response_model=ConversationRefResponse,
    responses={**AUTH_RESPONSES, 400: {"model": ErrorResponse, "description": "Recipient is the caller"}},
)
def start_conversation(
    recipient_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> ConversationRefResponse:
    """
    Get or create the conversation between the caller and recipient_id.
    Idempotent: repeated calls return the same conversation id.
    """
    if recipient_id == user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot start a conversation with yourself"
        )

    try:
        conversation = get_or_create_conversation(db, user_id, recipient_id)
    except StorageError as e:
        raise_for_conversation_error(e)

    log_chat_data(request, conversation_id=conversation.id)
    return ConversationRefResponse(data=ConversationRef(id=conversation.id))


# =============================================================================
# Message Routes
# =============================================================================

@app.get(
    "/messages/{conversation_id}",
    response_model=MessagesListResponse,
    responses=PARTICIPANT_RESPONSES,
)
def get_messages(
    conversation_id: str,
    request: Request,
    page: Annotated[int, Query(ge=1, description="Page number, 1 is the most recent")] = 1,
    limit: Annotated[int, Query(ge=1, le=100, description="Messages per page")] = 20,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    Fetch one page of a conversation's history. Caller must be a participant.

    Ordering:
        - Page 1 holds the newest messages
        - Messages within a page are oldest-first
    """
    try:
        rows, total = get_conversation_messages(db, conversation_id, user_id, page=page, limit=limit)
    except (ConversationNotFoundError, NotParticipantError, StorageError) as e:
        log_chat_data(request, conversation_id=conversation_id)
        raise_for_conversation_error(e)

    log_chat_data(request, conversation_id=conversation_id, returned=len(rows))

    return MessagesListResponse(
        data=[HistoryMessage.model_validate(row) for row in rows],
        pagination=Pagination.build(page, limit, total),
    )


@app.post(
    "/messages/read/{conversation_id}",
    response_model=MarkReadResponse,
    responses=PARTICIPANT_RESPONSES,
)
def mark_messages_read(
    conversation_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> MarkReadResponse:
    """
    Mark every unread message the caller did not author in this conversation as read.

    Idempotent. Does not notify the other participant's live connection.
    """
    try:
        updated = mark_conversation_read(db, conversation_id, user_id)
    except (ConversationNotFoundError, NotParticipantError, StorageError) as e:
        log_chat_data(request, conversation_id=conversation_id)
        raise_for_conversation_error(e)

    log_chat_data(request, conversation_id=conversation_id, updated=updated)
    return MarkReadResponse(updated=updated)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
