"""
Pydantic schemas for socket payloads and REST responses.

This module contains:
- Socket frame and inbound event payload models
- Outbound socket event models
- Response models for the REST endpoints
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from messaging.config import settings


# =============================================================================
# Socket Frames
# =============================================================================

class SocketFrame(BaseModel):
    """
    One JSON text frame on a live connection, in either direction.

    {"event": "send_message", "data": {...}}
    """
    event: str = Field(..., min_length=1, description="Event name")
    data: Any = Field(default=None, description="Event payload")


# =============================================================================
# Inbound Event Payloads
# =============================================================================

class SendMessagePayload(BaseModel):
    """
    Payload of a send_message event.

    Validates:
    - recipientId: non-empty string
    - content: non-empty after trimming, bounded by MESSAGE_MAX_LENGTH
    - conversationId: optional, empty string treated as absent
    """
    recipient_id: str = Field(..., alias="recipientId", min_length=1)
    content: str = Field(..., description="Message text, trimmed")
    conversation_id: Optional[str] = Field(None, alias="conversationId")

    model_config = {
        "populate_by_name": True,
        "str_strip_whitespace": True,
    }

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v:
            raise ValueError("Message cannot be empty")
        if len(v) > settings.MESSAGE_MAX_LENGTH:
            raise ValueError(f"Message cannot exceed {settings.MESSAGE_MAX_LENGTH} characters")
        return v

    @field_validator("conversation_id")
    @classmethod
    def empty_conversation_id_is_absent(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class TypingPayload(BaseModel):
    """Payload of typing / stop_typing events."""
    recipient_id: str = Field(..., alias="recipientId", min_length=1)
    conversation_id: Optional[str] = Field(None, alias="conversationId")

    model_config = {
        "populate_by_name": True,
        "str_strip_whitespace": True,
    }


def describe_validation_error(exc: ValidationError) -> str:
    """Turn a payload ValidationError into the message sent back in an error event."""
    errors = exc.errors()
    if any(err["type"] == "missing" for err in errors):
        return "Missing required fields"
    first = errors[0]
    ctx_error = first.get("ctx", {}).get("error")
    if ctx_error is not None:
        return str(ctx_error)
    field = ".".join(str(part) for part in first["loc"])
    return f"{field}: {first['msg']}" if field else first["msg"]


# =============================================================================
# Outbound Event Payloads
# =============================================================================

class MessageSentEvent(BaseModel):
    """Acknowledgment sent to the author once the message is stored."""
    id: str
    conversation_id: str = Field(..., serialization_alias="conversationId")
    content: str
    timestamp: str
    is_own: bool = Field(True, serialization_alias="isOwn")


class MessageReceivedEvent(BaseModel):
    """Push delivered to the recipient's live connection."""
    id: str
    conversation_id: str = Field(..., serialization_alias="conversationId")
    sender_id: str = Field(..., serialization_alias="senderId")
    sender_name: str = Field(..., serialization_alias="senderName")
    content: str
    timestamp: str
    is_own: bool = Field(False, serialization_alias="isOwn")
    is_read: bool = Field(False, serialization_alias="isRead")


class TypingEvent(BaseModel):
    """Relayed typing indicator."""
    conversation_id: Optional[str] = Field(None, serialization_alias="conversationId")
    user_id: str = Field(..., serialization_alias="userId")


# =============================================================================
# REST Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class Pagination(BaseModel):
    current_page: int = Field(..., ge=1, alias="currentPage")
    limit: int = Field(..., ge=1)
    total_count: int = Field(..., ge=0, alias="totalCount")
    total_pages: int = Field(..., ge=0, alias="totalPages")
    has_next_page: bool = Field(..., alias="hasNextPage")
    has_previous_page: bool = Field(..., alias="hasPreviousPage")

    model_config = {"populate_by_name": True}

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit
        return cls(
            current_page=page,
            limit=limit,
            total_count=total,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        )


class ConversationSummary(BaseModel):
    """
    One row of the conversation list, seen from the requesting user.

    unreadCount counts messages in the conversation that the requester did
    not author and has not read.
    """
    id: str
    user_id: str = Field(..., alias="userId")
    user_name: str = Field(..., alias="userName")
    email: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoUrl")
    last_message: Optional[str] = Field(None, alias="lastMessage")
    last_message_time: Optional[str] = Field(None, alias="lastMessageTime")
    last_message_sender_id: Optional[str] = Field(None, alias="lastMessageSenderId")
    unread_count: int = Field(0, ge=0, alias="unreadCount")

    model_config = {"populate_by_name": True}


class ConversationsListResponse(BaseModel):
    success: bool = True
    message: str = "Conversations retrieved successfully"
    data: list[ConversationSummary] = Field(default_factory=list)
    pagination: Pagination


class HistoryMessage(BaseModel):
    """A stored message as returned by the history endpoint."""
    id: str
    conversation_id: str = Field(..., alias="conversationId")
    sender_id: str = Field(..., alias="senderId")
    sender_name: str = Field(..., alias="senderName")
    sender_photo: Optional[str] = Field(None, alias="senderPhoto")
    content: str
    timestamp: str
    is_read: bool = Field(..., alias="isRead")
    is_own: bool = Field(..., alias="isOwn")

    model_config = {"populate_by_name": True}


class MessagesListResponse(BaseModel):
    success: bool = True
    message: str = "Messages retrieved successfully"
    data: list[HistoryMessage] = Field(default_factory=list)
    pagination: Pagination


class ConversationRef(BaseModel):
    id: str


class ConversationRefResponse(BaseModel):
    success: bool = True
    message: str = "Conversation retrieved or created successfully"
    data: ConversationRef


class MarkReadResponse(BaseModel):
    success: bool = True
    message: str = "Messages marked as read"
    updated: int = Field(..., ge=0, description="Messages transitioned to read by this call")
