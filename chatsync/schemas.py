"""
Pydantic schemas for the chat domain and the API surface.

This module contains:
- Domain records shared by the store, pipeline and broadcaster (Message, Chat)
- Provider event envelopes and the raw inbound message payload
- Request/response models for the HTTP API
"""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from chatsync.utils import ensure_utc


# =============================================================================
# Domain Records
# =============================================================================

class Message(BaseModel):
    """
    A single chat message. Immutable once created.

    Ordering within a chat is by timestamp with insertion order as the
    tie-break; the chat id is not stored on the record, it is resolved
    from from_id/to_id by the ingestion pipeline.
    """
    id: Optional[str] = Field(None, description="Provider message id, or a generated one")
    from_id: str = Field(..., alias="from", description="Sender identifier")
    to_id: Optional[str] = Field(None, alias="to", description="Recipient identifier")
    body: str = Field(..., description="Message text")
    timestamp: datetime = Field(..., description="UTC message time")
    from_me: bool = Field(False, alias="fromMe")
    is_group: bool = Field(False, alias="isGroup")
    sender: Optional[str] = Field(None, description="Author display name for group messages")

    model_config = {
        "frozen": True,
        "populate_by_name": True,
    }

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class Chat(BaseModel):
    """
    A conversation with one partner.

    messages is append-only; last_message always mirrors messages[-1]
    (None for a chat started without messages).
    """
    chat_id: str = Field(..., alias="chatId")
    display_name: str = Field(..., alias="displayName")
    messages: List[Message] = Field(default_factory=list)
    last_message: Optional[Message] = Field(None, alias="lastMessage")
    unread_count: int = Field(0, ge=0, alias="unreadCount")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    model_config = {"populate_by_name": True}

    def snapshot(self) -> "Chat":
        """Copy safe to hand out; messages are immutable so the list is copied shallowly."""
        return self.model_copy(update={"messages": list(self.messages)})

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# Provider Events
# =============================================================================

ProviderEventType = Literal["qr", "authenticated", "ready", "message", "disconnected", "auth-failure"]


class ProviderEvent(BaseModel):
    """Envelope for everything the provider bridge reports."""
    type: ProviderEventType
    payload: Any = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        # The bridge reports auth_failure with an underscore
        if isinstance(v, str):
            return v.replace("_", "-")
        return v


class RawMessagePayload(BaseModel):
    """
    Payload of a provider 'message' event before normalization.

    Every field is optional here; the ingestion pipeline decides what is
    required so that a bad event is dropped instead of failing validation
    at the HTTP boundary.
    """
    id: Optional[str] = None
    from_id: Optional[str] = Field(None, alias="from")
    to_id: Optional[str] = Field(None, alias="to")
    body: Optional[str] = None
    timestamp: Optional[datetime] = None
    from_me: bool = Field(False, alias="fromMe")
    is_group: bool = Field(False, alias="isGroup")
    sender: Optional[str] = None

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class ProviderStatus(BaseModel):
    """Connection state of the messaging provider as last reported."""
    state: Literal["initializing", "qr", "authenticated", "ready", "disconnected", "auth-failure"] = "initializing"
    ready: bool = False
    qr_code: Optional[str] = Field(None, alias="qrCode")
    reason: Optional[str] = None
    updated_at: datetime = Field(..., alias="updatedAt")

    model_config = {"populate_by_name": True}


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """Outbound send command. Body emptiness is checked by the send gateway."""
    chat_id: str = Field(..., alias="chatId", description="Chat id or phone number")
    body: str = Field("", description="Message text")

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [{"chatId": "79990001122@c.us", "body": "hi"}]
        }
    }


class StartChatRequest(BaseModel):
    phone_number: str = Field(..., alias="phoneNumber", min_length=1)

    model_config = {"populate_by_name": True}


# =============================================================================
# Pydantic Response Models
# =============================================================================

class EventAcceptedResponse(BaseModel):
    status: str = Field(default="accepted")


class SendMessageResponse(BaseModel):
    success: bool = True
    message_id: Optional[str] = Field(None, alias="messageId")
    chat: Chat

    model_config = {"populate_by_name": True}


class ViewedResponse(BaseModel):
    status: str = Field(default="ok")
    chat: Optional[Chat] = None


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
