"""Pydantic models for the chat WebSocket protocol.

Every frame is a flat JSON object tagged by ``type``. Inbound frames are
validated here, at the boundary; outbound frames are built from the event
models so each event has one declared shape.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, field_validator

# Clients use string ids or numeric ones (e.g. Date.now()); both pass through as sent
MessageId = Union[Annotated[str, Field(min_length=1)], int]


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SessionStatus(str, Enum):
    """Where a session sits in the lifecycle, as reported to clients."""

    IDLE      = "idle"       # no search, no room
    SEARCHING = "searching"  # in the waiting pool
    PAIRED    = "paired"     # has a room


class PoolPhase(str, Enum):
    """Waiting pool entry phase."""

    SEARCHING   = "searching"    # only exact-topic partners accepted
    OPEN_TO_ANY = "openToAny"    # any partner accepted


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class Profile(BaseModel):
    """Search criteria submitted with find_partner.

    Missing or null fields are accepted; the display name falls back to a
    placeholder when rendered and an absent field means "no preference".
    """

    username: str = Field(default="", description="Display name shown to the partner")
    field: str = Field(default="", description="Topic preference; empty means generic")

    @field_validator("username", "field", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()


# ---------------------------------------------------------------------------
# Inbound frames (client -> server)
# ---------------------------------------------------------------------------


class FindPartnerRequest(Profile):
    type: Literal["find_partner"] = "find_partner"
    readReceipts: Optional[bool] = Field(default=None, description="Optional read-receipt preference")

    def profile(self) -> Profile:
        return Profile(username=self.username, field=self.field)


class SendMessageRequest(BaseModel):
    type: Literal["send_message"] = "send_message"
    text: str = Field(..., min_length=1, description="Message text")
    replyTo: Optional[Any] = Field(default=None, description="Quoted message, passed through")
    timestamp: Optional[Union[float, str]] = None
    id: Optional[MessageId] = None


class TypingRequest(BaseModel):
    type: Literal["typing"] = "typing"
    isTyping: bool = True


class SendReactionRequest(BaseModel):
    type: Literal["send_reaction"] = "send_reaction"
    messageID: MessageId
    reaction: str = Field(..., min_length=1)


class MarkReadRequest(BaseModel):
    type: Literal["mark_read"] = "mark_read"
    messageID: MessageId


class ToggleReadReceiptsRequest(BaseModel):
    type: Literal["toggle_read_receipts"] = "toggle_read_receipts"
    enabled: bool


class DisconnectPartnerRequest(BaseModel):
    type: Literal["disconnect_partner"] = "disconnect_partner"


class BlockPartnerRequest(BaseModel):
    type: Literal["block_partner"] = "block_partner"


InboundFrame = Union[
    FindPartnerRequest,
    SendMessageRequest,
    TypingRequest,
    SendReactionRequest,
    MarkReadRequest,
    ToggleReadReceiptsRequest,
    DisconnectPartnerRequest,
    BlockPartnerRequest,
]

INBOUND_MODELS: Dict[str, Type[BaseModel]] = {
    "find_partner": FindPartnerRequest,
    "send_message": SendMessageRequest,
    "typing": TypingRequest,
    "send_reaction": SendReactionRequest,
    "mark_read": MarkReadRequest,
    "toggle_read_receipts": ToggleReadReceiptsRequest,
    "disconnect_partner": DisconnectPartnerRequest,
    "block_partner": BlockPartnerRequest,
}


class UnknownFrameType(ValueError):
    """Raised for a frame whose ``type`` is not part of the protocol."""


def parse_inbound(data: Any) -> InboundFrame:
    """Validate a decoded JSON frame into its inbound model.

    Raises:
        UnknownFrameType: if ``type`` is missing or unrecognised.
        pydantic.ValidationError: if the payload does not fit the model.
    """
    if not isinstance(data, dict):
        raise UnknownFrameType("frame must be a JSON object")
    frame_type = data.get("type")
    model = INBOUND_MODELS.get(frame_type) if isinstance(frame_type, str) else None
    if model is None:
        raise UnknownFrameType(f"unknown frame type: {frame_type!r}")
    return model.model_validate(data)


# ---------------------------------------------------------------------------
# Outbound frames (server -> client)
# ---------------------------------------------------------------------------


class MatchedEvent(BaseModel):
    type: Literal["matched"] = "matched"
    name: str
    field: str
    roomID: str


class ReceiveMessageEvent(BaseModel):
    type: Literal["receive_message"] = "receive_message"
    text: str
    sender: Literal["stranger"] = "stranger"
    replyTo: Optional[Any] = None
    timestamp: Optional[Union[float, str]] = None
    id: Optional[MessageId] = None


class PartnerTypingEvent(BaseModel):
    type: Literal["partner_typing"] = "partner_typing"
    isTyping: bool


class ReceiveReactionEvent(BaseModel):
    type: Literal["receive_reaction"] = "receive_reaction"
    messageID: MessageId
    reaction: str


class MessageReadEvent(BaseModel):
    type: Literal["message_read_by_partner"] = "message_read_by_partner"
    messageID: MessageId


class PartnerStatusEvent(BaseModel):
    """Partner presence change; carries no payload besides its type."""
    type: Literal["partner_connected", "partner_disconnected", "partner_reconnecting_server"]


class SessionRestoredEvent(BaseModel):
    """Reconnect acknowledgment.

    A paired session also gets its partner and room again, the same fields
    ``matched`` carries, in case that frame never reached the client.
    """
    type: Literal["session_restored"] = "session_restored"
    status: SessionStatus
    name: Optional[str] = None
    field: Optional[str] = None
    roomID: Optional[str] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


PARTNER_CONNECTED = PartnerStatusEvent(type="partner_connected")
PARTNER_DISCONNECTED = PartnerStatusEvent(type="partner_disconnected")
PARTNER_RECONNECTING = PartnerStatusEvent(type="partner_reconnecting_server")
