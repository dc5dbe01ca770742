"""
Communication schemas.

`Communication` is a tagged union of message and call events used by the
lead state machine's timeline walk. Gateway request/response types live here
too so the services and the Twilio adapter share one vocabulary.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

Sender = Literal["agent", "lead"]

FAILED_MESSAGE_STATUSES = frozenset({"failed", "undelivered"})
FAILED_CALL_STATUSES = frozenset({"failed", "busy", "no-answer", "canceled"})
TERMINAL_CALL_STATUSES = frozenset({"completed"}) | FAILED_CALL_STATUSES

# Rows that never left the building are not part of the conversation
UNSENT_MESSAGE_STATUSES = frozenset({"scheduled", "queued", "cancelled"})
UNPLACED_CALL_STATUSES = frozenset({"scheduled"})


class MessageEvent(BaseModel):
    kind: Literal["message"] = "message"
    timestamp: datetime
    sender: Sender
    delivery_status: str


class CallEvent(BaseModel):
    kind: Literal["call"] = "call"
    timestamp: datetime
    sender: Sender
    status: str


Communication = Annotated[Union[MessageEvent, CallEvent], Field(discriminator="kind")]


class TimelineEntry(BaseModel):
    """Shared projection of a communication for the status walk."""
    timestamp: datetime
    sender: Sender
    failed: bool


def to_timeline_entry(event: Communication) -> TimelineEntry:
    if isinstance(event, MessageEvent):
        failed = event.delivery_status in FAILED_MESSAGE_STATUSES
    else:
        failed = event.status in FAILED_CALL_STATUSES
    return TimelineEntry(timestamp=event.timestamp, sender=event.sender, failed=failed)


# === Gateway types ===

class CallPlacement(BaseModel):
    provider_call_id: str
    status: str = "queued"


class MessageReceipt(BaseModel):
    provider_message_id: str
    status: str = "sent"


class CallCompletion(BaseModel):
    """Normalized call status callback."""
    provider_call_id: str
    status: str
    duration_seconds: Optional[int] = None
    is_voicemail: bool = False


class DeliveryStatusUpdate(BaseModel):
    """Normalized message delivery callback."""
    provider_message_id: str
    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
