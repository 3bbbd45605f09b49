"""Core message contracts for the modweave message bus."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

SYSTEM_SENDER = "system"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self is not MessageStatus.QUEUED


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


def ordering_key(sender: Optional[str], target: str) -> str:
    """Key under which deliveries for a (sender, target) pair are serialised."""
    return f"{sender or SYSTEM_SENDER}->{target}"


class Message(BaseModel):
    """
    Envelope exchanged over the bus. Includes addressing, delivery state and payload.
    """

    message_id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4()}")
    sender: Optional[str] = None
    target: str
    message_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    replay_of: Optional[str] = None
    status: MessageStatus = MessageStatus.QUEUED
    attempts: int = 0
    last_error: Optional[str] = None
    result: Any = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ordering_key(self) -> str:
        return ordering_key(self.sender, self.target)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Message":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class DeliveryReceipt(BaseModel):
    """Outcome of submitting one message to one target."""

    target: str
    ok: bool
    message_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


class BroadcastResult(BaseModel):
    """Per-target results of a broadcast.

    ``succeeded`` is only ``True`` when every target accepted the message;
    callers must inspect ``results`` for partial failures.
    """

    results: Dict[str, DeliveryReceipt] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(receipt.ok for receipt in self.results.values())

    @property
    def total_sent(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for receipt in self.results.values() if receipt.ok)

    @property
    def failed_targets(self) -> List[str]:
        return [name for name, receipt in self.results.items() if not receipt.ok]
