from __future__ import annotations

import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MessageType = Literal["inbound-email", "outbound-email"]


class Message(BaseModel):
    """
    A single email/SMS turn inside a conversation.

    `timestamp` keeps the raw value the backend sent; `local_date` is the
    parsed, timezone-aware form every sort and window check uses.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    conversation_id: str
    response_id: Optional[str] = None

    sender_name: str = ""
    sender_email: str = ""
    sender: Optional[str] = None
    recipient: Optional[str] = None
    receiver: Optional[str] = None

    body: str = ""
    content: Optional[str] = None
    subject: Optional[str] = None

    timestamp: str
    local_date: datetime.datetime
    type: MessageType = "inbound-email"
    read: bool = False

    ev_score: Optional[float] = None

    associated_account: Optional[str] = None
    in_reply_to: Optional[str] = None
    is_first_email: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Thread(BaseModel):
    """Conversation metadata: contact details, status flags and AI fields."""

    model_config = ConfigDict(extra="allow")

    id: str
    conversation_id: str
    associated_account: str = ""

    created_at: str
    updated_at: str
    last_message_at: str

    lead_name: str = "Unknown Lead"
    client_email: str = ""
    phone: str = ""
    location: str = ""
    source_name: str = ""

    ai_summary: str = ""
    lcp_enabled: bool = False
    lcp_flag_threshold: Optional[float] = None

    flag: bool = False
    flag_for_review: bool = False
    flag_review_override: bool = False
    spam: bool = False
    busy: bool = False
    read: bool = False
    completed: bool = False

    budget_range: str = ""
    timeline: str = ""
    preferred_property_types: str = ""
    priority: str = "normal"
    subject: str = ""
    notes: Optional[str] = None

    ai_score: Optional[float] = None


class Conversation(BaseModel):
    """One thread plus its messages: the unit cached and rendered per row."""

    thread: Thread
    messages: List[Message] = Field(default_factory=list)

    @property
    def conversation_id(self) -> str:
        return self.thread.conversation_id


class StorageMetadata(BaseModel):
    version: str = "1.0.0"
    last_updated: str
    user_id: str
    conversation_count: int


class StorageStats(BaseModel):
    has_data: bool
    is_stale: bool
    conversation_count: int
    last_updated: Optional[str] = None
