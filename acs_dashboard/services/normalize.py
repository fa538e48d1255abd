from __future__ import annotations

import logging
import math
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dateutil import parser as date_parser

from acs_dashboard.schemas.conversation import Conversation, Message, Thread

logger = logging.getLogger("acs.dashboard.services.normalize")

MESSAGE_TYPES = ("inbound-email", "outbound-email")

# Epoch milliseconds that went through a string field, e.g. "1718000000000".
# Shorter digit runs are left to the ISO parser ("2024", "20240614").
EPOCH_MS_PATTERN = re.compile(r"^-?\d{11,}(\.\d+)?$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------

def parse_boolean(value: Any) -> bool:
    """
    Coerce the loose flag values the backend stores into a bool.

    DynamoDB rows carry flags as strings ("true"/"false"), older rows as
    real booleans or 0/1.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    if isinstance(value, (int, float)):
        return value != 0
    return False


def parse_score(value: Any) -> Optional[float]:
    """Parse an EV score (number or numeric string); anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        score = float(value)
    elif isinstance(value, str):
        try:
            score = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(score):
        return None
    return score


def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into an aware datetime, or None if it is not one.

    - ISO strings without an offset (seconds, ms or µs precision) are UTC.
    - Numbers, and strings of 11 or more digits, are epoch milliseconds.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, str) and EPOCH_MS_PATTERN.match(value.strip()):
        value = float(value.strip())

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Invalid epoch timestamp: %r", value)
            return None

    if not isinstance(value, str):
        logger.warning("Unsupported timestamp type %s: %r", type(value).__name__, value)
        return None

    text = value.strip()
    try:
        parsed = date_parser.isoparse(text)
    except (ValueError, OverflowError):
        try:
            parsed = date_parser.parse(text)
        except (ValueError, OverflowError):
            logger.warning("Invalid timestamp format: %r", value)
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def safe_parse_date(value: Any, now: Optional[datetime] = None) -> datetime:
    """Like parse_date, but empty or unparseable input falls back to `now`."""
    parsed = parse_date(value)
    if parsed is None:
        return now or utcnow()
    return parsed


def _first(raw: Mapping[str, Any], *keys: str, default: str = "") -> str:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value if isinstance(value, str) else str(value)
    return default


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _generated_message_id(now: datetime) -> str:
    return f"msg-{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}"


def process_message(
    raw: Mapping[str, Any],
    conversation_id: str,
    now: Optional[datetime] = None,
) -> Message:
    """Map one raw message row onto the canonical Message shape."""
    now = now or utcnow()

    raw_timestamp = raw.get("timestamp")
    if raw_timestamp in (None, ""):
        timestamp = now.isoformat()
    else:
        timestamp = raw_timestamp if isinstance(raw_timestamp, str) else str(raw_timestamp)
    local_date = safe_parse_date(raw_timestamp if raw_timestamp not in (None, "") else now, now)

    sender = _first(raw, "sender", "sender_email", "from")
    recipient = _first(raw, "recipient", "receiver", "to", "receiver_email")
    sender_name = _first(raw, "sender_name", "from_name") or sender.split("@")[0] or "Unknown"

    message_type = raw.get("type") or "inbound-email"
    if message_type not in MESSAGE_TYPES:
        logger.debug("Unknown message type %r; treating as inbound-email", message_type)
        message_type = "inbound-email"

    metadata = raw.get("metadata")
    body = _first(raw, "body", "content")

    return Message(
        id=_first(raw, "id", "response_id") or _generated_message_id(now),
        conversation_id=_first(raw, "conversation_id") or conversation_id,
        response_id=_first(raw, "response_id") or None,
        sender_name=sender_name,
        sender_email=sender,
        sender=sender,
        recipient=recipient,
        receiver=recipient,
        body=body,
        content=_first(raw, "content", "body"),
        subject=_first(raw, "subject"),
        timestamp=timestamp,
        local_date=local_date,
        type=message_type,
        read=parse_boolean(raw.get("read")),
        ev_score=parse_score(raw.get("ev_score")),
        associated_account=_first(raw, "associated_account", "sender") or None,
        in_reply_to=_first(raw, "in_reply_to") or None,
        is_first_email=parse_boolean(raw.get("is_first_email")),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def get_ai_score(messages: Iterable[Message]) -> Optional[float]:
    """First EV score found on any message, or None."""
    for message in messages:
        if message.ev_score is not None:
            return message.ev_score
    return None


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------

def process_thread(item: Mapping[str, Any], now: Optional[datetime] = None) -> Optional[Conversation]:
    """
    Normalize one `{thread, messages}` item (or a bare thread row).

    Returns None for items that are not objects.
    """
    if not isinstance(item, Mapping):
        logger.warning("Invalid thread item: %r", item)
        return None

    raw_thread = item.get("thread", item)
    if not isinstance(raw_thread, Mapping):
        logger.warning("Invalid thread data: %r", raw_thread)
        return None

    now = now or utcnow()
    conversation_id = _first(raw_thread, "conversation_id", "id")

    raw_messages = item.get("messages") or []
    if not isinstance(raw_messages, list):
        logger.warning("Messages for %s are not a list; ignoring", conversation_id)
        raw_messages = []

    messages: List[Message] = [
        process_message(raw, conversation_id, now)
        for raw in raw_messages
        if isinstance(raw, Mapping)
    ]
    messages.sort(key=lambda m: m.local_date)

    # The newest message wins over whatever the thread row claims.
    if messages:
        last_message_at = messages[-1].timestamp
    else:
        last_message_at = _first(
            raw_thread,
            "lastMessageAt",
            "last_message_at",
            "last_updated",
            default=now.isoformat(),
        )

    thread = Thread(
        id=conversation_id,
        conversation_id=conversation_id,
        associated_account=_first(raw_thread, "associated_account"),
        created_at=_first(raw_thread, "createdAt", "created_at", default=now.isoformat()),
        updated_at=_first(raw_thread, "updatedAt", "updated_at", default=now.isoformat()),
        last_message_at=last_message_at,
        # The Threads table stores the contact name in source_name and the
        # contact email in source.
        lead_name=_first(
            raw_thread,
            "lead_name",
            "source_name",
            "name",
            "client_name",
            "sender_name",
            default="Unknown Lead",
        ),
        client_email=_first(
            raw_thread, "client_email", "source", "email", "sender_email", "lead_email"
        ),
        phone=_first(raw_thread, "phone", "phone_number", "contact_phone"),
        location=_first(raw_thread, "location", "address", "city", "area"),
        source_name=_first(raw_thread, "source_name", "source", "channel"),
        ai_summary=_first(raw_thread, "ai_summary", "summary"),
        lcp_enabled=parse_boolean(raw_thread.get("lcp_enabled")),
        lcp_flag_threshold=parse_score(raw_thread.get("lcp_flag_threshold")),
        flag=parse_boolean(raw_thread.get("flag")),
        flag_for_review=parse_boolean(raw_thread.get("flag_for_review")),
        flag_review_override=parse_boolean(raw_thread.get("flag_review_override")),
        spam=parse_boolean(raw_thread.get("spam")),
        busy=parse_boolean(raw_thread.get("busy")),
        read=parse_boolean(raw_thread.get("read")),
        completed=parse_boolean(raw_thread.get("completed")),
        budget_range=_first(raw_thread, "budget_range", "budget"),
        timeline=_first(raw_thread, "timeline", "timeframe"),
        preferred_property_types=_first(
            raw_thread, "preferred_property_types", "property_types"
        ),
        priority=_first(raw_thread, "priority", default="normal"),
        subject=_first(raw_thread, "subject"),
        notes=_first(raw_thread, "notes") or None,
        ai_score=get_ai_score(messages),
    )

    return Conversation(thread=thread, messages=messages)


def process_threads_response(
    response_data: Any,
    now: Optional[datetime] = None,
) -> List[Conversation]:
    """
    Turn the raw `get_all_threads` payload into Conversations, newest first.
    """
    if not isinstance(response_data, list):
        logger.warning("process_threads_response received non-list data: %r", type(response_data))
        return []

    now = now or utcnow()
    conversations = [
        conversation
        for conversation in (process_thread(item, now) for item in response_data)
        if conversation is not None
    ]

    conversations.sort(
        key=lambda c: safe_parse_date(c.thread.last_message_at, now),
        reverse=True,
    )
    logger.debug("Normalized %d conversations from %d items", len(conversations), len(response_data))
    return conversations


def conversation_to_dict(conversation: Conversation) -> Dict[str, Any]:
    """JSON-safe dict of a conversation (datetimes as ISO strings)."""
    return conversation.model_dump(mode="json")
