"""
Per-client conversation cache.

Plays the part browser localStorage played for the dashboard: a client's
storage area holds the serialized conversation list plus metadata under
fixed keys. Optimistic UI actions patch the cached copy before the backend
confirms them.

Every operation logs and degrades (None/False) instead of raising.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from acs_dashboard.models.storage_entry import StorageEntry
from acs_dashboard.schemas.conversation import Conversation, StorageMetadata, StorageStats
from acs_dashboard.services.normalize import safe_parse_date, utcnow

logger = logging.getLogger("acs.dashboard.services.storage")

STORAGE_KEY = "acs_conversations"
METADATA_KEY = "acs_conversations_metadata"
STORAGE_VERSION = "1.0.0"
DEFAULT_MAX_AGE_MINUTES = 30

ConversationPatch = Mapping[str, Any]

# Errors a broken store or corrupted payload can raise.
_STORAGE_ERRORS = (
    SQLAlchemyError,
    AttributeError,
    KeyError,
    OSError,
    TypeError,
    ValidationError,
    ValueError,
)


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Dict-backed store for tests and throwaway clients."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._items)


class SqlKeyValueStore:
    """
    Store backed by the `storage_entries` table.

    `scope` isolates one client's keys from every other client's, the way
    each browser profile has its own localStorage.
    """

    def __init__(self, session_factory: sessionmaker, scope: str) -> None:
        self._session_factory = session_factory
        self.scope = scope

    def _find(self, db: Session, key: str) -> Optional[StorageEntry]:
        return (
            db.query(StorageEntry)
            .filter(StorageEntry.scope == self.scope, StorageEntry.key == key)
            .one_or_none()
        )

    def get_item(self, key: str) -> Optional[str]:
        with self._session_factory() as db:
            entry = self._find(db, key)
            return entry.value if entry else None

    def set_item(self, key: str, value: str) -> None:
        with self._session_factory() as db:
            entry = self._find(db, key)
            if entry is None:
                db.add(StorageEntry(scope=self.scope, key=key, value=value))
            else:
                entry.value = value
            db.commit()

    def remove_item(self, key: str) -> None:
        with self._session_factory() as db:
            (
                db.query(StorageEntry)
                .filter(StorageEntry.scope == self.scope, StorageEntry.key == key)
                .delete(synchronize_session=False)
            )
            db.commit()


def _merge_patch(conversation: Conversation, patch: ConversationPatch) -> Conversation:
    """
    Shallow-merge `patch` into a conversation.

    A `thread` mapping merges field by field into the thread; `messages`
    replaces the list; any other key is treated as a thread field.
    """
    data = conversation.model_dump()
    for key, value in patch.items():
        if key == "thread" and isinstance(value, Mapping):
            data["thread"].update(value)
        elif key == "messages":
            data["messages"] = value
        else:
            data["thread"][key] = value
    # Identity is not patchable.
    data["thread"]["conversation_id"] = conversation.thread.conversation_id
    return Conversation.model_validate(data)


class ConversationStorage:
    """
    Cache of one user's conversations inside one client's store.

    The user id is checked on every read: data written for another user is
    evicted, which is what clears the cache on a user switch.
    """

    def __init__(
        self,
        store: KeyValueStore,
        user_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self.current_user_id: Optional[str] = user_id

    def initialize(self, user_id: str) -> None:
        """Scope the cache to a user."""
        self.current_user_id = user_id

    # -- raw payload -------------------------------------------------------

    def _read_payload(self) -> Optional[Dict[str, Any]]:
        stored = self._store.get_item(STORAGE_KEY)
        if not stored:
            return None
        payload = json.loads(stored)
        if not isinstance(payload, dict) or "metadata" not in payload:
            raise ValueError("Stored conversation payload has no metadata")
        return payload

    @staticmethod
    def _restore_dates(raw_conversations: Iterable[Any], now: datetime) -> List[Conversation]:
        # JSON loses datetimes; missing local dates become "now".
        restored: List[Conversation] = []
        for raw in raw_conversations:
            messages = []
            for message in raw.get("messages") or []:
                messages.append(
                    {**message, "local_date": safe_parse_date(message.get("local_date"), now)}
                )
            restored.append(Conversation.model_validate({**raw, "messages": messages}))
        return restored

    # -- public API --------------------------------------------------------

    def store_conversations(self, conversations: List[Conversation]) -> None:
        """Serialize the list plus metadata into the store."""
        if not self.current_user_id:
            logger.warning("No user ID set, cannot store conversations")
            return

        try:
            metadata = StorageMetadata(
                version=STORAGE_VERSION,
                last_updated=self._clock().isoformat(),
                user_id=self.current_user_id,
                conversation_count=len(conversations),
            )
            payload = {
                "conversations": [c.model_dump(mode="json") for c in conversations],
                "metadata": metadata.model_dump(mode="json"),
            }
            self._store.set_item(STORAGE_KEY, json.dumps(payload))
            logger.info(
                "Stored %d conversations for user %s",
                len(conversations),
                self.current_user_id,
            )
        except _STORAGE_ERRORS:
            logger.exception("Error storing conversations")

    def get_conversations(self) -> Optional[List[Conversation]]:
        """Cached conversations for the current user, or None."""
        if not self.current_user_id:
            logger.warning("No user ID set, cannot retrieve conversations")
            return None

        try:
            payload = self._read_payload()
            if payload is None:
                return None

            metadata = StorageMetadata.model_validate(payload["metadata"])
            if metadata.user_id != self.current_user_id:
                logger.warning("Stored data belongs to a different user, clearing")
                self.clear()
                return None

            conversations = self._restore_dates(payload.get("conversations") or [], self._clock())
            logger.debug(
                "Retrieved %d conversations for user %s",
                len(conversations),
                self.current_user_id,
            )
            return conversations
        except _STORAGE_ERRORS:
            logger.exception("Error retrieving conversations")
            return None

    def get_metadata(self) -> Optional[StorageMetadata]:
        try:
            payload = self._read_payload()
            if payload is None:
                return None
            return StorageMetadata.model_validate(payload["metadata"])
        except _STORAGE_ERRORS:
            logger.exception("Error retrieving metadata")
            return None

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversations = self.get_conversations()
        if not conversations:
            return None
        for conversation in conversations:
            if conversation.thread.conversation_id == conversation_id:
                return conversation
        return None

    def update_conversation(self, conversation_id: str, updates: ConversationPatch) -> bool:
        """Optimistically patch one cached conversation."""
        try:
            conversations = self.get_conversations()
            if not conversations:
                return False

            for index, conversation in enumerate(conversations):
                if conversation.thread.conversation_id == conversation_id:
                    conversations[index] = _merge_patch(conversation, updates)
                    break
            else:
                return False

            self.store_conversations(conversations)
            logger.info("Optimistically updated conversation %s", conversation_id)
            return True
        except _STORAGE_ERRORS:
            logger.exception("Error updating conversation %s", conversation_id)
            return False

    def update_conversations(self, updates: Iterable[Tuple[str, ConversationPatch]]) -> bool:
        """Patch several conversations and write once; True if any matched."""
        try:
            conversations = self.get_conversations()
            if not conversations:
                return False

            index_by_id = {c.thread.conversation_id: i for i, c in enumerate(conversations)}
            changed = 0
            for conversation_id, patch in updates:
                index = index_by_id.get(conversation_id)
                if index is None:
                    continue
                conversations[index] = _merge_patch(conversations[index], patch)
                changed += 1

            if changed:
                self.store_conversations(conversations)
                logger.info("Optimistically updated %d conversations", changed)
            return changed > 0
        except _STORAGE_ERRORS:
            logger.exception("Error updating conversations")
            return False

    def add_conversation(self, conversation: Conversation) -> bool:
        try:
            conversations = self.get_conversations() or []
            conversation_id = conversation.thread.conversation_id
            if any(c.thread.conversation_id == conversation_id for c in conversations):
                logger.warning("Conversation %s already exists", conversation_id)
                return False

            conversations.append(conversation)
            self.store_conversations(conversations)
            logger.info("Added new conversation %s", conversation_id)
            return True
        except _STORAGE_ERRORS:
            logger.exception("Error adding conversation")
            return False

    def remove_conversation(self, conversation_id: str) -> bool:
        try:
            conversations = self.get_conversations()
            if not conversations:
                return False

            remaining = [c for c in conversations if c.thread.conversation_id != conversation_id]
            if len(remaining) == len(conversations):
                logger.warning("Conversation %s not found for removal", conversation_id)
                return False

            self.store_conversations(remaining)
            logger.info("Removed conversation %s", conversation_id)
            return True
        except _STORAGE_ERRORS:
            logger.exception("Error removing conversation %s", conversation_id)
            return False

    def has_data(self) -> bool:
        if not self.current_user_id:
            return False
        metadata = self.get_metadata()
        return metadata is not None and metadata.user_id == self.current_user_id

    def is_stale(self, max_age_minutes: float = DEFAULT_MAX_AGE_MINUTES) -> bool:
        """True when nothing is cached or the cache is older than the window."""
        metadata = self.get_metadata()
        if metadata is None:
            return True
        try:
            last_updated = safe_parse_date(metadata.last_updated)
        except _STORAGE_ERRORS:
            return True
        return self._clock() - last_updated > timedelta(minutes=max_age_minutes)

    def clear(self) -> None:
        try:
            self._store.remove_item(STORAGE_KEY)
            self._store.remove_item(METADATA_KEY)
            logger.info("Cleared all stored conversation data")
        except _STORAGE_ERRORS:
            logger.exception("Error clearing conversation data")

    def get_stats(self, max_age_minutes: float = DEFAULT_MAX_AGE_MINUTES) -> StorageStats:
        metadata = self.get_metadata()
        return StorageStats(
            has_data=self.has_data(),
            is_stale=self.is_stale(max_age_minutes),
            conversation_count=metadata.conversation_count if metadata else 0,
            last_updated=metadata.last_updated if metadata else None,
        )
