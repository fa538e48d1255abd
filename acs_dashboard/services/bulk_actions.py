from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from starlette.concurrency import run_in_threadpool

from acs_dashboard.clients.backend import BackendClient, BackendError
from acs_dashboard.services.storage import ConversationStorage

logger = logging.getLogger("acs.dashboard.services.bulk_actions")

STATUS_UPDATES: Dict[str, Dict[str, Any]] = {
    "active": {
        "completed": False,
        "flag": False,
        "flag_for_review": False,
        "spam": False,
        "busy": False,
    },
    "pending": {"busy": True, "completed": False},
    "completed": {"completed": True},
    "flagged": {"flag": True, "flag_for_review": True},
    "spam": {"spam": True},
}


class UnknownStatusError(ValueError):
    """Raised when a bulk status update names a status we cannot map."""


@dataclass
class BulkActionResult:
    action: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def ok(self) -> bool:
        return self.attempted > 0 and not self.failed


def _unique(ids: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(i for i in ids if i))


class BulkConversationActions:
    """
    Actions over several selected conversations at once.

    The cache is patched first; the backend calls then run concurrently and
    partial failures are reported, not rolled back.
    """

    def __init__(
        self,
        client: BackendClient,
        storage: ConversationStorage,
        session_id: Optional[str] = None,
    ) -> None:
        self.client = client
        self.storage = storage
        self.session_id = session_id

    async def _fan_out(
        self,
        action: str,
        ids: List[str],
        call: Callable[[str], Awaitable[Any]],
    ) -> BulkActionResult:
        result = BulkActionResult(action=action)
        outcomes = await asyncio.gather(*(call(i) for i in ids), return_exceptions=True)

        for conversation_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                detail = outcome.detail if isinstance(outcome, BackendError) else str(outcome)
                result.failed[conversation_id] = detail
            else:
                result.succeeded.append(conversation_id)

        if result.failed:
            logger.error(
                "Bulk %s: %d of %d requests failed: %s",
                action,
                len(result.failed),
                len(ids),
                result.failed,
            )
        else:
            logger.info("Bulk %s succeeded for %d conversations", action, len(ids))
        return result

    async def _update_threads(
        self,
        action: str,
        ids: List[str],
        update_data: Dict[str, Any],
    ) -> BulkActionResult:
        await run_in_threadpool(
            self.storage.update_conversations,
            [(i, {"thread": update_data}) for i in ids],
        )
        return await self._fan_out(
            action,
            ids,
            lambda i: self.client.update_thread(i, update_data, session_id=self.session_id),
        )

    async def delete(self, conversation_ids: Sequence[str]) -> BulkActionResult:
        ids = _unique(conversation_ids)
        if not ids:
            return BulkActionResult(action="delete")

        for conversation_id in ids:
            await run_in_threadpool(self.storage.remove_conversation, conversation_id)

        return await self._fan_out(
            "delete",
            ids,
            lambda i: self.client.delete_thread(i, session_id=self.session_id),
        )

    async def mark_complete(self, conversation_ids: Sequence[str]) -> BulkActionResult:
        ids = _unique(conversation_ids)
        if not ids:
            return BulkActionResult(action="complete")
        return await self._update_threads("complete", ids, STATUS_UPDATES["completed"])

    async def add_note(self, conversation_ids: Sequence[str], note: str) -> BulkActionResult:
        ids = _unique(conversation_ids)
        if not ids or not (note or "").strip():
            return BulkActionResult(action="note")
        return await self._update_threads("note", ids, {"notes": note})

    async def update_status(self, conversation_ids: Sequence[str], status: str) -> BulkActionResult:
        update_data = STATUS_UPDATES.get(status)
        if update_data is None:
            raise UnknownStatusError(f"Unknown status: {status}")

        ids = _unique(conversation_ids)
        if not ids:
            return BulkActionResult(action=f"status:{status}")
        return await self._update_threads(f"status:{status}", ids, update_data)
