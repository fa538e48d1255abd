"""
Request bodies of the proxy routes.

Fields are optional on purpose: missing parameters are reported by the
route itself with a 400 and a route-specific message.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ThreadsRequest(_Body):
    user_id: Optional[str] = Field(default=None, alias="userId")


class ConversationRequest(_Body):
    conversation_id: Optional[str] = None


class SendEmailRequest(_Body):
    conversation_id: Optional[str] = None
    response_body: Optional[str] = None


class MarkNotSpamRequest(_Body):
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    account_id: Optional[str] = None


class LLMResponseRequest(_Body):
    conversation_id: Optional[str] = None
    account_id: Optional[str] = None
    is_first_email: bool = False


class ThreadAttrsRequest(_Body):
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class DbSelectRequest(_Body):
    table_name: Optional[str] = None
    index_name: Optional[str] = None
    key_name: Optional[str] = None
    key_value: Any = None


class DbUpdateRequest(_Body):
    table_name: Optional[str] = None
    index_name: Optional[str] = None
    key_name: Optional[str] = None
    key_value: Any = None
    update_data: Optional[Dict[str, Any]] = None


class DbDeleteRequest(_Body):
    table_name: Optional[str] = None
    attribute_name: Optional[str] = None
    attribute_value: Any = None
    is_primary_key: Optional[bool] = None


class LoginRequest(_Body):
    email: Optional[str] = None
    password: Optional[str] = None
    provider: str = "form"
    name: Optional[str] = None


class BulkActionRequest(_Body):
    conversation_ids: List[str] = Field(default_factory=list)
    note: Optional[str] = None
    status: Optional[str] = None
