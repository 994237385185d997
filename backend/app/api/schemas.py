"""
Pydantic request/response models for the HTTP API.

JSON bodies use camelCase keys; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Chat ──────────────────────────────────────


class ChatRequest(CamelModel):
    """Incoming chat turn.

    Attributes:
        message: User text. Length is capped by settings.max_message_chars.
        mode: "review" selects structured scoring; anything else is coach.
        session_id: Continue an existing session; omit to start a new one.
    """

    message: str
    mode: Optional[str] = None
    session_id: Optional[str] = None


# ── History ───────────────────────────────────


class LastMessage(CamelModel):
    role: str
    content: str
    created_at: datetime


class SessionListItem(CamelModel):
    id: str
    title: Optional[str]
    mode: str
    created_at: datetime
    last_activity_at: datetime
    last_message: Optional[LastMessage]


class SessionListResponse(CamelModel):
    items: list[SessionListItem]
    next_cursor: Optional[str]


class HistoryMessage(CamelModel):
    id: str
    role: str
    content: str
    created_at: datetime


class MessageListResponse(CamelModel):
    items: list[HistoryMessage]
    next_cursor: Optional[str]


class RenameRequest(CamelModel):
    title: Optional[str] = None


class RenameResponse(CamelModel):
    ok: bool = True
    session_id: str
    title: str


# ── Admin billing ─────────────────────────────


class TopupRequest(CamelModel):
    """Admin credit top-up. amount is truncated to an integer."""

    amount: float = Field(allow_inf_nan=False)
    organization_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=500)


class TopupResponse(CamelModel):
    ok: bool = True
    organization_id: str
    amount: int
    balance: int
