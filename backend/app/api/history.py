"""Chat history routes, scoped to the calling subject.

GET    /api/chat/history                  — Sessions, newest first
GET    /api/chat/history/{session_id}     — Messages of one session
PATCH  /api/chat/history/{session_id}/title — Rename a session
DELETE /api/chat/history/{session_id}     — Delete a session and its messages

Pagination uses keyset cursors on (created_at, id): the cursor is the id of
the last row of the previous page, so rows inserted meanwhile never shift
a page.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.api.deps import require_user
from app.api.schemas import (
    HistoryMessage,
    LastMessage,
    MessageListResponse,
    RenameRequest,
    RenameResponse,
    SessionListItem,
    SessionListResponse,
)
from app.db.engine import get_db
from app.db.models import ChatMessage, ChatSession

logger = logging.getLogger(__name__)

router = APIRouter()

SESSIONS_DEFAULT_LIMIT = 20
SESSIONS_MAX_LIMIT = 50
MESSAGES_DEFAULT_LIMIT = 120
MESSAGES_MAX_LIMIT = 200
TITLE_MAX_CHARS = 80


def _clamp(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None or limit <= 0:
        return default
    return min(limit, maximum)


def _parse_uuid(raw: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def _older_than(model, anchor):
    """Rows strictly after ``anchor`` in (created_at DESC, id DESC) order."""
    return or_(
        model.created_at < anchor.created_at,
        and_(model.created_at == anchor.created_at, model.id < anchor.id),
    )


async def _get_session_or_404(
    db: AsyncSession, session_id: str
) -> ChatSession:
    parsed = _parse_uuid(session_id)
    chat_session = await db.get(ChatSession, parsed) if parsed else None
    if chat_session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return chat_session


@router.get("/chat/history", response_model=SessionListResponse)
async def list_sessions(
    request: Request,
    cursor: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's sessions with their latest message."""
    subject = require_user(request)
    take = _clamp(limit, SESSIONS_DEFAULT_LIMIT, SESSIONS_MAX_LIMIT)

    stmt = select(ChatSession).where(ChatSession.subject == subject)
    if cursor:
        cursor_id = _parse_uuid(cursor)
        anchor = None
        if cursor_id is not None:
            result = await db.execute(
                select(ChatSession).where(
                    ChatSession.id == cursor_id, ChatSession.subject == subject
                )
            )
            anchor = result.scalar_one_or_none()
        if anchor is None:
            raise HTTPException(status_code=400, detail="Invalid cursor")
        stmt = stmt.where(_older_than(ChatSession, anchor))

    result = await db.execute(
        stmt.order_by(ChatSession.created_at.desc(), ChatSession.id.desc()).limit(take + 1)
    )
    # One extra row tells whether another page exists.
    sessions = list(result.scalars().all())
    has_more = len(sessions) > take
    sessions = sessions[:take]

    latest: dict[uuid.UUID, ChatMessage] = {}
    if sessions:
        ranked = (
            select(
                ChatMessage,
                func.row_number()
                .over(
                    partition_by=ChatMessage.session_id,
                    order_by=(ChatMessage.created_at.desc(), ChatMessage.id.desc()),
                )
                .label("rn"),
            )
            .where(ChatMessage.session_id.in_([s.id for s in sessions]))
            .subquery()
        )
        latest_message = aliased(ChatMessage, ranked)
        rows = await db.execute(select(latest_message).where(ranked.c.rn == 1))
        latest = {m.session_id: m for m in rows.scalars().all()}

    items = []
    for s in sessions:
        last = latest.get(s.id)
        items.append(
            SessionListItem(
                id=str(s.id),
                title=s.title,
                mode=s.mode.value,
                created_at=s.created_at,
                last_activity_at=last.created_at if last else s.created_at,
                last_message=(
                    LastMessage(
                        role=last.role.value,
                        content=last.content,
                        created_at=last.created_at,
                    )
                    if last
                    else None
                ),
            )
        )

    next_cursor = str(sessions[-1].id) if has_more else None
    return SessionListResponse(items=items, next_cursor=next_cursor)


@router.get("/chat/history/{session_id}", response_model=MessageListResponse)
async def list_messages(
    session_id: str,
    request: Request,
    cursor: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Page through a session's messages.

    Pages are taken newest first and returned in chronological order;
    nextCursor is the oldest message of the page.
    """
    subject = require_user(request)
    chat_session = await _get_session_or_404(db, session_id)
    if chat_session.subject != subject:
        raise HTTPException(status_code=404, detail="Session not found")

    take = _clamp(limit, MESSAGES_DEFAULT_LIMIT, MESSAGES_MAX_LIMIT)
    stmt = select(ChatMessage).where(ChatMessage.session_id == chat_session.id)
    if cursor:
        cursor_id = _parse_uuid(cursor)
        anchor = None
        if cursor_id is not None:
            result = await db.execute(
                select(ChatMessage).where(
                    ChatMessage.id == cursor_id,
                    ChatMessage.session_id == chat_session.id,
                )
            )
            anchor = result.scalar_one_or_none()
        if anchor is None:
            raise HTTPException(status_code=400, detail="Invalid cursor")
        stmt = stmt.where(_older_than(ChatMessage, anchor))

    result = await db.execute(
        stmt.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(take + 1)
    )
    page = list(result.scalars().all())
    has_more = len(page) > take
    page = page[:take]
    next_cursor = str(page[-1].id) if has_more else None
    page.reverse()

    return MessageListResponse(
        items=[
            HistoryMessage(
                id=str(m.id), role=m.role.value, content=m.content, created_at=m.created_at
            )
            for m in page
        ],
        next_cursor=next_cursor,
    )


@router.patch("/chat/history/{session_id}/title", response_model=RenameResponse)
async def rename_session(
    session_id: str,
    body: RenameRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    subject = require_user(request)
    title = (body.title or "").strip()
    if not title or len(title) > TITLE_MAX_CHARS:
        raise HTTPException(
            status_code=400, detail=f"Title must be 1-{TITLE_MAX_CHARS} characters"
        )

    chat_session = await _get_session_or_404(db, session_id)
    if chat_session.subject != subject:
        raise HTTPException(status_code=403, detail="Forbidden")

    chat_session.title = title
    await db.flush()
    logger.info(
        "Session renamed",
        extra={"event": "session_renamed", "user_id": subject, "session_id": session_id},
    )
    return RenameResponse(session_id=str(chat_session.id), title=title)


@router.delete("/chat/history/{session_id}")
async def delete_session(
    session_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    subject = require_user(request)
    chat_session = await _get_session_or_404(db, session_id)
    if chat_session.subject != subject:
        raise HTTPException(status_code=403, detail="Forbidden")

    await db.delete(chat_session)
    await db.flush()
    logger.info(
        "Session deleted",
        extra={"event": "session_deleted", "user_id": subject, "session_id": session_id},
    )
    return {"ok": True, "sessionId": session_id}
