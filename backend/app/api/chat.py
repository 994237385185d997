"""Chat route: one coach or review turn against the completion model.

POST /api/chat

Flow:
1. Auth and the sliding-window rate limit run in middleware
2. Validate the message; review mode needs the admin role
3. Ensure the caller's organization and check session ownership (404)
4. Charge credits (402 when short), then persist the user message;
   a failed write refunds the charge
5. Call the model; refund the charge if the call fails
6. Persist the assistant reply; review output is parsed and validated
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import request_id as get_request_id
from app.api.deps import require_user
from app.api.schemas import ChatRequest
from app.config import get_settings
from app.core.llm import LLMClient, get_llm_client
from app.core.prompts import build_messages
from app.core.review import parse_review
from app.db.engine import get_db
from app.db.models import ChatMessage, ChatMode, ChatSession, MessageRole
from app.exceptions import ConfigurationError, InsufficientCreditsError, LLMError
from app.services.billing import charge_credits, ensure_org_for_user, refund_charge

logger = logging.getLogger(__name__)

router = APIRouter()


def normalize_mode(raw: Optional[str]) -> ChatMode:
    return ChatMode.REVIEW if raw == ChatMode.REVIEW.value else ChatMode.COACH


def parse_session_id(raw: Optional[str]) -> Optional[uuid.UUID]:
    """Parse a client-supplied session id; malformed ids match nothing."""
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


async def _load_owned_session(
    db: AsyncSession, session_id: Optional[uuid.UUID], subject: str
) -> Optional[ChatSession]:
    if session_id is None:
        return None
    result = await db.execute(
        select(ChatSession).where(
            ChatSession.id == session_id, ChatSession.subject == subject
        )
    )
    return result.scalar_one_or_none()


async def _recent_history(
    db: AsyncSession, session_id: uuid.UUID, limit: int
) -> list[dict[str, str]]:
    """Last ``limit`` user/assistant turns of a session, oldest first."""
    if limit <= 0:
        return []
    result = await db.execute(
        select(ChatMessage)
        .where(
            ChatMessage.session_id == session_id,
            ChatMessage.role.in_([MessageRole.USER, MessageRole.ASSISTANT]),
        )
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(limit)
    )
    rows = list(result.scalars().all())
    rows.reverse()
    return [{"role": m.role.value, "content": m.content} for m in rows]


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message, **extra}, status_code=status_code)


@router.post("/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
):
    settings = get_settings()
    subject = require_user(request)
    rid = get_request_id(request)
    mode = normalize_mode(body.mode)
    request.state.chat_mode = mode.value
    logger.info(
        "Chat request",
        extra={"event": "chat_request", "user_id": subject, "mode": mode.value},
    )

    message = body.message
    if not message.strip():
        return _error(400, "Message is required")
    if len(message) > settings.max_message_chars:
        return _error(
            400, f"Message too long (max {settings.max_message_chars} characters)"
        )

    if (
        mode is ChatMode.REVIEW
        and settings.review_requires_admin
        and not getattr(request.state, "is_admin", False)
    ):
        logger.info(
            "Review mode denied",
            extra={"event": "forbidden_review_access", "user_id": subject},
        )
        return _error(403, "Review mode requires admin role")

    if not llm.is_configured:
        logger.error("Completion client is not configured", extra={"event": "chat_error"})
        return _error(500, "Server misconfigured: OPENAI_API_KEY is not set")

    await ensure_org_for_user(
        db,
        subject=subject,
        name=getattr(request.state, "name", None),
        email=getattr(request.state, "email", None),
    )

    # Ownership is checked before charging so a bad sessionId costs nothing.
    requested_session_id = parse_session_id(body.session_id)
    chat_session = await _load_owned_session(db, requested_session_id, subject)
    if body.session_id and chat_session is None:
        await db.rollback()
        raise HTTPException(status_code=404, detail="Session not found")
    await db.commit()

    credits = settings.credits_for_mode(mode.value)
    try:
        balance = await charge_credits(
            db, subject=subject, credits=credits, request_id=rid
        )
    except InsufficientCreditsError as e:
        logger.info(
            "Insufficient credits",
            extra={
                "event": "insufficient_credits",
                "user_id": subject,
                "balance": e.balance,
                "required": e.required,
            },
        )
        return _error(402, "Insufficient credits", balance=e.balance, required=e.required)

    try:
        if chat_session is None:
            chat_session = ChatSession(id=uuid.uuid4(), subject=subject, mode=mode)
            db.add(chat_session)
            await db.flush()
            history: list[dict[str, str]] = []
        elif mode is ChatMode.COACH:
            history = await _recent_history(
                db, chat_session.id, settings.coach_history_messages
            )
        else:
            history = []

        db.add(
            ChatMessage(
                id=uuid.uuid4(),
                session_id=chat_session.id,
                subject=subject,
                role=MessageRole.USER,
                content=message,
                request_id=rid,
            )
        )
        session_id = chat_session.id
        await db.commit()
    except Exception:
        # The charge is already committed; give it back before failing.
        await db.rollback()
        logger.exception(
            "Persisting chat turn failed",
            extra={"event": "chat_error", "user_id": subject},
        )
        if balance is not None:
            await refund_charge(
                db, subject=subject, credits=credits, request_id=rid
            )
        return _error(500, "Server error", requestId=rid)

    max_tokens = (
        settings.review_max_tokens if mode is ChatMode.REVIEW else settings.coach_max_tokens
    )
    try:
        completion = await llm.complete(
            build_messages(mode.value, message, history), max_tokens=max_tokens
        )
    except (LLMError, ConfigurationError) as e:
        logger.error(
            "Completion failed: %s",
            e,
            extra={"event": "chat_error", "user_id": subject},
        )
        if balance is not None:
            await refund_charge(
                db, subject=subject, credits=credits, request_id=rid
            )
        return _error(500, "Server error", requestId=rid)

    db.add(
        ChatMessage(
            id=uuid.uuid4(),
            session_id=session_id,
            subject=subject,
            role=MessageRole.ASSISTANT,
            content=completion.text,
            tokens_in=completion.input_tokens,
            tokens_out=completion.output_tokens,
            request_id=rid,
        )
    )
    await db.commit()

    logger.info(
        "Chat turn completed",
        extra={
            "event": "chat_completed",
            "user_id": subject,
            "mode": mode.value,
            "model": completion.model_used,
            "latency_ms": completion.latency_ms,
            "tokens_in": completion.input_tokens,
            "tokens_out": completion.output_tokens,
        },
    )

    rate = getattr(request.state, "rate_limit", None)
    meta = {
        "sessionId": str(session_id),
        "balance": balance,
        "rate": rate.as_meta() if rate is not None else None,
    }

    if mode is ChatMode.COACH:
        return {"ok": True, "mode": mode.value, "reply": completion.text, **meta}

    outcome = parse_review(completion.text)
    if outcome.review is None:
        logger.warning(
            "Review output rejected: %s",
            outcome.error,
            extra={"event": "review_parse_failed", "user_id": subject},
        )
        return {
            "ok": False,
            "mode": mode.value,
            "error": outcome.error,
            "raw": completion.text,
            **meta,
        }
    return {
        "ok": True,
        "mode": mode.value,
        "review": outcome.review.model_dump(by_alias=True),
        **meta,
    }
