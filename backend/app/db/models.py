"""SQLAlchemy 2.0 ORM models for the QE Coach backend.

Defines the complete database schema: organizations, memberships,
subscriptions, credit wallets, the credit ledger, chat sessions and
chat messages.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

CREDITS_CURRENCY = "credits"


def utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def _values_enum(enum_cls: type[enum.Enum]) -> SAEnum:
    """Persist enum values ('admin') rather than member names ('ADMIN')."""
    return SAEnum(enum_cls, values_callable=lambda e: [m.value for m in e])


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ──────────────────────────────────────────
# ENUMS
# ──────────────────────────────────────────

class MemberRole(str, enum.Enum):
    ADMIN = "admin"
    MEMBER = "member"


class ChatMode(str, enum.Enum):
    COACH = "coach"
    REVIEW = "review"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# ──────────────────────────────────────────
# ORGANIZATIONS (Tenants)
# ──────────────────────────────────────────

class Organization(Base):
    """Top-level tenant. Created on a user's first authenticated visit."""
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    members: Mapped[list["OrgMember"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan", passive_deletes=True
    )
    subscriptions: Mapped[list["Subscription"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan", passive_deletes=True
    )
    wallets: Mapped[list["CreditWallet"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan", passive_deletes=True
    )


# ──────────────────────────────────────────
# MEMBERS (identity subject ↔ organization)
# ──────────────────────────────────────────

class OrgMember(Base):
    """Links an identity provider subject to an organization with a role."""
    __tablename__ = "org_members"
    # One organization per subject
    __table_args__ = (Index("ix_org_members_subject", "subject", unique=True),)

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[MemberRole] = mapped_column(
        _values_enum(MemberRole), default=MemberRole.MEMBER, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    organization: Mapped["Organization"] = relationship(back_populates="members")


# ──────────────────────────────────────────
# SUBSCRIPTIONS (plan metadata)
# ──────────────────────────────────────────

class Subscription(Base):
    """Plan metadata. One active row per org by convention, not enforced."""
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_org_status", "organization_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    plan_code: Mapped[str] = mapped_column(String(64), nullable=False)
    seats: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    current_period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    organization: Mapped["Organization"] = relationship(back_populates="subscriptions")


# ──────────────────────────────────────────
# CREDIT WALLETS + LEDGER
# ──────────────────────────────────────────

class CreditWallet(Base):
    """Per-(org, currency) integer balance. Mutated only by billing services."""
    __tablename__ = "credit_wallets"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "currency", name="uq_credit_wallet_org_currency"
        ),
        CheckConstraint("balance >= 0", name="ck_credit_wallet_balance_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(32), nullable=False, default=CREDITS_CURRENCY
    )
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    organization: Mapped["Organization"] = relationship(back_populates="wallets")


class CreditLedger(Base):
    """Append-only log of wallet balance deltas. Never updated or deleted."""
    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_wallet_created", "wallet_id", "created_at"),
        Index("ix_credit_ledger_request_id", "request_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("credit_wallets.id", ondelete="CASCADE"),
        nullable=False,
    )
    subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(128), nullable=False)
    request_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


# ──────────────────────────────────────────
# CHAT SESSIONS + MESSAGES
# ──────────────────────────────────────────

class ChatSession(Base):
    """A conversation container owned by one identity subject."""
    __tablename__ = "chat_sessions"
    __table_args__ = (
        Index("ix_chat_sessions_subject_created", "subject", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[ChatMode] = mapped_column(_values_enum(ChatMode), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    messages: Mapped[list["ChatMessage"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )


class ChatMessage(Base):
    """An ordered message within a chat session."""
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_session_created", "session_id", "created_at"),
        Index("ix_chat_messages_request_id", "request_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[MessageRole] = mapped_column(_values_enum(MessageRole), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_in: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tokens_out: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    session: Mapped["ChatSession"] = relationship(back_populates="messages")
