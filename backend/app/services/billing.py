"""Credit wallet + ledger services.

Every balance mutation runs inside one database transaction that also
appends exactly one CreditLedger row, so the ledger always reconciles to
the wallet balance. Each function owns its transaction: pass a session
with no transaction in progress.

Usage:
    ctx = await ensure_org_for_user(db, subject=sub, name=name)
    remaining = await charge_credits(db, subject=sub, credits=1, request_id=rid)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.db.models import (
    CREDITS_CURRENCY,
    CreditLedger,
    CreditWallet,
    MemberRole,
    OrgMember,
    Organization,
    Subscription,
    utcnow,
)
from app.exceptions import (
    InsufficientCreditsError,
    NoOrganizationError,
    OrganizationNotFoundError,
    WalletNotFoundError,
)

logger = logging.getLogger(__name__)

REASON_CHAT_USAGE = "chat_usage"
REASON_CHAT_REFUND = "chat_refund"
REASON_SIGNUP_GRANT = "signup_grant"
REASON_ADMIN_ADJUST = "admin_adjust"


@dataclass
class OrgContext:
    """Organization, membership role and wallet state for one subject."""

    organization_id: uuid.UUID
    role: MemberRole
    wallet_id: uuid.UUID
    balance: int


async def find_membership(db: AsyncSession, subject: str) -> Optional[OrgMember]:
    # MVP: one membership per subject; the oldest wins if there are several.
    result = await db.execute(
        select(OrgMember)
        .where(OrgMember.subject == subject)
        .order_by(OrgMember.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_wallet(
    db: AsyncSession, organization_id: uuid.UUID
) -> Optional[CreditWallet]:
    result = await db.execute(
        select(CreditWallet).where(
            CreditWallet.organization_id == organization_id,
            CreditWallet.currency == CREDITS_CURRENCY,
        )
        # Balances move under other sessions; never trust the identity map here.
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_or_create_wallet(
    db: AsyncSession, organization_id: uuid.UUID
) -> CreditWallet:
    wallet = await find_wallet(db, organization_id)
    if wallet is None:
        wallet = CreditWallet(
            id=uuid.uuid4(),
            organization_id=organization_id,
            currency=CREDITS_CURRENCY,
            balance=0,
        )
        db.add(wallet)
        await db.flush()
    return wallet


async def _apply_delta(
    db: AsyncSession,
    wallet: CreditWallet,
    *,
    delta: int,
    subject: Optional[str],
    reason: str,
    request_id: Optional[str],
) -> int:
    """Apply a balance delta with a guarded UPDATE and append its ledger row."""
    stmt = (
        update(CreditWallet)
        .where(CreditWallet.id == wallet.id)
        .values(balance=CreditWallet.balance + delta, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(CreditWallet.balance >= -delta)
    result = await db.execute(stmt)
    if result.rowcount != 1:
        # A concurrent charge drained the wallet between read and write.
        raise InsufficientCreditsError(balance=wallet.balance, required=-delta)

    db.add(
        CreditLedger(
            id=uuid.uuid4(),
            wallet_id=wallet.id,
            subject=subject,
            delta=delta,
            reason=reason,
            request_id=request_id,
        )
    )
    await db.flush()
    await db.refresh(wallet, attribute_names=["balance"])
    return wallet.balance


async def _member_context(db: AsyncSession, member: OrgMember) -> OrgContext:
    wallet = await _get_or_create_wallet(db, member.organization_id)
    return OrgContext(
        organization_id=member.organization_id,
        role=member.role,
        wallet_id=wallet.id,
        balance=wallet.balance,
    )


async def ensure_org_for_user(
    db: AsyncSession,
    *,
    subject: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
) -> OrgContext:
    """Return the subject's org context, bootstrapping a new org on first visit.

    A first-time subject gets an organization, an admin membership, an
    empty wallet, an active subscription and (if configured) a signup
    credit grant, all in one transaction. ``org_members.subject`` is
    unique, so when two first visits race the loser's transaction fails
    and it returns the winner's organization instead.
    """
    try:
        async with db.begin():
            member = await find_membership(db, subject)
            if member is not None:
                return await _member_context(db, member)
            return await _bootstrap_org(db, subject=subject, name=name, email=email)
    except IntegrityError:
        await db.rollback()
        async with db.begin():
            member = await find_membership(db, subject)
            if member is None:
                raise
            logger.info(
                "Organization bootstrap lost a race; using existing membership",
                extra={"event": "org_bootstrap_conflict", "user_id": subject},
            )
            return await _member_context(db, member)


async def _bootstrap_org(
    db: AsyncSession, *, subject: str, name: Optional[str], email: Optional[str]
) -> OrgContext:
    settings = get_settings()
    now = utcnow()
    org = Organization(
        id=uuid.uuid4(),
        name=f"{name}'s Office" if name else "New Office",
    )
    db.add(org)
    await db.flush()

    db.add(
        OrgMember(
            id=uuid.uuid4(),
            organization_id=org.id,
            subject=subject,
            role=MemberRole.ADMIN,
        )
    )
    db.add(
        Subscription(
            id=uuid.uuid4(),
            organization_id=org.id,
            status="active",
            plan_code=settings.default_plan_code,
            seats=settings.default_plan_seats,
            monthly_credits=settings.default_plan_monthly_credits,
            current_period_start=now,
            current_period_end=now + timedelta(days=settings.default_plan_period_days),
        )
    )
    wallet = await _get_or_create_wallet(db, org.id)

    balance = wallet.balance
    if settings.initial_credit_grant > 0:
        balance = await _apply_delta(
            db,
            wallet,
            delta=settings.initial_credit_grant,
            subject=subject,
            reason=REASON_SIGNUP_GRANT,
            request_id=None,
        )

    logger.info(
        "Bootstrapped organization %s",
        org.id,
        extra={"event": "org_bootstrapped", "user_id": subject, "email": email},
    )
    return OrgContext(
        organization_id=org.id,
        role=MemberRole.ADMIN,
        wallet_id=wallet.id,
        balance=balance,
    )


async def charge_credits(
    db: AsyncSession,
    *,
    subject: str,
    credits: int,
    request_id: Optional[str],
) -> Optional[int]:
    """Transactionally decrement the subject's wallet and append a ledger row.

    Returns the remaining balance, or None when ``credits`` is not positive.

    Raises:
        NoOrganizationError: The subject has no membership.
        WalletNotFoundError: The organization has no credits wallet.
        InsufficientCreditsError: balance < credits. Nothing is written.
    """
    if credits <= 0:
        return None

    async with db.begin():
        member = await find_membership(db, subject)
        if member is None:
            raise NoOrganizationError(f"Subject {subject} has no organization")

        wallet = await find_wallet(db, member.organization_id)
        if wallet is None:
            raise WalletNotFoundError(
                f"Organization {member.organization_id} has no wallet"
            )

        if wallet.balance < credits:
            raise InsufficientCreditsError(balance=wallet.balance, required=credits)

        return await _apply_delta(
            db,
            wallet,
            delta=-credits,
            subject=subject,
            reason=REASON_CHAT_USAGE,
            request_id=request_id,
        )


async def credit_wallet(
    db: AsyncSession,
    *,
    organization_id: uuid.UUID,
    amount: int,
    subject: Optional[str],
    reason: str,
    request_id: Optional[str],
) -> tuple[uuid.UUID, int]:
    """Increase an organization's balance by ``amount`` and log it.

    Creates the wallet if missing. Used for admin top-ups and refunds.

    Returns:
        Tuple of (wallet_id, new_balance).
    """
    if amount <= 0:
        raise ValueError("amount must be positive")

    async with db.begin():
        org = await db.get(Organization, organization_id)
        if org is None:
            raise OrganizationNotFoundError(f"Organization {organization_id} not found")

        wallet = await _get_or_create_wallet(db, organization_id)
        balance = await _apply_delta(
            db,
            wallet,
            delta=amount,
            subject=subject,
            reason=reason,
            request_id=request_id,
        )
        return wallet.id, balance


async def refund_charge(
    db: AsyncSession,
    *,
    subject: str,
    credits: int,
    request_id: Optional[str],
) -> Optional[int]:
    """Return credits charged for a request whose model call failed."""
    if credits <= 0:
        return None
    async with db.begin():
        member = await find_membership(db, subject)
        if member is None:
            raise NoOrganizationError(f"Subject {subject} has no organization")
        organization_id = member.organization_id

    _, balance = await credit_wallet(
        db,
        organization_id=organization_id,
        amount=credits,
        subject=subject,
        reason=REASON_CHAT_REFUND,
        request_id=request_id,
    )
    return balance


def topup_reason(note: Optional[str]) -> str:
    note = (note or "").strip()
    return f"{REASON_ADMIN_ADJUST}:{note[:60]}" if note else REASON_ADMIN_ADJUST
