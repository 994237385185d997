"""Admin routes — billing and operational endpoints.

GET  /api/admin/billing/overview — Caller's org, wallet, subscription and recent ledger
POST /api/admin/billing/topup    — Credit an organization's wallet
GET  /api/admin/metrics          — Chat traffic for the last hour

All routes require the admin role claim.
"""

import logging
import math
import time
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import request_id as get_request_id
from app.api.deps import require_admin
from app.api.schemas import TopupRequest, TopupResponse
from app.config import get_settings
from app.db.engine import get_db
from app.db.models import CreditLedger, OrgMember, Organization, Subscription
from app.exceptions import OrganizationNotFoundError
from app.services.billing import credit_wallet, find_membership, find_wallet, topup_reason
from app.services.metrics import read_chat_metrics

logger = logging.getLogger(__name__)

router = APIRouter()

LEDGER_PAGE_SIZE = 50


def _iso(value):
    return value.isoformat() if value is not None else None


@router.get("/billing/overview")
async def billing_overview(request: Request, db: AsyncSession = Depends(get_db)):
    """Billing snapshot of the caller's organization."""
    subject = require_admin(request)

    member = await find_membership(db, subject)
    if member is None:
        return {
            "ok": True,
            "organization": None,
            "wallet": None,
            "subscription": None,
            "memberCount": 0,
            "role": None,
            "ledger": [],
        }

    org = await db.get(Organization, member.organization_id)
    wallet = await find_wallet(db, member.organization_id)

    sub_result = await db.execute(
        select(Subscription)
        .where(Subscription.organization_id == member.organization_id)
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    subscription = sub_result.scalar_one_or_none()

    count_result = await db.execute(
        select(func.count(OrgMember.id)).where(
            OrgMember.organization_id == member.organization_id
        )
    )
    member_count = count_result.scalar() or 0

    ledger = []
    if wallet is not None:
        ledger_result = await db.execute(
            select(CreditLedger)
            .where(CreditLedger.wallet_id == wallet.id)
            .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
            .limit(LEDGER_PAGE_SIZE)
        )
        ledger = [
            {
                "id": str(row.id),
                "delta": row.delta,
                "reason": row.reason,
                "subject": row.subject,
                "requestId": row.request_id,
                "createdAt": _iso(row.created_at),
            }
            for row in ledger_result.scalars().all()
        ]

    return {
        "ok": True,
        "organization": {
            "id": str(org.id),
            "name": org.name,
            "createdAt": _iso(org.created_at),
        },
        "wallet": (
            {
                "id": str(wallet.id),
                "currency": wallet.currency,
                "balance": wallet.balance,
                "updatedAt": _iso(wallet.updated_at),
            }
            if wallet
            else None
        ),
        "subscription": (
            {
                "id": str(subscription.id),
                "status": subscription.status,
                "planCode": subscription.plan_code,
                "seats": subscription.seats,
                "monthlyCredits": subscription.monthly_credits,
                "currentPeriodStart": _iso(subscription.current_period_start),
                "currentPeriodEnd": _iso(subscription.current_period_end),
            }
            if subscription
            else None
        ),
        "memberCount": member_count,
        "role": member.role.value,
        "ledger": ledger,
    }


@router.post("/billing/topup", response_model=TopupResponse)
async def billing_topup(
    body: TopupRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Add credits to an organization's wallet (defaults to the caller's)."""
    subject = require_admin(request)
    settings = get_settings()

    amount = math.trunc(body.amount)
    if amount < 1 or amount > settings.max_topup_amount:
        raise HTTPException(
            status_code=400,
            detail=f"amount must be between 1 and {settings.max_topup_amount}",
        )

    if body.organization_id:
        try:
            organization_id = uuid.UUID(body.organization_id)
        except ValueError:
            raise HTTPException(status_code=404, detail="Organization not found")
    else:
        member = await find_membership(db, subject)
        if member is None:
            raise HTTPException(status_code=400, detail="No organization for caller")
        organization_id = member.organization_id
        await db.commit()

    try:
        _, balance = await credit_wallet(
            db,
            organization_id=organization_id,
            amount=amount,
            subject=subject,
            reason=topup_reason(body.note),
            request_id=get_request_id(request),
        )
    except OrganizationNotFoundError:
        raise HTTPException(status_code=404, detail="Organization not found")

    logger.info(
        "Credits topped up",
        extra={
            "event": "credits_topped_up",
            "user_id": subject,
            "organization_id": str(organization_id),
            "amount": amount,
            "balance": balance,
        },
    )
    return TopupResponse(organization_id=str(organization_id), amount=amount, balance=balance)


@router.get("/metrics")
async def admin_metrics(request: Request):
    """Aggregated chat traffic over the metrics window."""
    require_admin(request)
    redis = getattr(request.app.state, "redis", None)
    data = await read_chat_metrics(redis, now_seconds=time.time())
    return {"ok": True, **data}
