"""Identity route.

GET /api/me — Who am I, plus organization and balance. Anonymous callers
get {authenticated: false} instead of a 401.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import current_subject
from app.db.engine import get_db
from app.services.billing import ensure_org_for_user

router = APIRouter()


@router.get("/me")
async def me(request: Request, db: AsyncSession = Depends(get_db)):
    subject = current_subject(request)
    if not subject:
        return {"authenticated": False}

    email = getattr(request.state, "email", None)
    ctx = await ensure_org_for_user(
        db,
        subject=subject,
        name=getattr(request.state, "name", None),
        email=email,
    )
    return {
        "authenticated": True,
        "email": email,
        "sub": subject,
        "roles": list(getattr(request.state, "roles", [])),
        "isAdmin": bool(getattr(request.state, "is_admin", False)),
        "organizationId": str(ctx.organization_id),
        "role": ctx.role.value,
        "balance": ctx.balance,
    }
