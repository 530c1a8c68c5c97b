"""Credits router: balance, history, manual top-ups and grant programs."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_credit_admin
from routers.rate_limit import rate_limit
from services.credits import (
    GRANT_PROGRAMS,
    LedgerResult,
    add_credits,
    get_credit_history,
    get_credit_summary,
    grant_blueprint_credits,
    grant_monthly_credits,
    grant_session_credits,
    grant_welcome_credits,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    user_id: Optional[str] = None
    credits: int = Field(ge=1, le=10000)
    kind: Literal["purchase", "bonus"] = "purchase"
    billing_reference: Optional[str] = Field(default=None, max_length=200)


class CreditGrantRequest(BaseModel):
    user_id: Optional[str] = None
    program: Literal["welcome", "monthly", "one_time_session", "paid_blueprint"]
    # payment reference, or the "YYYY-MM" period for monthly grants
    reference: Optional[str] = Field(default=None, max_length=200)


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    """Return the user row, creating it with the welcome bonus on first contact."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user
    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    if settings.WELCOME_BONUS_ENABLED:
        await grant_welcome_credits(user_id, db, commit=False)
    logger.info("Created user=%s", user_id)
    return user


def _grant_payload(result: LedgerResult, amount: int) -> dict:
    return {
        "ok": True,
        "credits_added": 0 if result.already_applied else amount,
        "duplicate": result.already_applied,
        "balance_after": result.new_balance,
    }


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id, allow_admin=True)
    await ensure_user(db, scoped_user_id, auth.email_for(scoped_user_id))
    return await get_credit_summary(scoped_user_id, db)


@router.get("/history")
async def credits_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id, allow_admin=True)
    return {"user_id": scoped_user_id, "entries": await get_credit_history(scoped_user_id, db, limit=limit)}


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(require_credit_admin),
    db: AsyncSession = Depends(get_db),
):
    target_user_id = ensure_user_scope(auth, request.user_id, allow_admin=True)
    await ensure_user(db, target_user_id, auth.email_for(target_user_id))
    result = await add_credits(
        target_user_id,
        db,
        amount=request.credits,
        kind=request.kind,
        description=f"Manual {request.kind} of {request.credits} credits",
        billing_reference=request.billing_reference,
    )
    if result.already_applied:
        logger.info("Duplicate top-up ignored user=%s reference=%s", target_user_id, request.billing_reference)
    else:
        logger.info("Manual top-up user=%s credits=%s by admin=%s", target_user_id, request.credits, auth.user_id)
    return _grant_payload(result, request.credits)


@router.post("/grants")
async def apply_grant(
    request: CreditGrantRequest,
    auth: AuthContext = Depends(require_credit_admin),
    db: AsyncSession = Depends(get_db),
):
    target_user_id = ensure_user_scope(auth, request.user_id, allow_admin=True)
    await ensure_user(db, target_user_id, auth.email_for(target_user_id))
    if request.program == "welcome":
        result = await grant_welcome_credits(target_user_id, db)
    elif request.program == "monthly":
        result = await grant_monthly_credits(target_user_id, db, period_key=request.reference)
    else:
        if not request.reference:
            raise HTTPException(status_code=400, detail="reference is required for paid grants.")
        grant = grant_session_credits if request.program == "one_time_session" else grant_blueprint_credits
        result = await grant(target_user_id, db, payment_reference=request.reference)
    return {"program": request.program, **_grant_payload(result, GRANT_PROGRAMS[request.program].amount)}
