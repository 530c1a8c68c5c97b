"""Credit ledger: balance mutations paired with an auditable transaction log.

Every change to ``credit_accounts.balance`` goes through this module. Deductions
use a single conditional UPDATE (``balance >= amount``) so concurrent requests
for the same account are serialized by the store's row atomicity. Refunds and
grants are deduplicated through the unique ``idempotency_key`` column.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, func, insert, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_transaction import CreditTransaction

logger = logging.getLogger(__name__)

TEMP_REFERENCE_PREFIX = "temp-"
DEDUCTION_KINDS = ("image", "training", "animation")
GRANT_KINDS = ("purchase", "bonus", "subscription_grant")

# Accounts at or above this balance are never charged.
UNLIMITED_BALANCE = 999999


@dataclass(frozen=True)
class GrantProgram:
    amount: int
    kind: str
    description: str


GRANT_PROGRAMS: Dict[str, GrantProgram] = {
    "welcome": GrantProgram(amount=2, kind="bonus", description="Welcome bonus"),
    "monthly": GrantProgram(amount=200, kind="subscription_grant", description="Monthly subscription credits"),
    "one_time_session": GrantProgram(amount=50, kind="purchase", description="One-time session purchase"),
    "paid_blueprint": GrantProgram(amount=60, kind="purchase", description="Paid blueprint purchase"),
}


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    new_balance: int
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    already_applied: bool = False
    transaction_ids: Tuple[str, ...] = ()


def credit_costs() -> Dict[str, int]:
    """Per-action prices in credits."""
    return {
        "training": max(int(settings.CREDIT_COST_TRAINING), 1),
        "image": max(int(settings.CREDIT_COST_CLASSIC_IMAGE), 1),
        "animation": max(int(settings.CREDIT_COST_ANIMATION), 1),
        "pro_image": max(int(settings.CREDIT_COST_PRO_IMAGE), 1),
        "pro_image_4k": max(int(settings.CREDIT_COST_PRO_IMAGE_4K), 1),
    }


def current_period_key(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m")


def new_temporary_reference() -> str:
    """Placeholder reference used until the external job handle is known."""
    return f"{TEMP_REFERENCE_PREFIX}{uuid.uuid4().hex}"


def is_temporary_reference(reference_id: Optional[str]) -> bool:
    return bool(reference_id) and str(reference_id).startswith(TEMP_REFERENCE_PREFIX)


def refund_key(reference_id: str) -> str:
    return f"refund:{reference_id}"


def _dialect_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for credit ledger: {dialect}")
    return insert


async def _read_balance(user_id: str, db: AsyncSession) -> Optional[int]:
    result = await db.execute(select(CreditAccount.balance).where(CreditAccount.user_id == user_id))
    value = result.scalar_one_or_none()
    return None if value is None else int(value)


async def ensure_account(user_id: str, db: AsyncSession) -> None:
    """Create the account row on first need. Safe under concurrent creation."""
    if await _read_balance(user_id, db) is not None:
        return
    dialect_insert = _dialect_insert(db)
    await db.execute(
        dialect_insert(CreditAccount)
        .values(user_id=user_id, balance=0, total_purchased=0, total_used=0)
        .on_conflict_do_nothing(index_elements=["user_id"])
    )


async def _insert_transaction_once(db: AsyncSession, **values: Any) -> bool:
    """Insert a transaction guarded by its idempotency key. Returns False on duplicates."""
    dialect_insert = _dialect_insert(db)
    result = await db.execute(
        dialect_insert(CreditTransaction)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
    )
    return int(result.rowcount or 0) == 1


async def _set_balance_after(transaction_id: str, balance: int, db: AsyncSession) -> None:
    await db.execute(
        update(CreditTransaction)
        .where(CreditTransaction.id == transaction_id)
        .values(balance_after=balance)
        .execution_options(synchronize_session=False)
    )


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    return await _read_balance(user_id, db) or 0


def is_unlimited_balance(balance: Optional[int]) -> bool:
    return balance is not None and int(balance) >= UNLIMITED_BALANCE


async def has_unlimited_credits(user_id: str, db: AsyncSession) -> bool:
    return is_unlimited_balance(await _read_balance(user_id, db))


async def check_sufficient(user_id: str, amount: int, db: AsyncSession) -> bool:
    """Read-only balance check. Unknown accounts are never sufficient."""
    balance = await _read_balance(user_id, db)
    if balance is None:
        return False
    if is_unlimited_balance(balance):
        return True
    return balance >= max(int(amount), 0)


async def reserve_many(
    user_id: str,
    db: AsyncSession,
    *,
    reservations: Sequence[Tuple[Optional[str], int]],
    kind: str,
    description: str,
    commit: bool = True,
) -> LedgerResult:
    """Deduct the sum of ``(reference_id, amount)`` pairs all-or-nothing.

    One conditional UPDATE covers the whole batch, then one negative
    transaction is logged per reference so each can be refunded on its own.
    Unlimited accounts get zero-amount entries and keep their balance.
    """
    if not reservations:
        raise ValueError("at least one reservation is required")
    amounts = [int(amount) for _, amount in reservations]
    if any(amount <= 0 for amount in amounts):
        raise ValueError("amount must be greater than 0")
    if kind not in DEDUCTION_KINDS:
        raise ValueError(f"kind must be one of {DEDUCTION_KINDS}")
    total = sum(amounts)
    references = [reference_id for reference_id, _ in reservations]

    unlimited = await has_unlimited_credits(user_id, db)
    if unlimited:
        logger.info("Unlimited account user=%s; skipping deduction of %s credits", user_id, total)
        amounts = [0] * len(amounts)
    else:
        result = await db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, CreditAccount.balance >= total)
            .values(
                balance=CreditAccount.balance - total,
                total_used=CreditAccount.total_used + total,
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            balance = await get_credit_balance(user_id, db)
            if commit:
                await db.rollback()
            logger.info(
                "Credit reservation rejected user=%s amount=%s balance=%s references=%s",
                user_id,
                total,
                balance,
                references,
            )
            return LedgerResult(success=False, new_balance=balance, error="insufficient_credits")

    new_balance = await get_credit_balance(user_id, db)
    entries = [
        CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            amount=-amount,
            kind=kind,
            description=f"{description} (unlimited)" if unlimited else description,
            reference_id=reference_id,
            balance_after=new_balance,
        )
        for reference_id, amount in zip(references, amounts)
    ]
    db.add_all(entries)
    await db.flush()
    if commit:
        await db.commit()
    logger.info(
        "Credits reserved user=%s amount=%s balance_after=%s references=%s",
        user_id,
        0 if unlimited else total,
        new_balance,
        references,
    )
    transaction_ids = tuple(entry.id for entry in entries)
    return LedgerResult(
        success=True,
        new_balance=new_balance,
        transaction_id=transaction_ids[0],
        transaction_ids=transaction_ids,
    )


async def reserve_and_deduct(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    kind: str,
    description: str,
    reference_id: Optional[str],
    commit: bool = True,
) -> LedgerResult:
    """Atomically deduct ``amount`` and log a negative transaction.

    With ``commit=False`` the deduction joins the caller's transaction so it can
    be committed (or rolled back) together with other writes.
    """
    return await reserve_many(
        user_id,
        db,
        reservations=[(reference_id, amount)],
        kind=kind,
        description=description,
        commit=commit,
    )


async def refund(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reference_id: str,
    kind: str = "refund",
    description: Optional[str] = None,
    commit: bool = True,
) -> LedgerResult:
    """Credit ``amount`` back once per ``reference_id``; repeats are no-ops."""
    credit = int(amount)
    if credit <= 0:
        raise ValueError("amount must be greater than 0")
    if not reference_id:
        raise ValueError("reference_id is required for refunds")

    await ensure_account(user_id, db)
    transaction_id = str(uuid.uuid4())
    inserted = await _insert_transaction_once(
        db,
        id=transaction_id,
        user_id=user_id,
        amount=credit,
        kind=kind,
        description=description or f"Refund for {reference_id}",
        reference_id=reference_id,
        idempotency_key=refund_key(reference_id),
    )
    if not inserted:
        balance = await get_credit_balance(user_id, db)
        if commit:
            await db.commit()
        logger.info("Refund already issued for reference=%s user=%s; skipping", reference_id, user_id)
        return LedgerResult(success=True, new_balance=balance, already_applied=True)

    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(
            balance=CreditAccount.balance + credit,
            total_used=case(
                (CreditAccount.total_used >= credit, CreditAccount.total_used - credit),
                else_=0,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    new_balance = await get_credit_balance(user_id, db)
    await _set_balance_after(transaction_id, new_balance, db)
    if commit:
        await db.commit()
    logger.info(
        "Credits refunded user=%s amount=%s balance_after=%s reference=%s",
        user_id,
        credit,
        new_balance,
        reference_id,
    )
    return LedgerResult(success=True, new_balance=new_balance, transaction_id=transaction_id)


async def find_reservation(reference_id: str, db: AsyncSession):
    """Latest deduction logged under ``reference_id`` as ``(user_id, amount)``, or None."""
    result = await db.execute(
        select(CreditTransaction.user_id, CreditTransaction.amount)
        .where(
            CreditTransaction.reference_id == reference_id,
            CreditTransaction.kind.in_(DEDUCTION_KINDS),
            CreditTransaction.amount <= 0,
        )
        .order_by(CreditTransaction.created_at.desc())
        .limit(1)
    )
    return result.first()


async def refund_reservation(
    reference_id: str,
    db: AsyncSession,
    *,
    description: Optional[str] = None,
    commit: bool = True,
) -> LedgerResult:
    """Refund exactly what was reserved under ``reference_id``."""
    reservation = await find_reservation(reference_id, db)
    if reservation is None:
        logger.warning("No reservation found to refund for reference=%s", reference_id)
        return LedgerResult(success=False, new_balance=0, error="reservation_not_found")
    if int(reservation.amount) == 0:
        # unlimited account; nothing was taken
        return LedgerResult(success=True, new_balance=await get_credit_balance(reservation.user_id, db))
    return await refund(
        reservation.user_id,
        db,
        amount=-int(reservation.amount),
        reference_id=reference_id,
        description=description,
        commit=commit,
    )


async def has_refund(reference_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(CreditTransaction.id).where(CreditTransaction.idempotency_key == refund_key(reference_id))
    )
    return result.scalar_one_or_none() is not None


async def rewrite_reference_id(
    transaction_id: str,
    new_reference_id: str,
    db: AsyncSession,
    *,
    commit: bool = True,
) -> bool:
    """Replace a temporary reservation reference with the real job handle (once)."""
    if not new_reference_id or is_temporary_reference(new_reference_id):
        raise ValueError("new_reference_id must be a real job handle")

    result = await db.execute(
        select(CreditTransaction.reference_id, CreditTransaction.kind).where(CreditTransaction.id == transaction_id)
    )
    row = result.first()
    if row is None or row.kind not in DEDUCTION_KINDS or not is_temporary_reference(row.reference_id):
        logger.warning("Reference rewrite refused for transaction=%s", transaction_id)
        return False
    if await has_refund(row.reference_id, db):
        logger.warning("Reference rewrite refused for refunded transaction=%s", transaction_id)
        return False

    update_result = await db.execute(
        update(CreditTransaction)
        .where(
            CreditTransaction.id == transaction_id,
            CreditTransaction.reference_id == row.reference_id,
        )
        .values(reference_id=new_reference_id)
        .execution_options(synchronize_session=False)
    )
    rewritten = int(update_result.rowcount or 0) == 1
    if commit:
        await db.commit()
    return rewritten


async def add_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    kind: str,
    description: str,
    billing_reference: Optional[str] = None,
    commit: bool = True,
) -> LedgerResult:
    """Grant purchased, bonus or subscription credits. Idempotent per ``billing_reference``."""
    grant = int(amount)
    if grant <= 0:
        raise ValueError("amount must be greater than 0")
    if kind not in GRANT_KINDS:
        raise ValueError(f"kind must be one of {GRANT_KINDS}")

    await ensure_account(user_id, db)
    transaction_id = str(uuid.uuid4())
    values = dict(
        id=transaction_id,
        user_id=user_id,
        amount=grant,
        kind=kind,
        description=description,
        reference_id=billing_reference,
    )
    if billing_reference:
        inserted = await _insert_transaction_once(
            db, idempotency_key=f"{kind}:{billing_reference}", **values
        )
        if not inserted:
            balance = await get_credit_balance(user_id, db)
            if commit:
                await db.commit()
            return LedgerResult(success=True, new_balance=balance, already_applied=True)
    else:
        await db.execute(insert(CreditTransaction).values(**values))

    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(
            balance=CreditAccount.balance + grant,
            total_purchased=CreditAccount.total_purchased + grant,
        )
        .execution_options(synchronize_session=False)
    )
    new_balance = await get_credit_balance(user_id, db)
    await _set_balance_after(transaction_id, new_balance, db)
    if commit:
        await db.commit()
    logger.info("Credits added user=%s kind=%s amount=%s balance_after=%s", user_id, kind, grant, new_balance)
    return LedgerResult(success=True, new_balance=new_balance, transaction_id=transaction_id)


async def grant_program_credits(
    user_id: str,
    db: AsyncSession,
    *,
    program: str,
    reference: str,
    commit: bool = True,
) -> LedgerResult:
    """Apply a fixed grant program once per ``(program, reference)``."""
    grant = GRANT_PROGRAMS.get(program)
    if grant is None:
        raise ValueError(f"program must be one of {tuple(GRANT_PROGRAMS)}")
    if not str(reference or "").strip():
        raise ValueError("reference is required for program grants")
    result = await add_credits(
        user_id,
        db,
        amount=grant.amount,
        kind=grant.kind,
        description=grant.description,
        billing_reference=f"{program}:{reference}",
        commit=commit,
    )
    if result.already_applied:
        logger.info("Grant %s already applied user=%s reference=%s", program, user_id, reference)
    return result


async def grant_welcome_credits(user_id: str, db: AsyncSession, *, commit: bool = True) -> LedgerResult:
    return await grant_program_credits(user_id, db, program="welcome", reference=user_id, commit=commit)


async def grant_monthly_credits(
    user_id: str,
    db: AsyncSession,
    *,
    period_key: Optional[str] = None,
    commit: bool = True,
) -> LedgerResult:
    return await grant_program_credits(
        user_id, db, program="monthly", reference=period_key or current_period_key(), commit=commit
    )


async def grant_session_credits(
    user_id: str,
    db: AsyncSession,
    *,
    payment_reference: str,
    commit: bool = True,
) -> LedgerResult:
    return await grant_program_credits(
        user_id, db, program="one_time_session", reference=payment_reference, commit=commit
    )


async def grant_blueprint_credits(
    user_id: str,
    db: AsyncSession,
    *,
    payment_reference: str,
    commit: bool = True,
) -> LedgerResult:
    return await grant_program_credits(
        user_id, db, program="paid_blueprint", reference=payment_reference, commit=commit
    )


async def get_credit_history(user_id: str, db: AsyncSession, limit: int = 50) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    return [
        {
            "id": entry.id,
            "kind": entry.kind,
            "amount": entry.amount,
            "balance_after": entry.balance_after,
            "description": entry.description,
            "reference_id": entry.reference_id,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]


async def audit_account(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Compare the stored balance with the sum of the transaction log."""
    balance = await get_credit_balance(user_id, db)
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
    )
    ledger_sum = int(result.scalar() or 0)
    return {
        "user_id": user_id,
        "balance": balance,
        "ledger_sum": ledger_sum,
        "consistent": balance == ledger_sum and balance >= 0,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    await ensure_account(user_id, db)
    result = await db.execute(select(CreditAccount).where(CreditAccount.user_id == user_id))
    account = result.scalar_one()
    await db.refresh(account)
    summary = {
        "balance": int(account.balance),
        "unlimited": is_unlimited_balance(account.balance),
        "total_purchased": int(account.total_purchased),
        "total_used": int(account.total_used),
        "costs": credit_costs(),
        "recent_entries": await get_credit_history(user_id, db, limit=30),
    }
    await db.commit()
    return summary
