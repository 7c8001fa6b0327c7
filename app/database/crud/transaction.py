from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Transaction, TransactionType


async def create_transaction(
    db: AsyncSession,
    *,
    user_id: int,
    transaction_type: TransactionType,
    amount_kopeks: int,
    description: str | None = None,
    payment_id: int | None = None,
    external_id: str | None = None,
) -> Transaction:
    transaction = Transaction(
        user_id=user_id,
        type=transaction_type.value,
        amount_kopeks=amount_kopeks,
        description=description,
        payment_id=payment_id,
        external_id=external_id,
        created_at=datetime.now(UTC),
    )
    db.add(transaction)
    await db.flush()
    return transaction


async def get_user_transactions(
    db: AsyncSession,
    *,
    user_id: int,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Transaction], int]:
    query = (
        select(Transaction)
        .where(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 100)))
    )
    total_query = select(func.count(Transaction.id)).where(Transaction.user_id == user_id)

    rows = (await db.execute(query)).scalars().all()
    total = int((await db.execute(total_query)).scalar() or 0)
    return list(rows), total


async def get_journal_sum(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(select(func.coalesce(func.sum(Transaction.amount_kopeks), 0)).where(Transaction.user_id == user_id))
    return int(result.scalar() or 0)
