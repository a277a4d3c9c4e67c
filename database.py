from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import desc, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from models import Base, Order, ReconciliationEntry, User

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


async def run_db_operation(op, retries: int = 3, delay: float = 0.5):
    """Run a DB operation with a small retry for transient OperationalError.

    The `op` callable must contain its own transaction unit (session + commit).
    Never used for the balance debit, which must run exactly once.
    """
    retries = max(1, int(retries))
    for i in range(retries):
        try:
            return await op()
        except OperationalError:
            if i == retries - 1:
                raise
            logger.warning("Transient database error; retrying (%s/%s)", i + 1, retries)
            await asyncio.sleep(float(delay) * (2 ** i))


# -----------------------------
# Engine / sessions
# -----------------------------
def init_engine(database_url: str) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the async SQLAlchemy engine + sessionmaker for `database_url`."""
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set; cannot initialize database engine")
    engine = create_async_engine(database_url, echo=False, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, session_factory


async def init_db(engine: AsyncEngine) -> None:
    """Create tables (if missing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# -----------------------------
# Account ledger
# -----------------------------
async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    return (await session.execute(select(User).where(User.id == user_id))).scalars().first()


async def get_or_create_user(session: AsyncSession, username: str) -> User:
    user = (await session.execute(select(User).where(User.username == username))).scalars().first()
    if not user:
        user = User(username=username, balance=Decimal("0"))
        session.add(user)
        await session.flush()
    return user


async def get_balance(session: AsyncSession, user_id: int) -> Optional[Decimal]:
    value = (await session.execute(select(User.balance).where(User.id == user_id))).scalar_one_or_none()
    return Decimal(value) if value is not None else None


async def adjust_balance(session: AsyncSession, user_id: int, delta: Decimal) -> Optional[Decimal]:
    """Atomically add `delta` to a balance unless it would go negative.

    This is the only write path for `users.balance`. Returns the new balance,
    or None when the guard rejected the change (or the user does not exist).
    Does not commit; the caller owns the transaction.
    """
    delta = Decimal(delta)
    stmt = (
        update(User)
        .where(User.id == user_id, User.balance + delta >= 0)
        .values(balance=User.balance + delta)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        return None
    return await get_balance(session, user_id)


async def debit_balance(session: AsyncSession, user_id: int, amount: Decimal) -> bool:
    if amount < 0:
        raise ValueError("Debit amount must be non-negative")
    return await adjust_balance(session, user_id, -amount) is not None


async def credit_balance(session: AsyncSession, user_id: int, amount: Decimal) -> Decimal:
    if amount < 0:
        raise ValueError("Credit amount must be non-negative")
    new_balance = await adjust_balance(session, user_id, amount)
    if new_balance is None:
        raise LookupError(f"User {user_id} not found")
    return new_balance


# -----------------------------
# Order store
# -----------------------------
async def insert_order(
    session: AsyncSession,
    *,
    user_id: int,
    service_id: int,
    service_name: str,
    quantity: int,
    link: str,
    price: Decimal,
    api_order_id: str,
    status: str = "Pending",
) -> Order:
    order = Order(
        user_id=user_id,
        service_id=service_id,
        service_name=service_name,
        quantity=quantity,
        link=link,
        price=price,
        status=status,
        api_order_id=api_order_id,
    )
    session.add(order)
    await session.flush()
    return order


async def list_user_orders(
    session: AsyncSession,
    user_id: int,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> Tuple[List[Order], bool]:
    page = max(1, int(page))
    limit = min(MAX_PAGE_SIZE, max(1, int(limit)))
    # fetch limit+1 to detect more
    stmt = (
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(desc(Order.created_at), desc(Order.id))
        .offset((page - 1) * limit)
        .limit(limit + 1)
    )
    rows = list((await session.execute(stmt)).scalars().all())
    has_more = len(rows) > limit
    return rows[:limit], has_more


async def find_user_orders_by_api_ids(
    session: AsyncSession, user_id: int, api_order_ids: Iterable[str]
) -> List[Order]:
    ids = [str(i) for i in api_order_ids]
    if not ids:
        return []
    stmt = select(Order).where(Order.user_id == user_id, Order.api_order_id.in_(ids))
    return list((await session.execute(stmt)).scalars().all())


async def update_order_status(session: AsyncSession, user_id: int, api_order_id: str, status: str) -> int:
    stmt = (
        update(Order)
        .where(Order.user_id == user_id, Order.api_order_id == str(api_order_id))
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


# -----------------------------
# Reconciliation
# -----------------------------
async def insert_reconciliation_entry(session: AsyncSession, record: Dict[str, Any]) -> ReconciliationEntry:
    entry = ReconciliationEntry(**record)
    session.add(entry)
    await session.flush()
    return entry


async def list_open_reconciliation(session: AsyncSession, limit: int = 200) -> List[ReconciliationEntry]:
    stmt = (
        select(ReconciliationEntry)
        .where(ReconciliationEntry.resolved == False)  # noqa: E712
        .order_by(ReconciliationEntry.created_at.asc())
        .limit(int(limit))
    )
    return list((await session.execute(stmt)).scalars().all())


async def resolve_reconciliation_entry(session: AsyncSession, entry_id: int) -> bool:
    stmt = (
        update(ReconciliationEntry)
        .where(ReconciliationEntry.id == entry_id, ReconciliationEntry.resolved == False)  # noqa: E712
        .values(resolved=True)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
