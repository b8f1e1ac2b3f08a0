from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .constants import KeyType, OrderStatus
from .db import Database, DBError, PendingOrder
from .helpers import from_iso, to_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Order:
    order_id: str
    chat_id: int
    game_type: str
    duration_days: int
    amount: int
    deposit_code: str
    key_type: str = KeyType.RANDOM
    manual_username: str | None = None
    manual_password: str | None = None
    status: str = OrderStatus.PENDING
    created_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING

    def elapsed_seconds(self, now: datetime) -> int:
        if self.created_at is None:
            return 0
        return int((now - self.created_at).total_seconds())


def _to_order(row: PendingOrder) -> Order:
    return Order(
        order_id=row.order_id,
        chat_id=row.chat_id,
        game_type=row.game_type,
        duration_days=row.duration,
        amount=row.amount,
        deposit_code=row.deposit_code,
        key_type=row.key_type,
        manual_username=row.manual_username or None,
        manual_password=row.manual_password or None,
        status=row.status,
        created_at=from_iso(row.created_at),
    )


class OrderStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(self, order: Order, now: datetime) -> Order:
        if order.duration_days <= 0:
            raise DBError("INVALID_DURATION")
        async with self._db.transaction() as session:
            session.add(
                PendingOrder(
                    order_id=order.order_id,
                    chat_id=order.chat_id,
                    game_type=order.game_type,
                    duration=order.duration_days,
                    amount=order.amount,
                    deposit_code=order.deposit_code,
                    key_type=order.key_type,
                    manual_username=order.manual_username,
                    manual_password=order.manual_password,
                    status=OrderStatus.PENDING,
                    created_at=to_iso(now),
                )
            )
        logger.info("Pending order saved order=%s chat=%s", order.order_id, order.chat_id)
        order.status = OrderStatus.PENDING
        order.created_at = now
        return order

    async def get(self, deposit_code: str) -> Order | None:
        async with self._db.sessions() as session:
            row = await session.scalar(select(PendingOrder).where(PendingOrder.deposit_code == deposit_code))
            return _to_order(row) if row else None

    async def get_active_pending(self, chat_id: int) -> Order | None:
        async with self._db.sessions() as session:
            row = await session.scalar(
                select(PendingOrder)
                .where(PendingOrder.chat_id == chat_id, PendingOrder.status == OrderStatus.PENDING)
                .order_by(PendingOrder.created_at.desc())
                .limit(1)
            )
            return _to_order(row) if row else None

    async def list_pending(self) -> list[Order]:
        async with self._db.sessions() as session:
            rows = await session.scalars(
                select(PendingOrder)
                .where(PendingOrder.status == OrderStatus.PENDING)
                .order_by(PendingOrder.created_at)
            )
            return [_to_order(row) for row in rows]

    async def set_status(self, deposit_code: str, status: str, now: datetime) -> bool:
        """Compare-and-set pending -> ``status``. ``False`` when the order already left pending."""
        async with self._db.transaction() as session:
            return await self.set_status_in(session, deposit_code, status, now)

    @staticmethod
    async def set_status_in(session: AsyncSession, deposit_code: str, status: str, now: datetime) -> bool:
        if status not in OrderStatus.TERMINAL:
            raise DBError(f"INVALID_TARGET_STATUS:{status}")
        result = await session.execute(
            update(PendingOrder)
            .where(PendingOrder.deposit_code == deposit_code, PendingOrder.status == OrderStatus.PENDING)
            .values(status=status, updated_at=to_iso(now))
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.info("Order status updated deposit=%s status=%s", deposit_code, status)
        return changed

    async def sweep_expired(self, now: datetime, timeout: int) -> int:
        """Delete pending rows older than ``timeout`` seconds."""
        cutoff = to_iso(now - timedelta(seconds=timeout))
        async with self._db.transaction() as session:
            result = await session.execute(
                delete(PendingOrder).where(
                    PendingOrder.status == OrderStatus.PENDING,
                    PendingOrder.created_at < cutoff,
                )
            )
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Cleaned up %s stale pending orders", removed)
        return removed
