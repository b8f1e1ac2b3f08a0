from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .constants import PointType
from .db import Database, PointTransaction, UserPoints, _now
from .errors import InsufficientPoints

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PointEntry:
    points: int
    type: str
    reason: str
    created_at: str


class PointsLedger:
    """Per-chat point balance plus an append-only earn/redeem log.

    Every mutation writes its balance change and its log row inside the same
    transaction. Methods accept an optional ``session`` so callers can fold the
    mutation into a larger unit of work (order fulfillment, redemption).
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_balance(self, chat_id: int) -> int:
        async with self._db.transaction() as session:
            await self._ensure_row(session, chat_id)
            points = await session.scalar(select(UserPoints.points).where(UserPoints.chat_id == chat_id))
            return int(points or 0)

    async def award(self, chat_id: int, amount: int, reason: str, session: AsyncSession | None = None) -> int:
        if session is not None:
            return await self._award(session, chat_id, amount, reason)
        async with self._db.transaction() as own_session:
            return await self._award(own_session, chat_id, amount, reason)

    async def redeem(self, chat_id: int, amount: int, reason: str, session: AsyncSession | None = None) -> int:
        """Spend ``amount`` points. Raises ``InsufficientPoints`` without touching anything."""
        if session is not None:
            return await self._redeem(session, chat_id, amount, reason)
        async with self._db.transaction() as own_session:
            return await self._redeem(own_session, chat_id, amount, reason)

    async def history(self, chat_id: int, limit: int = 20) -> list[PointEntry]:
        async with self._db.sessions() as session:
            rows = await session.scalars(
                select(PointTransaction)
                .where(PointTransaction.chat_id == chat_id)
                .order_by(PointTransaction.id.desc())
                .limit(limit)
            )
            return [
                PointEntry(points=row.points, type=row.type, reason=row.reason, created_at=row.created_at)
                for row in rows
            ]

    @staticmethod
    async def _ensure_row(session: AsyncSession, chat_id: int) -> None:
        now = _now()
        await session.execute(
            insert(UserPoints.__table__)
            .values(chat_id=chat_id, points=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["chat_id"])
        )

    @staticmethod
    async def balance_in(session: AsyncSession, chat_id: int) -> int:
        points = await session.scalar(select(UserPoints.points).where(UserPoints.chat_id == chat_id))
        return int(points or 0)

    async def _award(self, session: AsyncSession, chat_id: int, amount: int, reason: str) -> int:
        if amount < 0:
            raise ValueError("award amount must be non-negative")
        now = _now()
        stmt = insert(UserPoints.__table__).values(chat_id=chat_id, points=amount, created_at=now, updated_at=now)
        await session.execute(
            stmt.on_conflict_do_update(
                index_elements=["chat_id"],
                set_={"points": UserPoints.__table__.c.points + stmt.excluded.points, "updated_at": now},
            )
        )
        session.add(PointTransaction(chat_id=chat_id, points=amount, type=PointType.EARN, reason=reason, created_at=now))
        await session.flush()
        balance = await self.balance_in(session, chat_id)
        logger.info("Points added chat=%s points=%s balance=%s", chat_id, amount, balance)
        return balance

    async def _redeem(self, session: AsyncSession, chat_id: int, amount: int, reason: str) -> int:
        if amount <= 0:
            raise ValueError("redeem amount must be positive")
        now = _now()
        result = await session.execute(
            update(UserPoints)
            .where(UserPoints.chat_id == chat_id, UserPoints.points >= amount)
            .values(points=UserPoints.points - amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            balance = await self.balance_in(session, chat_id)
            logger.info("Insufficient points chat=%s balance=%s needed=%s", chat_id, balance, amount)
            raise InsufficientPoints(balance, amount)
        session.add(PointTransaction(chat_id=chat_id, points=amount, type=PointType.REDEEM, reason=reason, created_at=now))
        await session.flush()
        balance = await self.balance_in(session, chat_id)
        logger.info("Points redeemed chat=%s points=%s balance=%s", chat_id, amount, balance)
        return balance
