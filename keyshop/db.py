from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import CheckConstraint, Index, Integer, String
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .constants import GAMES, LICENSE_ACTIVE_STATUS, OrderStatus
from .helpers import to_iso, utcnow

logger = logging.getLogger(__name__)


def _now() -> str:
    return to_iso(utcnow())


class Base(DeclarativeBase):
    pass


class PendingOrder(Base):
    __tablename__ = "pending_orders"
    __table_args__ = (Index("ix_pending_orders_chat_status", "chat_id", "status"),)

    order_id: Mapped[str] = mapped_column(String, primary_key=True)
    chat_id: Mapped[int] = mapped_column(Integer)
    game_type: Mapped[str] = mapped_column(String)
    duration: Mapped[int] = mapped_column(Integer)
    amount: Mapped[int] = mapped_column(Integer)
    deposit_code: Mapped[str] = mapped_column(String, unique=True)
    key_type: Mapped[str] = mapped_column(String, default="random")
    manual_username: Mapped[str | None] = mapped_column(String, nullable=True)
    manual_password: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=OrderStatus.PENDING)
    # Timestamps are ISO-8601 UTC strings with fixed precision so they sort lexically.
    created_at: Mapped[str] = mapped_column(String, default=_now)
    updated_at: Mapped[str | None] = mapped_column(String, nullable=True)


class UserPoints(Base):
    __tablename__ = "user_points"
    __table_args__ = (CheckConstraint("points >= 0", name="ck_user_points_non_negative"),)

    chat_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    points: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[str] = mapped_column(String, default=_now)
    updated_at: Mapped[str] = mapped_column(String, default=_now)


class PointTransaction(Base):
    __tablename__ = "point_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(Integer, index=True)
    points: Mapped[int] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[str] = mapped_column(String, default=_now)


class UserState(Base):
    __tablename__ = "user_states"

    chat_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    state: Mapped[str] = mapped_column(String)
    data: Mapped[str] = mapped_column(String, default="{}")
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[str] = mapped_column(String, default=_now)
    updated_at: Mapped[str] = mapped_column(String, default=_now)


class LicenseColumns:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String, unique=True)
    password: Mapped[str] = mapped_column(String)
    uuid: Mapped[str] = mapped_column(String, default="")
    exp_date: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=LICENSE_ACTIVE_STATUS)
    reference: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[str] = mapped_column(String, default=_now)


class FreeFireLicense(LicenseColumns, Base):
    __tablename__ = GAMES["ff"]["TABLE"]


class FreeFireMaxLicense(LicenseColumns, Base):
    __tablename__ = GAMES["ffmax"]["TABLE"]


LICENSE_MODELS: dict[str, type[FreeFireLicense] | type[FreeFireMaxLicense]] = {
    "ff": FreeFireLicense,
    "ffmax": FreeFireMaxLicense,
}


class Log(Base):
    __tablename__ = "logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String)
    details: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String, default=_now)


class DBError(RuntimeError):
    pass


def license_model(game_type: str):
    model = LICENSE_MODELS.get(game_type)
    if model is None:
        raise DBError(f"UNKNOWN_GAME_TYPE:{game_type}")
    return model


class Database:
    def __init__(self, url: str) -> None:
        parsed = make_url(url)
        connect_args: dict[str, object] = {}
        if parsed.get_backend_name() == "sqlite":
            connect_args["timeout"] = 30
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine: AsyncEngine = create_async_engine(url, future=True, connect_args=connect_args)
        self.sessions = async_sessionmaker(self.engine, expire_on_commit=False)

    async def ensure_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.sessions() as session:
            async with session.begin():
                yield session

    async def log_action(self, chat_id: int, action: str, details: str = "") -> None:
        try:
            async with self.sessions() as session:
                session.add(Log(chat_id=chat_id, action=action, details=details))
                await session.commit()
        except Exception:
            # Audit logging must not break bot flow.
            logger.warning("Failed to record audit action %s for chat %s", action, chat_id, exc_info=True)
