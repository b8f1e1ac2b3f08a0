from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .constants import LICENSE_ACTIVE_STATUS, MAX_GENERATE_ATTEMPTS
from .credentials import Credentials
from .db import Database, license_model
from .errors import CredentialConflict
from .helpers import from_iso, to_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class LicenseRecord:
    game_type: str
    username: str
    password: str
    exp_date: datetime


@dataclass(slots=True, frozen=True)
class ExtendResult:
    previous_expiry: datetime
    new_expiry: datetime


def compute_extended_expiry(old_expiry: datetime, now: datetime, days: int) -> datetime:
    """An expired license restarts from ``now``; an active one stacks on its current expiry."""
    return max(now, old_expiry) + timedelta(days=days)


class LicenseStore:
    def __init__(self, db: Database, reference: str) -> None:
        self._db = db
        self._reference = reference

    async def username_exists(self, game_type: str, username: str) -> bool:
        model = license_model(game_type)
        async with self._db.sessions() as session:
            count = await session.scalar(
                select(func.count()).select_from(model).where(model.username == username)
            )
            return int(count or 0) > 0

    async def find(self, game_type: str, username: str, password: str) -> LicenseRecord | None:
        async with self._db.sessions() as session:
            return await self.find_in(session, game_type, username, password)

    @staticmethod
    async def find_in(session: AsyncSession, game_type: str, username: str, password: str) -> LicenseRecord | None:
        model = license_model(game_type)
        row = await session.scalar(
            select(model).where(model.username == username, model.password == password).limit(1)
        )
        if row is None:
            return None
        return LicenseRecord(
            game_type=game_type,
            username=row.username,
            password=row.password,
            exp_date=from_iso(row.exp_date),
        )

    async def insert(
        self,
        session: AsyncSession,
        game_type: str,
        credentials: Credentials,
        days: int,
        now: datetime,
    ) -> LicenseRecord | None:
        """Insert a new license; ``None`` means the username is already taken in this namespace."""
        model = license_model(game_type)
        exp_date = now + timedelta(days=days)
        result = await session.execute(
            insert(model.__table__)
            .values(
                username=credentials.username,
                password=credentials.password,
                uuid="",
                exp_date=to_iso(exp_date),
                status=LICENSE_ACTIVE_STATUS,
                reference=self._reference,
                created_at=to_iso(now),
            )
            .on_conflict_do_nothing(index_elements=["username"])
        )
        if result.rowcount != 1:
            logger.info("Username already exists table=%s username=%s", model.__tablename__, credentials.username)
            return None
        logger.info(
            "License saved table=%s username=%s duration=%s days",
            model.__tablename__,
            credentials.username,
            days,
        )
        return LicenseRecord(
            game_type=game_type,
            username=credentials.username,
            password=credentials.password,
            exp_date=exp_date,
        )

    async def insert_claimed(
        self,
        session: AsyncSession,
        game_type: str,
        credentials: Credentials,
        days: int,
        now: datetime,
    ) -> LicenseRecord:
        record = await self.insert(session, game_type, credentials, days, now)
        if record is None:
            raise CredentialConflict(game_type, credentials.username)
        return record

    async def insert_generated(
        self,
        session: AsyncSession,
        game_type: str,
        generator: Callable[[], Credentials],
        days: int,
        now: datetime,
        attempts: int = MAX_GENERATE_ATTEMPTS,
    ) -> LicenseRecord:
        for _ in range(attempts):
            record = await self.insert(session, game_type, generator(), days, now)
            if record is not None:
                return record
        raise CredentialConflict(game_type)

    async def extend(
        self,
        session: AsyncSession,
        game_type: str,
        username: str,
        password: str,
        days: int,
        now: datetime,
    ) -> ExtendResult | None:
        """Push the expiry of a matching license; ``None`` when no row matches anymore."""
        model = license_model(game_type)
        current = await self.find_in(session, game_type, username, password)
        if current is None:
            return None
        new_expiry = compute_extended_expiry(current.exp_date, now, days)
        result = await session.execute(
            update(model)
            .where(model.username == username, model.password == password)
            .values(exp_date=to_iso(new_expiry))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount < 1:
            return None
        logger.info("License extended username=%s new_expiry=%s", username, to_iso(new_expiry))
        return ExtendResult(previous_expiry=current.exp_date, new_expiry=new_expiry)
