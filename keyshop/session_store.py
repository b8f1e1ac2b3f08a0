from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, ClassVar, Union

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .constants import MAX_EXTEND_MISMATCHES
from .db import Database, UserState, _now
from .helpers import from_iso, to_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AwaitingManualCredentials:
    KIND: ClassVar[str] = "awaiting_manual_credentials"
    game_type: str
    duration_days: int


@dataclass(slots=True, frozen=True)
class AwaitingExtendCredentials:
    KIND: ClassVar[str] = "awaiting_extend_credentials"
    game_type: str


@dataclass(slots=True, frozen=True)
class CredentialSnapshot:
    username: str
    exp_date: str


@dataclass(slots=True, frozen=True)
class AwaitingExtendDuration:
    KIND: ClassVar[str] = "awaiting_extend_duration"
    username: str
    password: str
    credential_snapshot: CredentialSnapshot
    game_type: str

    @property
    def current_expiry(self) -> datetime:
        return from_iso(self.credential_snapshot.exp_date)


@dataclass(slots=True, frozen=True)
class AwaitingRedeemGame:
    KIND: ClassVar[str] = "awaiting_redeem_game"
    duration_days: int
    points_cost: int


ConversationState = Union[
    AwaitingManualCredentials,
    AwaitingExtendCredentials,
    AwaitingExtendDuration,
    AwaitingRedeemGame,
]

STATE_TYPES: dict[str, type] = {
    AwaitingManualCredentials.KIND: AwaitingManualCredentials,
    AwaitingExtendCredentials.KIND: AwaitingExtendCredentials,
    AwaitingExtendDuration.KIND: AwaitingExtendDuration,
    AwaitingRedeemGame.KIND: AwaitingRedeemGame,
}


@dataclass(slots=True, frozen=True)
class StoredState:
    state: ConversationState
    error_count: int = 0


def snapshot_of(username: str, exp_date: datetime) -> CredentialSnapshot:
    return CredentialSnapshot(username=username, exp_date=to_iso(exp_date))


def encode_state(state: ConversationState) -> tuple[str, str]:
    return state.KIND, json.dumps(asdict(state), ensure_ascii=False, separators=(",", ":"))


def decode_state(kind: str, raw: str) -> ConversationState | None:
    state_type = STATE_TYPES.get(kind)
    if state_type is None:
        return None
    try:
        payload: dict[str, Any] = json.loads(raw or "{}")
        if state_type is AwaitingExtendDuration:
            payload["credential_snapshot"] = CredentialSnapshot(**payload["credential_snapshot"])
        return state_type(**payload)
    except (ValueError, TypeError, KeyError):
        logger.warning("Unreadable conversation state kind=%s", kind, exc_info=True)
        return None


class ConversationStore:
    """Per-chat conversation state; no row means the chat is idle."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, chat_id: int) -> StoredState | None:
        async with self._db.sessions() as session:
            row = await session.scalar(select(UserState).where(UserState.chat_id == chat_id))
            if row is None:
                return None
            state = decode_state(row.state, row.data)
            if state is None:
                return None
            return StoredState(state=state, error_count=int(row.error_count or 0))

    async def set(self, chat_id: int, state: ConversationState) -> None:
        kind, data = encode_state(state)
        now = _now()
        stmt = insert(UserState.__table__).values(
            chat_id=chat_id, state=kind, data=data, error_count=0, created_at=now, updated_at=now
        )
        async with self._db.transaction() as session:
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["chat_id"],
                    set_={"state": kind, "data": data, "error_count": 0, "updated_at": now},
                )
            )
        logger.info("User state saved chat=%s state=%s", chat_id, kind)

    async def clear(self, chat_id: int) -> None:
        async with self._db.transaction() as session:
            await session.execute(delete(UserState).where(UserState.chat_id == chat_id))
        logger.info("User state cleared chat=%s", chat_id)

    async def claim(self, chat_id: int, state: ConversationState, session: AsyncSession | None = None) -> bool:
        """Consume ``state`` if the chat still holds it. Of concurrent callers exactly one gets ``True``."""
        if session is not None:
            return await self._claim(session, chat_id, state)
        async with self._db.transaction() as own_session:
            return await self._claim(own_session, chat_id, state)

    @staticmethod
    async def _claim(session: AsyncSession, chat_id: int, state: ConversationState) -> bool:
        kind, data = encode_state(state)
        result = await session.execute(
            delete(UserState)
            .where(UserState.chat_id == chat_id, UserState.state == kind, UserState.data == data)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if claimed:
            logger.info("User state claimed chat=%s state=%s", chat_id, kind)
        return claimed

    async def record_mismatch(self, chat_id: int) -> int:
        """Bump the error counter; the state is dropped once it reaches the limit."""
        async with self._db.transaction() as session:
            result = await session.execute(
                update(UserState)
                .where(UserState.chat_id == chat_id)
                .values(error_count=UserState.error_count + 1, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return MAX_EXTEND_MISMATCHES
            # Read back under the write lock taken by the update.
            count = int(await session.scalar(select(UserState.error_count).where(UserState.chat_id == chat_id)) or 0)
            if count >= MAX_EXTEND_MISMATCHES:
                await session.execute(
                    delete(UserState).where(
                        UserState.chat_id == chat_id,
                        UserState.error_count >= MAX_EXTEND_MISMATCHES,
                    )
                )
                logger.info("User state cleared after %s mismatches chat=%s", count, chat_id)
            return count
