from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from .config import Pricing
from .constants import MAX_EXTEND_MISMATCHES, KeyType, is_known_game
from .credentials import Credentials, generate_redeem_credentials
from .db import Database
from .errors import CredentialConflict, InsufficientPoints, KeyshopError, SessionExpired, UnknownDuration
from .helpers import make_order_id, parse_credential_input, utcnow
from .licenses import LicenseRecord, LicenseStore
from .orders import Order, OrderStore
from .points import PointsLedger
from .qris_pay import QrisDeposit
from .reconciler import PaymentReconciler, ReconcileResult
from .session_store import (
    AwaitingExtendCredentials,
    AwaitingExtendDuration,
    AwaitingManualCredentials,
    AwaitingRedeemGame,
    ConversationStore,
    StoredState,
    snapshot_of,
)

logger = logging.getLogger(__name__)

PURCHASE_ORDER_PREFIX = "ORDER"
EXTEND_ORDER_PREFIX = "EXTEND"


class DepositGateway(Protocol):
    async def create_deposit(self, order_id: str, amount: int) -> QrisDeposit: ...


@dataclass(slots=True)
class PaymentRequest:
    order: Order
    deposit: QrisDeposit
    previous_expiry: datetime | None = None


@dataclass(slots=True)
class ExtendMatch:
    state: AwaitingExtendDuration
    license: LicenseRecord


@dataclass(slots=True)
class ExtendMismatch:
    game_type: str
    error_count: int

    @property
    def cleared(self) -> bool:
        return self.error_count >= MAX_EXTEND_MISMATCHES


@dataclass(slots=True)
class RedeemPrompt:
    days: int
    cost: int
    balance: int


@dataclass(slots=True)
class Redemption:
    license: LicenseRecord
    days: int
    cost: int
    balance: int


class ShopService:
    """Entry points for chat events. Each call is a self-contained unit of work."""

    def __init__(
        self,
        db: Database,
        orders: OrderStore,
        licenses: LicenseStore,
        ledger: PointsLedger,
        conversations: ConversationStore,
        gateway: DepositGateway,
        reconciler: PaymentReconciler,
        pricing: Pricing,
        redeem_generator: Callable[[], Credentials] = generate_redeem_credentials,
    ) -> None:
        self._db = db
        self._orders = orders
        self._licenses = licenses
        self._ledger = ledger
        self._conversations = conversations
        self._gateway = gateway
        self._reconciler = reconciler
        self._pricing = pricing
        self._redeem_generator = redeem_generator

    @property
    def pricing(self) -> Pricing:
        return self._pricing

    def _price(self, days: int) -> int:
        price = self._pricing.price_for(days)
        if price is None:
            raise UnknownDuration(days)
        return price

    @staticmethod
    def _require_game(game_type: str) -> None:
        if not is_known_game(game_type):
            raise KeyshopError(f"UNKNOWN_GAME_TYPE:{game_type}")

    async def state(self, chat_id: int) -> StoredState | None:
        return await self._conversations.get(chat_id)

    async def reset(self, chat_id: int) -> None:
        await self._conversations.clear(chat_id)

    async def points(self, chat_id: int) -> int:
        return await self._ledger.get_balance(chat_id)

    async def _open_order(
        self,
        chat_id: int,
        prefix: str,
        game_type: str,
        days: int,
        key_type: str,
        now: datetime,
        credentials: Credentials | None = None,
    ) -> PaymentRequest:
        amount = self._price(days)
        order_id = make_order_id(prefix)
        deposit = await self._gateway.create_deposit(order_id, amount)
        order = await self._orders.create(
            Order(
                order_id=order_id,
                chat_id=chat_id,
                game_type=game_type,
                duration_days=days,
                amount=amount,
                deposit_code=deposit.deposit_code,
                key_type=key_type,
                manual_username=credentials.username if credentials else None,
                manual_password=credentials.password if credentials else None,
            ),
            now,
        )
        await self._db.log_action(chat_id, "order_created", f"{order_id}:{key_type}:{days}:{amount}")
        return PaymentRequest(order=order, deposit=deposit)

    async def start_random_purchase(
        self, chat_id: int, game_type: str, days: int, now: datetime | None = None
    ) -> PaymentRequest:
        self._require_game(game_type)
        return await self._open_order(
            chat_id, PURCHASE_ORDER_PREFIX, game_type, days, KeyType.RANDOM, now or utcnow()
        )

    async def begin_manual_purchase(self, chat_id: int, game_type: str, days: int) -> AwaitingManualCredentials:
        self._require_game(game_type)
        self._price(days)
        state = AwaitingManualCredentials(game_type=game_type, duration_days=days)
        await self._conversations.set(chat_id, state)
        return state

    async def submit_manual_credentials(
        self, chat_id: int, text: str, now: datetime | None = None
    ) -> PaymentRequest:
        stored = await self._conversations.get(chat_id)
        if stored is None or not isinstance(stored.state, AwaitingManualCredentials):
            raise SessionExpired("manual credential entry is not active")
        state = stored.state

        credentials = parse_credential_input(text)
        # Advisory only: nothing reserves the name until the paid order is fulfilled.
        if await self._licenses.username_exists(state.game_type, credentials.username):
            raise CredentialConflict(state.game_type, credentials.username)

        if not await self._conversations.claim(chat_id, state):
            raise SessionExpired("manual credential entry was already used")
        return await self._open_order(
            chat_id,
            PURCHASE_ORDER_PREFIX,
            state.game_type,
            state.duration_days,
            KeyType.MANUAL,
            now or utcnow(),
            credentials,
        )

    async def begin_extend(self, chat_id: int, game_type: str) -> AwaitingExtendCredentials:
        self._require_game(game_type)
        state = AwaitingExtendCredentials(game_type=game_type)
        await self._conversations.set(chat_id, state)
        return state

    async def submit_extend_credentials(self, chat_id: int, text: str) -> ExtendMatch | ExtendMismatch:
        stored = await self._conversations.get(chat_id)
        if stored is None or not isinstance(stored.state, AwaitingExtendCredentials):
            raise SessionExpired("extend credential entry is not active")
        game_type = stored.state.game_type

        credentials = parse_credential_input(text)
        record = await self._licenses.find(game_type, credentials.username, credentials.password)
        if record is None:
            count = await self._conversations.record_mismatch(chat_id)
            logger.info("Extend credentials mismatch chat=%s attempts=%s", chat_id, count)
            return ExtendMismatch(game_type=game_type, error_count=count)

        state = AwaitingExtendDuration(
            username=credentials.username,
            password=credentials.password,
            credential_snapshot=snapshot_of(record.username, record.exp_date),
            game_type=game_type,
        )
        await self._conversations.set(chat_id, state)
        return ExtendMatch(state=state, license=record)

    async def start_extend_payment(self, chat_id: int, days: int, now: datetime | None = None) -> PaymentRequest:
        stored = await self._conversations.get(chat_id)
        if stored is None or not isinstance(stored.state, AwaitingExtendDuration):
            raise SessionExpired("extend duration selection is not active")
        state = stored.state
        self._price(days)

        if not await self._conversations.claim(chat_id, state):
            raise SessionExpired("extend duration selection was already used")
        request = await self._open_order(
            chat_id,
            EXTEND_ORDER_PREFIX,
            state.game_type,
            days,
            KeyType.EXTEND,
            now or utcnow(),
            Credentials(state.username, state.password),
        )
        request.previous_expiry = state.current_expiry
        return request

    async def select_redeem_duration(self, chat_id: int, days: int) -> RedeemPrompt:
        if not self._pricing.is_redeemable(days):
            raise UnknownDuration(days)
        cost = self._pricing.redeem_cost(days)
        balance = await self._ledger.get_balance(chat_id)
        if balance < cost:
            raise InsufficientPoints(balance, cost)
        await self._conversations.set(chat_id, AwaitingRedeemGame(duration_days=days, points_cost=cost))
        return RedeemPrompt(days=days, cost=cost, balance=balance)

    async def complete_redemption(self, chat_id: int, game_type: str, now: datetime | None = None) -> Redemption:
        self._require_game(game_type)
        stored = await self._conversations.get(chat_id)
        if stored is None or not isinstance(stored.state, AwaitingRedeemGame):
            raise SessionExpired("redeem selection is not active")
        state = stored.state
        now = now or utcnow()

        # Selection, points and license are consumed together or not at all.
        async with self._db.transaction() as session:
            if not await self._conversations.claim(chat_id, state, session=session):
                raise SessionExpired("redeem selection was already used")
            balance = await self._ledger.redeem(
                chat_id, state.points_cost, f"License redeem {state.duration_days} days", session=session
            )
            record = await self._licenses.insert_generated(
                session, game_type, self._redeem_generator, state.duration_days, now
            )

        await self._db.log_action(
            chat_id, "points_redeemed", f"{record.username}:{state.duration_days}:-{state.points_cost}"
        )
        return Redemption(license=record, days=state.duration_days, cost=state.points_cost, balance=balance)

    async def check_payment(
        self, chat_id: int, extend_only: bool = False, now: datetime | None = None
    ) -> ReconcileResult | None:
        return await self._reconciler.check_active(
            chat_id, now, key_type=KeyType.EXTEND if extend_only else None
        )

    async def cancel_order(self, chat_id: int, now: datetime | None = None) -> Order | None:
        order = await self._reconciler.cancel_active(chat_id, now)
        await self._conversations.clear(chat_id)
        return order
