"""Order lifecycle and payment reconciliation.

An order is created ``pending`` and leaves that state exactly once, to
``completed``, ``expired`` or ``cancelled``. Every transition goes through a
compare-and-set on the order row, so concurrent sweeps, manual checks and
cancellations of the same order cannot both win. Fulfillment (license insert or
extension plus the point award) runs in the same transaction as the
``pending -> completed`` update: either all of it lands or none of it does.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from .config import Pricing, Timeouts
from .constants import KeyType, OrderStatus
from .credentials import Credentials, generate_purchase_credentials
from .db import Database
from .errors import CredentialConflict, FulfillmentInconsistent
from .helpers import utcnow
from .licenses import LicenseRecord, LicenseStore
from .orders import Order, OrderStore
from .points import PointsLedger
from .qris_pay import PaymentStatus

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def check_status(self, deposit_code: str) -> str: ...


class Decision:
    NOOP = "noop"
    EXPIRE = "expire"
    FULFILL = "fulfill"
    WAIT = "wait"


class Outcome:
    COMPLETED = "completed"
    EXPIRED = "expired"
    PENDING = "pending"
    CONFLICT = "conflict"
    INCONSISTENT = "inconsistent"
    ALREADY_FINAL = "already_final"


@dataclass(slots=True, frozen=True)
class Verdict:
    decision: str
    remaining_seconds: int = 0


def is_expired(order: Order, now: datetime, timeout: int) -> bool:
    return order.elapsed_seconds(now) > timeout


def decide(order: Order, now: datetime, gateway_status: str | None, timeout: int) -> Verdict:
    """Pure decision for one order: depends only on status, age and gateway answer."""
    if not order.is_pending:
        return Verdict(Decision.NOOP)
    if is_expired(order, now, timeout):
        return Verdict(Decision.EXPIRE)
    if gateway_status == PaymentStatus.SUCCESS:
        return Verdict(Decision.FULFILL)
    return Verdict(Decision.WAIT, remaining_seconds=max(0, timeout - order.elapsed_seconds(now)))


@dataclass(slots=True)
class Fulfillment:
    order: Order
    license: LicenseRecord
    points_earned: int
    balance: int
    previous_expiry: datetime | None = None


@dataclass(slots=True)
class ReconcileResult:
    order: Order
    outcome: str
    remaining_seconds: int = 0
    fulfillment: Fulfillment | None = None


@dataclass(slots=True)
class SweepReport:
    pending: int = 0
    processed: int = 0
    expired: int = 0
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {"pending_orders": self.pending, "processed": self.processed, "expired": self.expired}


FulfillmentCallback = Callable[[Fulfillment], Awaitable[None]]


class PaymentReconciler:
    def __init__(
        self,
        db: Database,
        orders: OrderStore,
        licenses: LicenseStore,
        ledger: PointsLedger,
        gateway: PaymentGateway,
        pricing: Pricing,
        timeouts: Timeouts,
        generator: Callable[[], Credentials] = generate_purchase_credentials,
    ) -> None:
        self._db = db
        self._orders = orders
        self._licenses = licenses
        self._ledger = ledger
        self._gateway = gateway
        self._pricing = pricing
        self._timeouts = timeouts
        self._generator = generator

    @property
    def timeout(self) -> int:
        return self._timeouts.order_timeout

    async def reconcile(self, order: Order, now: datetime, gateway_status: str | None) -> ReconcileResult:
        verdict = decide(order, now, gateway_status, self.timeout)

        if verdict.decision == Decision.NOOP:
            return ReconcileResult(order, Outcome.ALREADY_FINAL)

        if verdict.decision == Decision.EXPIRE:
            if not await self._orders.set_status(order.deposit_code, OrderStatus.EXPIRED, now):
                return ReconcileResult(order, Outcome.ALREADY_FINAL)
            order.status = OrderStatus.EXPIRED
            logger.info("Order expired: %s", order.order_id)
            await self._db.log_action(order.chat_id, "order_expired", order.order_id)
            return ReconcileResult(order, Outcome.EXPIRED)

        if verdict.decision == Decision.WAIT:
            return ReconcileResult(order, Outcome.PENDING, remaining_seconds=verdict.remaining_seconds)

        logger.info("Payment successful for order: %s", order.order_id)
        try:
            fulfillment = await self._fulfill(order, now)
        except CredentialConflict as exc:
            logger.warning("Credential conflict for order %s: %s", order.order_id, exc)
            await self._db.log_action(order.chat_id, "fulfillment_conflict", f"{order.order_id}:{exc}")
            return ReconcileResult(
                order,
                Outcome.CONFLICT,
                remaining_seconds=max(0, self.timeout - order.elapsed_seconds(now)),
            )
        except FulfillmentInconsistent as exc:
            logger.error("Inconsistent fulfillment for order %s: %s", order.order_id, exc)
            await self._db.log_action(order.chat_id, "fulfillment_inconsistent", f"{order.order_id}:{exc}")
            return ReconcileResult(order, Outcome.INCONSISTENT)

        if fulfillment is None:
            return ReconcileResult(order, Outcome.ALREADY_FINAL)

        order.status = OrderStatus.COMPLETED
        await self._db.log_action(
            order.chat_id,
            "order_completed",
            f"{order.order_id}:{fulfillment.license.username}:+{fulfillment.points_earned}",
        )
        return ReconcileResult(order, Outcome.COMPLETED, fulfillment=fulfillment)

    async def check_order(self, order: Order, now: datetime | None = None) -> ReconcileResult:
        """Poll the gateway for one order, skipping the call when it is already past its deadline."""
        now = now or utcnow()
        if not order.is_pending or is_expired(order, now, self.timeout):
            return await self.reconcile(order, now, None)
        status = await self._gateway.check_status(order.deposit_code)
        return await self.reconcile(order, now, status)

    async def check_active(
        self,
        chat_id: int,
        now: datetime | None = None,
        key_type: str | None = None,
    ) -> ReconcileResult | None:
        order = await self._orders.get_active_pending(chat_id)
        if order is None or (key_type is not None and order.key_type != key_type):
            return None
        await self._db.log_action(chat_id, "payment_check", order.order_id)
        return await self.check_order(order, now)

    async def cancel_active(self, chat_id: int, now: datetime | None = None) -> Order | None:
        order = await self._orders.get_active_pending(chat_id)
        if order is None:
            return None
        if await self._orders.set_status(order.deposit_code, OrderStatus.CANCELLED, now or utcnow()):
            order.status = OrderStatus.CANCELLED
            await self._db.log_action(chat_id, "order_cancelled", order.order_id)
        return order

    async def sweep(
        self,
        now: datetime | None = None,
        on_fulfilled: FulfillmentCallback | None = None,
    ) -> SweepReport:
        """Advance every pending order. Never raises; per-order failures are logged and skipped."""
        report = SweepReport()
        try:
            pending = await self._orders.list_pending()
        except Exception:
            logger.exception("Failed to load pending orders")
            return report

        report.pending = len(pending)
        logger.info("Found %s pending orders", report.pending)
        for order in pending:
            try:
                result = await self.check_order(order, now or utcnow())
            except Exception:
                logger.exception("Failed to reconcile order %s", order.order_id)
                report.failed.append(order.order_id)
                continue

            if result.outcome == Outcome.EXPIRED:
                report.expired += 1
            elif result.outcome == Outcome.COMPLETED:
                report.processed += 1
                if on_fulfilled is not None and result.fulfillment is not None:
                    try:
                        await on_fulfilled(result.fulfillment)
                    except Exception:
                        logger.exception("Failed to notify about order %s", order.order_id)

        logger.info("Payment check completed - processed: %s, expired: %s", report.processed, report.expired)
        return report

    async def _fulfill(self, order: Order, now: datetime) -> Fulfillment | None:
        """Returns ``None`` when another worker already moved the order out of pending."""
        previous_expiry: datetime | None = None
        async with self._db.transaction() as session:
            if not await OrderStore.set_status_in(session, order.deposit_code, OrderStatus.COMPLETED, now):
                logger.info("Order %s already finalized elsewhere", order.order_id)
                return None

            if order.key_type == KeyType.EXTEND:
                if not order.manual_username or not order.manual_password:
                    raise FulfillmentInconsistent(f"extend order {order.order_id} carries no credentials")
                extended = await self._licenses.extend(
                    session,
                    order.game_type,
                    order.manual_username,
                    order.manual_password,
                    order.duration_days,
                    now,
                )
                if extended is None:
                    raise FulfillmentInconsistent(f"license {order.manual_username} no longer matches")
                license_record = await LicenseStore.find_in(
                    session, order.game_type, order.manual_username, order.manual_password
                )
                if license_record is None:
                    raise FulfillmentInconsistent(f"license {order.manual_username} vanished after extend")
                previous_expiry = extended.previous_expiry
                reason = f"License extend {order.duration_days} days"
            elif order.key_type == KeyType.MANUAL:
                if not order.manual_username or not order.manual_password:
                    raise FulfillmentInconsistent(f"manual order {order.order_id} carries no credentials")
                license_record = await self._licenses.insert_claimed(
                    session,
                    order.game_type,
                    Credentials(order.manual_username, order.manual_password),
                    order.duration_days,
                    now,
                )
                reason = f"License purchase {order.duration_days} days"
            else:
                license_record = await self._licenses.insert_generated(
                    session, order.game_type, self._generator, order.duration_days, now
                )
                reason = f"License purchase {order.duration_days} days"

            points = self._pricing.points_for(order.duration_days)
            if points > 0:
                balance = await self._ledger.award(order.chat_id, points, reason, session=session)
            else:
                balance = await PointsLedger.balance_in(session, order.chat_id)

        return Fulfillment(
            order=order,
            license=license_record,
            points_earned=points,
            balance=balance,
            previous_expiry=previous_expiry,
        )
