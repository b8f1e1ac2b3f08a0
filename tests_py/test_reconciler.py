import asyncio
import re
from datetime import timedelta

from keyshop.constants import KeyType, OrderStatus
from keyshop.credentials import Credentials
from keyshop.db import FreeFireLicense, FreeFireMaxLicense, PointTransaction
from keyshop.orders import Order
from keyshop.qris_pay import PaymentStatus
from keyshop.reconciler import Decision, Outcome, PaymentReconciler, decide
from support import CHAT_ID, NOW, StoreTestCase


def _order(status: str = OrderStatus.PENDING) -> Order:
    return Order(
        order_id="ORDER1",
        chat_id=CHAT_ID,
        game_type="ff",
        duration_days=1,
        amount=15000,
        deposit_code="DEP1",
        status=status,
        created_at=NOW,
    )


def test_decide_table() -> None:
    pending = _order()
    assert decide(pending, NOW + timedelta(seconds=30), PaymentStatus.SUCCESS, 600).decision == Decision.FULFILL
    assert decide(pending, NOW + timedelta(seconds=600), PaymentStatus.SUCCESS, 600).decision == Decision.FULFILL
    # Expiry wins over a late payment.
    assert decide(pending, NOW + timedelta(seconds=601), PaymentStatus.SUCCESS, 600).decision == Decision.EXPIRE
    assert decide(pending, NOW + timedelta(seconds=601), None, 600).decision == Decision.EXPIRE

    waiting = decide(pending, NOW + timedelta(seconds=100), PaymentStatus.PENDING, 600)
    assert waiting.decision == Decision.WAIT
    assert waiting.remaining_seconds == 500

    for status in (OrderStatus.COMPLETED, OrderStatus.EXPIRED, OrderStatus.CANCELLED):
        assert decide(_order(status), NOW, PaymentStatus.SUCCESS, 600).decision == Decision.NOOP


class TestReconciler(StoreTestCase):
    async def test_paid_random_order_is_fulfilled(self):
        request = await self.shop.start_random_purchase(CHAT_ID, "ff", 1, now=NOW)
        self.assertEqual(self.gateway.created[0][1], 15000)
        self.gateway.pay(request.order.deposit_code)

        result = await self.shop.check_payment(CHAT_ID, now=NOW + timedelta(seconds=60))

        self.assertEqual(result.outcome, Outcome.COMPLETED)
        fulfillment = result.fulfillment
        self.assertRegex(fulfillment.license.username, r"^[A-Z]{2}[0-9]{2}$")
        self.assertRegex(fulfillment.license.password, r"^[0-9]{2}$")
        self.assertEqual(fulfillment.license.exp_date, NOW + timedelta(seconds=60) + timedelta(days=1))
        self.assertEqual(fulfillment.points_earned, 1)
        self.assertEqual(fulfillment.balance, 1)
        self.assertEqual((await self.orders.get(request.order.deposit_code)).status, OrderStatus.COMPLETED)
        self.assertIsNotNone(
            await self.licenses.find("ff", fulfillment.license.username, fulfillment.license.password)
        )
        self.assertEqual(await self.ledger.get_balance(CHAT_ID), 1)

    async def test_reconcile_is_idempotent(self):
        order = await self.add_order("DEP1")
        stale_copy = await self.orders.get("DEP1")

        first = await self.reconciler.reconcile(order, NOW, PaymentStatus.SUCCESS)
        again = await self.reconciler.reconcile(order, NOW, PaymentStatus.SUCCESS)
        stale = await self.reconciler.reconcile(stale_copy, NOW, PaymentStatus.SUCCESS)

        self.assertEqual(first.outcome, Outcome.COMPLETED)
        self.assertEqual(again.outcome, Outcome.ALREADY_FINAL)
        self.assertEqual(stale.outcome, Outcome.ALREADY_FINAL)
        self.assertEqual(await self.count(FreeFireLicense), 1)
        self.assertEqual(await self.count(PointTransaction), 1)
        self.assertEqual(await self.ledger.get_balance(CHAT_ID), 1)

    async def test_concurrent_reconcile_fulfills_once(self):
        await self.add_order("DEP1", days=3)
        first = await self.orders.get("DEP1")
        second = await self.orders.get("DEP1")

        results = await asyncio.gather(
            self.reconciler.reconcile(first, NOW, PaymentStatus.SUCCESS),
            self.reconciler.reconcile(second, NOW, PaymentStatus.SUCCESS),
        )

        self.assertEqual(sorted(r.outcome for r in results), [Outcome.ALREADY_FINAL, Outcome.COMPLETED])
        self.assertEqual(await self.count(FreeFireLicense), 1)
        self.assertEqual(await self.ledger.get_balance(CHAT_ID), 2)

    async def test_unpaid_order_expires_without_gateway_call(self):
        await self.shop.start_random_purchase(CHAT_ID, "ffmax", 1, now=NOW)

        report = await self.reconciler.sweep(now=NOW + timedelta(seconds=601))

        self.assertEqual(report.as_dict(), {"pending_orders": 1, "processed": 0, "expired": 1})
        self.assertEqual(self.gateway.checked, [])
        self.assertEqual((await self.orders.get("DEP1")).status, OrderStatus.EXPIRED)
        self.assertEqual(await self.count(FreeFireMaxLicense), 0)
        self.assertEqual(await self.ledger.get_balance(CHAT_ID), 0)

    async def test_late_payment_still_expires(self):
        order = await self.add_order("DEP1")
        result = await self.reconciler.reconcile(order, NOW + timedelta(seconds=601), PaymentStatus.SUCCESS)
        self.assertEqual(result.outcome, Outcome.EXPIRED)
        self.assertEqual(await self.count(FreeFireLicense), 0)

    async def test_pending_payment_reports_remaining_time(self):
        await self.add_order("DEP1")
        result = await self.shop.check_payment(CHAT_ID, now=NOW + timedelta(seconds=45))
        self.assertEqual(result.outcome, Outcome.PENDING)
        self.assertEqual(result.remaining_seconds, 555)
        self.assertEqual(self.gateway.checked, ["DEP1"])

    async def test_no_active_order(self):
        self.assertIsNone(await self.shop.check_payment(CHAT_ID, now=NOW))
        await self.add_order("DEP1")
        self.assertIsNone(await self.shop.check_payment(CHAT_ID, extend_only=True, now=NOW))

    async def test_manual_conflict_keeps_order_pending(self):
        await self.add_license("ff", "taken", "9", 5)
        order = await self.add_order("DEP1", key_type=KeyType.MANUAL, username="taken", password="1")

        result = await self.reconciler.reconcile(order, NOW + timedelta(seconds=30), PaymentStatus.SUCCESS)

        self.assertEqual(result.outcome, Outcome.CONFLICT)
        self.assertEqual(result.remaining_seconds, 570)
        self.assertEqual((await self.orders.get("DEP1")).status, OrderStatus.PENDING)
        self.assertEqual(await self.ledger.get_balance(CHAT_ID), 0)
        self.assertEqual(await self.count(PointTransaction), 0)

    async def test_racing_manual_orders_claim_username_once(self):
        first = await self.add_order("DEP1", key_type=KeyType.MANUAL, username="kambing", password="1")
        second = await self.add_order(
            "DEP2", key_type=KeyType.MANUAL, username="kambing", password="2", chat_id=CHAT_ID + 1
        )

        results = await asyncio.gather(
            self.reconciler.reconcile(first, NOW, PaymentStatus.SUCCESS),
            self.reconciler.reconcile(second, NOW, PaymentStatus.SUCCESS),
        )

        self.assertEqual(sorted(r.outcome for r in results), [Outcome.COMPLETED, Outcome.CONFLICT])
        self.assertEqual(await self.count(FreeFireLicense), 1)
        statuses = {(await self.orders.get(code)).status for code in ("DEP1", "DEP2")}
        self.assertEqual(statuses, {OrderStatus.COMPLETED, OrderStatus.PENDING})

    async def test_generated_collisions_exhaust_attempts(self):
        await self.add_license("ff", "AA00", "00", 5)
        calls = []

        def same_every_time():
            calls.append(1)
            return Credentials("AA00", "11")

        reconciler = PaymentReconciler(
            self.db, self.orders, self.licenses, self.ledger, self.gateway, self.pricing, self.timeouts,
            generator=same_every_time,
        )
        order = await self.add_order("DEP1")

        result = await reconciler.reconcile(order, NOW, PaymentStatus.SUCCESS)

        self.assertEqual(result.outcome, Outcome.CONFLICT)
        self.assertEqual(len(calls), 10)
        self.assertEqual((await self.orders.get("DEP1")).status, OrderStatus.PENDING)

    async def test_extend_restarts_expired_license_from_now(self):
        await self.add_license("ff", "kambing", "1", 1, now=NOW - timedelta(days=2))
        order = await self.add_order("DEP1", key_type=KeyType.EXTEND, days=3, username="kambing", password="1")

        result = await self.reconciler.reconcile(order, NOW, PaymentStatus.SUCCESS)

        self.assertEqual(result.outcome, Outcome.COMPLETED)
        self.assertEqual(result.fulfillment.previous_expiry, NOW - timedelta(days=1))
        self.assertEqual(result.fulfillment.license.exp_date, NOW + timedelta(days=3))
        self.assertEqual(result.fulfillment.points_earned, 2)
        self.assertEqual(await self.count(FreeFireLicense), 1)

    async def test_extend_stacks_on_active_license(self):
        await self.add_license("ff", "kambing", "1", 5)
        order = await self.add_order("DEP1", key_type=KeyType.EXTEND, days=3, username="kambing", password="1")

        result = await self.reconciler.reconcile(order, NOW + timedelta(seconds=10), PaymentStatus.SUCCESS)

        self.assertEqual(result.fulfillment.license.exp_date, NOW + timedelta(days=8))

    async def test_extend_of_missing_license_is_inconsistent(self):
        order = await self.add_order("DEP1", key_type=KeyType.EXTEND, days=3, username="ghost", password="1")

        result = await self.reconciler.reconcile(order, NOW, PaymentStatus.SUCCESS)

        self.assertEqual(result.outcome, Outcome.INCONSISTENT)
        self.assertEqual((await self.orders.get("DEP1")).status, OrderStatus.PENDING)
        self.assertEqual(await self.ledger.get_balance(CHAT_ID), 0)

    async def test_cancelled_order_is_never_fulfilled(self):
        await self.add_order("DEP1")
        cancelled = await self.shop.cancel_order(CHAT_ID, now=NOW)
        self.assertEqual(cancelled.status, OrderStatus.CANCELLED)

        reloaded = await self.orders.get("DEP1")
        result = await self.reconciler.reconcile(reloaded, NOW, PaymentStatus.SUCCESS)

        self.assertEqual(result.outcome, Outcome.ALREADY_FINAL)
        self.assertEqual(await self.count(FreeFireLicense), 0)
        self.assertIsNone(await self.shop.cancel_order(CHAT_ID, now=NOW))

    async def test_sweep_counts_and_notifies(self):
        await self.add_order("DEP1", chat_id=1)
        await self.add_order("DEP2", chat_id=2, now=NOW - timedelta(minutes=20))
        await self.add_order("DEP3", chat_id=3)
        self.gateway.pay("DEP1")
        notified = []

        async def on_fulfilled(fulfillment):
            notified.append(fulfillment.order.deposit_code)
            raise RuntimeError("telegram is down")

        report = await self.reconciler.sweep(now=NOW + timedelta(seconds=30), on_fulfilled=on_fulfilled)

        self.assertEqual((report.pending, report.processed, report.expired), (3, 1, 1))
        self.assertEqual(notified, ["DEP1"])
        self.assertEqual(sorted(self.gateway.checked), ["DEP1", "DEP3"])

    async def test_sweep_survives_gateway_errors(self):
        await self.add_order("DEP1")
        self.gateway.fail_check = True

        report = await self.reconciler.sweep(now=NOW + timedelta(seconds=30))

        self.assertEqual(report.failed, ["ORDER-DEP1"])
        self.assertEqual((report.processed, report.expired), (0, 0))
        self.assertEqual((await self.orders.get("DEP1")).status, OrderStatus.PENDING)

    async def test_order_ids_are_prefixed(self):
        purchase = await self.shop.start_random_purchase(CHAT_ID, "ff", 2, now=NOW)
        self.assertTrue(re.match(r"^ORDER[0-9]+$", purchase.order.order_id))
        self.assertEqual(purchase.order.amount, 30000)
