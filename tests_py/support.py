import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import func, select

from keyshop.config import Pricing, Timeouts
from keyshop.credentials import Credentials
from keyshop.db import Database
from keyshop.errors import GatewayUnavailable
from keyshop.flows import ShopService
from keyshop.licenses import LicenseStore
from keyshop.orders import Order, OrderStore
from keyshop.points import PointsLedger
from keyshop.qris_pay import PaymentStatus, QrisDeposit
from keyshop.reconciler import PaymentReconciler
from keyshop.session_store import ConversationStore

NOW = datetime(2026, 1, 10, 12, 0, 0, tzinfo=UTC)
CHAT_ID = 1001


class FakeGateway:
    def __init__(self) -> None:
        self.statuses: dict[str, str] = {}
        self.created: list[tuple[str, int]] = []
        self.checked: list[str] = []
        self.fail_create = False
        self.fail_check = False

    async def create_deposit(self, order_id: str, amount: int) -> QrisDeposit:
        if self.fail_create:
            raise GatewayUnavailable("QRIS_TRANSPORT_ERROR:get-deposit")
        self.created.append((order_id, amount))
        return QrisDeposit(
            deposit_code=f"DEP{len(self.created)}",
            qr_url=f"https://qr.example/{order_id}.png",
            expires_at="2026-01-10 12:10:00",
        )

    async def check_status(self, deposit_code: str) -> str:
        self.checked.append(deposit_code)
        if self.fail_check:
            raise RuntimeError("gateway exploded")
        return self.statuses.get(deposit_code, PaymentStatus.PENDING)

    def pay(self, deposit_code: str) -> None:
        self.statuses[deposit_code] = PaymentStatus.SUCCESS


class StoreTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        db_file = Path(self._tmp.name) / "keyshop.db"
        self.db = Database(f"sqlite+aiosqlite:///{db_file.as_posix()}")
        await self.db.ensure_schema()
        self.pricing = Pricing()
        self.timeouts = Timeouts()
        self.gateway = FakeGateway()
        self.orders = OrderStore(self.db)
        self.licenses = LicenseStore(self.db, reference="TEST")
        self.ledger = PointsLedger(self.db)
        self.conversations = ConversationStore(self.db)
        self.reconciler = PaymentReconciler(
            self.db, self.orders, self.licenses, self.ledger, self.gateway, self.pricing, self.timeouts
        )
        self.shop = ShopService(
            self.db,
            self.orders,
            self.licenses,
            self.ledger,
            self.conversations,
            self.gateway,
            self.reconciler,
            self.pricing,
        )

    async def asyncTearDown(self) -> None:
        await self.db.dispose()
        self._tmp.cleanup()

    async def count(self, model) -> int:
        async with self.db.sessions() as session:
            return int(await session.scalar(select(func.count()).select_from(model)) or 0)

    async def add_license(self, game_type: str, username: str, password: str, days: int, now: datetime = NOW):
        async with self.db.transaction() as session:
            return await self.licenses.insert(session, game_type, Credentials(username, password), days, now)

    async def add_order(
        self,
        deposit_code: str,
        key_type: str = "random",
        days: int = 1,
        chat_id: int = CHAT_ID,
        game_type: str = "ff",
        username: str | None = None,
        password: str | None = None,
        now: datetime = NOW,
    ) -> Order:
        return await self.orders.create(
            Order(
                order_id=f"ORDER-{deposit_code}",
                chat_id=chat_id,
                game_type=game_type,
                duration_days=days,
                amount=self.pricing.prices.get(days, 0),
                deposit_code=deposit_code,
                key_type=key_type,
                manual_username=username,
                manual_password=password,
            ),
            now,
        )
