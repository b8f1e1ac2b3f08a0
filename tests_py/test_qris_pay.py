import unittest

import httpx

from keyshop.errors import GatewayUnavailable
from keyshop.qris_pay import PaymentStatus, QrisClient

API_BASE = "https://qris.example/qris/"


def _client(handler) -> QrisClient:
    return QrisClient("secret", api_base=API_BASE, timeout=5, transport=httpx.MockTransport(handler))


class TestQrisClient(unittest.IsolatedAsyncioTestCase):
    async def test_create_deposit(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(dict(request.url.params))
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "kode_deposit": "DEP123",
                        "link_qr": "https://qris.example/qr/DEP123.png",
                        "expired": "2026-01-10 12:10:00",
                    },
                },
            )

        deposit = await _client(handler).create_deposit("ORDER1", 15000)

        self.assertEqual(deposit.deposit_code, "DEP123")
        self.assertEqual(deposit.qr_url, "https://qris.example/qr/DEP123.png")
        self.assertEqual(deposit.expires_at, "2026-01-10 12:10:00")
        self.assertEqual(
            seen,
            [{"action": "get-deposit", "kode": "ORDER1", "nominal": "15000", "apikey": "secret"}],
        )

    async def test_create_deposit_rejects_unusable_answers(self):
        answers = [
            httpx.Response(200, json={"status": False, "msg": "saldo"}),
            httpx.Response(200, json={"status": True, "data": {"kode_deposit": "DEP1", "link_qr": "not-a-url"}}),
            httpx.Response(502, text="bad gateway"),
            httpx.Response(200, text="<html>"),
        ]
        for answer in answers:
            with self.subTest(status=answer.status_code):
                with self.assertRaises(GatewayUnavailable):
                    await _client(lambda request, answer=answer: answer).create_deposit("ORDER1", 15000)

    async def test_create_deposit_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with self.assertRaises(GatewayUnavailable):
            await _client(handler).create_deposit("ORDER1", 15000)

    async def test_check_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["action"] == "get-mutasi"
            status = "Success" if request.url.params["kode"] == "PAID" else "Pending"
            return httpx.Response(200, json={"status": True, "data": {"status": status}})

        client = _client(handler)
        self.assertEqual(await client.check_status("PAID"), PaymentStatus.SUCCESS)
        self.assertEqual(await client.check_status("WAITING"), PaymentStatus.PENDING)

    async def test_check_status_failures_read_as_pending(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        handlers = [
            refuse,
            lambda request: httpx.Response(500, text="oops"),
            lambda request: httpx.Response(200, text="not json"),
            lambda request: httpx.Response(200, json={"status": False}),
        ]
        for handler in handlers:
            self.assertEqual(await _client(handler).check_status("DEP1"), PaymentStatus.PENDING)

    async def test_missing_api_key(self):
        client = QrisClient("", api_base=API_BASE, transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        with self.assertRaises(GatewayUnavailable):
            await client.create_deposit("ORDER1", 15000)
        self.assertEqual(await client.check_status("DEP1"), PaymentStatus.PENDING)
