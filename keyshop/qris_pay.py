from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import GatewayUnavailable

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://cvqris-ariepulsa.my.id/qris/"
DEFAULT_TIMEOUT = 15.0


class PaymentStatus:
    SUCCESS = "success"
    PENDING = "pending"


@dataclass(slots=True)
class QrisDeposit:
    deposit_code: str
    qr_url: str
    expires_at: str


def _as_record(data: Any) -> dict[str, Any] | None:
    if isinstance(data, dict):
        return data
    return None


def _parse_deposit(raw: Any) -> QrisDeposit | None:
    payload = _as_record(raw)
    if not payload or not payload.get("status"):
        return None
    data = _as_record(payload.get("data"))
    if not data:
        return None

    deposit_code = data.get("kode_deposit")
    if not isinstance(deposit_code, str) or not deposit_code.strip():
        return None
    qr_url = data.get("link_qr")
    if not isinstance(qr_url, str) or not qr_url.startswith(("http://", "https://")):
        return None

    return QrisDeposit(
        deposit_code=deposit_code.strip(),
        qr_url=qr_url,
        expires_at=str(data.get("expired", "")),
    )


def _parse_status(raw: Any) -> str:
    payload = _as_record(raw)
    if not payload or not payload.get("status"):
        return PaymentStatus.PENDING
    data = _as_record(payload.get("data"))
    if data and data.get("status") == "Success":
        return PaymentStatus.SUCCESS
    return PaymentStatus.PENDING


class QrisClient:
    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._api_base = api_base.strip() or DEFAULT_API_BASE
        self._timeout = timeout
        self._transport = transport

    async def _call(self, action: str, params: dict[str, Any]) -> Any:
        if not self._api_key:
            raise GatewayUnavailable("QRIS_DISABLED")

        query = {"action": action, **params, "apikey": self._api_key}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self._api_base, params=query)
        except httpx.HTTPError as exc:
            raise GatewayUnavailable(f"QRIS_TRANSPORT_ERROR:{action}") from exc

        if not response.is_success:
            raise GatewayUnavailable(f"QRIS_HTTP_ERROR:{action}:{response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayUnavailable(f"QRIS_BAD_RESPONSE:{action}") from exc

    async def create_deposit(self, order_id: str, amount: int) -> QrisDeposit:
        if amount <= 0:
            raise GatewayUnavailable("QRIS_INVALID_AMOUNT")

        logger.info("Creating payment order=%s amount=%s", order_id, amount)
        result = await self._call("get-deposit", {"kode": order_id, "nominal": amount})
        deposit = _parse_deposit(result)
        if deposit is None:
            logger.warning("Unusable deposit response for order=%s: %r", order_id, result)
            raise GatewayUnavailable("QRIS_INVALID_DEPOSIT_RESPONSE")
        return deposit

    async def check_status(self, deposit_code: str) -> str:
        """Anything other than a confirmed ``Success`` mutation reads as pending."""
        try:
            result = await self._call("get-mutasi", {"kode": deposit_code})
        except GatewayUnavailable:
            logger.warning("Payment status check failed deposit=%s", deposit_code, exc_info=True)
            return PaymentStatus.PENDING
        status = _parse_status(result)
        logger.info("Payment status deposit=%s status=%s", deposit_code, status)
        return status
