from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from dotenv import load_dotenv

DEFAULT_PRICES: Mapping[int, int] = MappingProxyType({
    1: 15000,
    2: 30000,
    3: 40000,
    4: 50000,
    6: 70000,
    8: 90000,
    10: 100000,
    15: 150000,
    20: 180000,
    30: 250000,
})

DEFAULT_POINTS_EARNED: Mapping[int, int] = MappingProxyType({
    1: 1,
    2: 1,
    3: 2,
    4: 3,
    6: 4,
    8: 5,
    10: 6,
    15: 8,
    20: 10,
    30: 15,
})


def _get_env(key: str, default: str | None = None) -> str:
    value = os.getenv(key, default)
    if value is None or value == "":
        raise RuntimeError(f"Missing environment variable: {key}")
    return value


def _get_env_number(key: str, default: str | None = None) -> int:
    raw = _get_env(key, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid numeric environment variable: {key}") from exc


@dataclass(frozen=True)
class Pricing:
    prices: Mapping[int, int] = field(default_factory=lambda: DEFAULT_PRICES)
    points_earned: Mapping[int, int] = field(default_factory=lambda: DEFAULT_POINTS_EARNED)
    points_per_day: int = 12
    redeem_durations: tuple[int, ...] = (1, 2, 3, 7)

    def __post_init__(self) -> None:
        # Copy caller tables so later edits to them cannot reprice a running shop.
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))
        object.__setattr__(self, "points_earned", MappingProxyType(dict(self.points_earned)))
        object.__setattr__(self, "redeem_durations", tuple(self.redeem_durations))

    def price_for(self, days: int) -> int | None:
        return self.prices.get(days)

    def points_for(self, days: int) -> int:
        return self.points_earned.get(days, 0)

    def redeem_cost(self, days: int) -> int:
        return days * self.points_per_day

    def is_redeemable(self, days: int) -> bool:
        return days in self.redeem_durations


@dataclass(frozen=True)
class Timeouts:
    order_timeout: int = 600
    payment_check_interval: int = 20
    stale_order_timeout: int = 3600


@dataclass(frozen=True)
class Config:
    bot_token: str
    admin_chat_id: int
    welcome_image: str
    install_guide_url: str
    qris_api_key: str
    qris_api_base: str
    qris_timeout: float
    merchant_code: str
    database_url: str
    log_level: str
    polling_timeout: int
    pricing: Pricing = field(default_factory=Pricing)
    timeouts: Timeouts = field(default_factory=Timeouts)


def _default_database_url() -> str:
    db_file = Path.cwd() / "data" / "keyshop.db"
    return f"sqlite+aiosqlite:///{db_file.as_posix()}"


def load_config() -> Config:
    load_dotenv()
    return Config(
        bot_token=_get_env("BOT_TOKEN"),
        admin_chat_id=_get_env_number("ADMIN_CHAT_ID"),
        welcome_image=os.getenv("WELCOME_IMAGE", "").strip(),
        install_guide_url=os.getenv("INSTALL_GUIDE_URL", "").strip(),
        qris_api_key=_get_env("QRIS_API_KEY"),
        qris_api_base=os.getenv("QRIS_API_BASE", "https://cvqris-ariepulsa.my.id/qris/").strip(),
        qris_timeout=float(_get_env_number("QRIS_TIMEOUT", "15")),
        merchant_code=_get_env("MERCHANT_CODE"),
        database_url=os.getenv("DATABASE_URL", "").strip() or _default_database_url(),
        log_level=os.getenv("PY_LOG_LEVEL", "INFO").strip() or "INFO",
        polling_timeout=_get_env_number("PY_POLLING_TIMEOUT", "30"),
        pricing=Pricing(),
        timeouts=Timeouts(
            order_timeout=_get_env_number("ORDER_TIMEOUT", "600"),
            payment_check_interval=_get_env_number("PAYMENT_CHECK_INTERVAL", "20"),
            stale_order_timeout=_get_env_number("STALE_ORDER_TIMEOUT", "3600"),
        ),
    )
