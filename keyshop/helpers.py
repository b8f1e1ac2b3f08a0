from __future__ import annotations

import random
import time
from datetime import UTC, datetime, timedelta

from .constants import CREDENTIAL_PREFIX, CREDENTIAL_SEPARATOR, Callback, is_known_game
from .credentials import Credentials
from .errors import MalformedInput

DISPLAY_TZ = timedelta(hours=7)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def make_order_id(prefix: str) -> str:
    return f"{prefix}{int(time.time() * 1000)}{random.randint(100, 999)}"


def parse_credential_input(text: str) -> Credentials:
    """Parse ``/username-password``; the split happens on the first ``-`` only."""
    if not text.startswith(CREDENTIAL_PREFIX):
        raise MalformedInput(MalformedInput.MISSING_PREFIX)
    body = text[len(CREDENTIAL_PREFIX):]
    if CREDENTIAL_SEPARATOR not in body:
        raise MalformedInput(MalformedInput.BAD_SHAPE)
    username, password = body.split(CREDENTIAL_SEPARATOR, 1)
    username = username.strip()
    password = password.strip()
    if not username or not password:
        raise MalformedInput(MalformedInput.EMPTY_TOKEN)
    return Credentials(username=username, password=password)


def format_date(value: datetime) -> str:
    local = value.astimezone(UTC) + DISPLAY_TZ
    return local.strftime("%d-%m-%Y %H:%M:%S")


def format_currency(amount: int) -> str:
    return "Rp " + f"{amount:,}".replace(",", ".")


def format_remaining(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60} min {seconds % 60} sec"


def parse_duration_callback(data: str) -> dict[str, object] | None:
    """``duration_<game>_<days>``"""
    parts = data.split("_")
    if len(parts) != 3 or parts[0] != "duration":
        return None
    game_type, raw_days = parts[1], parts[2]
    if not is_known_game(game_type) or not raw_days.isdigit():
        return None
    return {"gameType": game_type, "days": int(raw_days)}


def parse_keytype_callback(data: str) -> dict[str, object] | None:
    """``keytype_<game>_<days>_<random|manual>``"""
    parts = data.split("_")
    if len(parts) != 4 or parts[0] != "keytype":
        return None
    game_type, raw_days, key_type = parts[1], parts[2], parts[3]
    if not is_known_game(game_type) or not raw_days.isdigit():
        return None
    if key_type not in {"random", "manual"}:
        return None
    return {"gameType": game_type, "days": int(raw_days), "keyType": key_type}


def parse_suffix_days(data: str, prefix: str) -> int | None:
    if not data.startswith(prefix):
        return None
    raw = data[len(prefix):]
    if not raw.isdigit():
        return None
    return int(raw)


def parse_suffix_game(data: str, prefix: str) -> str | None:
    if not data.startswith(prefix):
        return None
    game_type = data[len(prefix):]
    return game_type if is_known_game(game_type) else None


def parse_redeem_callback(data: str) -> dict[str, object] | None:
    """``redeem_<days>`` picks a duration, ``redeem_<game>`` completes the redemption."""
    if data == Callback.REDEEM_POINTS:
        return None
    days = parse_suffix_days(data, Callback.REDEEM_PREFIX)
    if days is not None:
        return {"days": days}
    game_type = parse_suffix_game(data, Callback.REDEEM_PREFIX)
    if game_type is not None:
        return {"gameType": game_type}
    return None
