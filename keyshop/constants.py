from __future__ import annotations

from typing import Final

GAMES: Final = {
    "ff": {
        "TABLE": "freefire",
        "TITLE": "FREE FIRE",
        "EMOJI": "🎮",
    },
    "ffmax": {
        "TABLE": "ffmax",
        "TITLE": "FREE FIRE MAX",
        "EMOJI": "⚡",
    },
}

LICENSE_ACTIVE_STATUS: Final = "2"
MAX_GENERATE_ATTEMPTS: Final = 10
MAX_EXTEND_MISMATCHES: Final = 2
CREDENTIAL_PREFIX: Final = "/"
CREDENTIAL_SEPARATOR: Final = "-"


class Callback:
    MAIN_MENU = "main_menu"
    NEW_ORDER = "new_order"
    EXTEND_USER = "extend_user"
    REDEEM_POINTS = "redeem_points"
    HELP = "help"
    CHECK_PAYMENT = "check_payment"
    CHECK_EXTEND = "check_extend"
    CANCEL_ORDER = "cancel_order"

    # Prefixes
    TYPE_PREFIX = "type_"
    DURATION_PREFIX = "duration_"
    KEYTYPE_PREFIX = "keytype_"
    EXTEND_TYPE_PREFIX = "extend_type_"
    EXTEND_DURATION_PREFIX = "extend_duration_"
    REDEEM_PREFIX = "redeem_"


class KeyType:
    RANDOM = "random"
    MANUAL = "manual"
    EXTEND = "extend"


class OrderStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    TERMINAL = frozenset({COMPLETED, EXPIRED, CANCELLED})


class PointType:
    EARN = "earn"
    REDEEM = "redeem"


def game_title(game_type: str) -> str:
    return GAMES[game_type]["TITLE"] if game_type in GAMES else game_type.upper()


def is_known_game(game_type: str) -> bool:
    return game_type in GAMES
