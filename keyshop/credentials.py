from __future__ import annotations

import random
import string
from dataclasses import dataclass

REDEEM_USERNAME_PREFIX = "redeem"


@dataclass(slots=True, frozen=True)
class Credentials:
    username: str
    password: str


def generate_purchase_credentials(rng: random.Random | None = None) -> Credentials:
    """Two uppercase letters and two digits, with a two digit password (e.g. ``AB12`` / ``34``)."""
    rng = rng or random.SystemRandom()
    letters = "".join(rng.choice(string.ascii_uppercase) for _ in range(2))
    digits = "".join(rng.choice(string.digits) for _ in range(2))
    password = "".join(rng.choice(string.digits) for _ in range(2))
    return Credentials(username=letters + digits, password=password)


def generate_redeem_credentials(rng: random.Random | None = None) -> Credentials:
    """``redeem`` + one digit + two lowercase letters, with a one digit password."""
    rng = rng or random.SystemRandom()
    suffix = rng.choice(string.digits) + "".join(rng.choice(string.ascii_lowercase) for _ in range(2))
    return Credentials(username=REDEEM_USERNAME_PREFIX + suffix, password=rng.choice(string.digits))
