import random
import re
from datetime import UTC, datetime, timedelta

import pytest

from keyshop.config import Pricing
from keyshop.credentials import Credentials, generate_purchase_credentials, generate_redeem_credentials
from keyshop.errors import MalformedInput
from keyshop.flows import PaymentRequest
from keyshop.helpers import (
    format_currency,
    format_date,
    format_remaining,
    from_iso,
    make_order_id,
    parse_credential_input,
    parse_duration_callback,
    parse_keytype_callback,
    parse_redeem_callback,
    parse_suffix_days,
    parse_suffix_game,
    to_iso,
)
from keyshop.licenses import LicenseRecord, compute_extended_expiry
from keyshop.messages import build_license_message, build_payment_message, duration_keyboard, redeem_keyboard
from keyshop.orders import Order
from keyshop.qris_pay import QrisDeposit
from keyshop.reconciler import Fulfillment


def test_parse_credential_input() -> None:
    assert parse_credential_input("/kambing-1") == Credentials("kambing", "1")
    assert parse_credential_input("/ user - pass ") == Credentials("user", "pass")
    # Only the first separator splits.
    assert parse_credential_input("/a-b-c") == Credentials("a", "b-c")


@pytest.mark.parametrize(
    ("text", "reason"),
    [
        ("kambing-1", MalformedInput.MISSING_PREFIX),
        ("/kambing", MalformedInput.BAD_SHAPE),
        ("/-1", MalformedInput.EMPTY_TOKEN),
        ("/kambing-", MalformedInput.EMPTY_TOKEN),
        ("/ - ", MalformedInput.EMPTY_TOKEN),
    ],
)
def test_parse_credential_input_rejects(text: str, reason: str) -> None:
    with pytest.raises(MalformedInput) as exc_info:
        parse_credential_input(text)
    assert exc_info.value.reason == reason


def test_generated_credentials_shape() -> None:
    rng = random.Random(7)
    for _ in range(50):
        purchase = generate_purchase_credentials(rng)
        assert re.fullmatch(r"[A-Z]{2}[0-9]{2}", purchase.username)
        assert re.fullmatch(r"[0-9]{2}", purchase.password)

        redeem = generate_redeem_credentials(rng)
        assert re.fullmatch(r"redeem[0-9][a-z]{2}", redeem.username)
        assert re.fullmatch(r"[0-9]", redeem.password)


def test_pricing_tables() -> None:
    pricing = Pricing()
    assert pricing.price_for(1) == 15000
    assert pricing.price_for(30) == 250000
    assert pricing.price_for(5) is None
    assert pricing.points_for(3) == 2
    assert pricing.points_for(30) == 15
    assert pricing.points_for(5) == 0
    assert pricing.redeem_cost(2) == 24
    assert pricing.is_redeemable(7)
    assert not pricing.is_redeemable(30)


def test_pricing_tables_are_read_only() -> None:
    table = {1: 1000}
    pricing = Pricing(prices=table)
    table[1] = 1

    assert pricing.price_for(1) == 1000
    with pytest.raises(TypeError):
        pricing.prices[1] = 1
    with pytest.raises(TypeError):
        Pricing().points_earned[1] = 99
    assert Pricing().points_for(1) == 1


def test_compute_extended_expiry() -> None:
    now = datetime(2026, 1, 10, tzinfo=UTC)
    assert compute_extended_expiry(now - timedelta(days=1), now, 3) == now + timedelta(days=3)
    assert compute_extended_expiry(now + timedelta(days=5), now, 3) == now + timedelta(days=8)


def test_iso_roundtrip_sorts_lexically() -> None:
    earlier = datetime(2026, 1, 10, 12, 0, 0, tzinfo=UTC)
    later = earlier + timedelta(microseconds=1)
    assert from_iso(to_iso(earlier)) == earlier
    assert to_iso(earlier) < to_iso(later)
    assert from_iso("2026-01-10T12:00:00").tzinfo is not None


def test_formatting() -> None:
    assert format_currency(15000) == "Rp 15.000"
    assert format_currency(250000) == "Rp 250.000"
    assert format_date(datetime(2026, 1, 10, 20, 30, 5, tzinfo=UTC)) == "11-01-2026 03:30:05"
    assert format_remaining(125) == "2 min 5 sec"
    assert format_remaining(-4) == "0 min 0 sec"


def test_make_order_id() -> None:
    assert re.fullmatch(r"ORDER[0-9]{13,}[0-9]{3}", make_order_id("ORDER"))
    assert make_order_id("EXTEND").startswith("EXTEND")


def test_parse_duration_callback() -> None:
    assert parse_duration_callback("duration_ff_3") == {"gameType": "ff", "days": 3}
    assert parse_duration_callback("duration_ffmax_30") == {"gameType": "ffmax", "days": 30}
    assert parse_duration_callback("duration_pubg_3") is None
    assert parse_duration_callback("duration_ff_x") is None
    assert parse_duration_callback("invalid") is None


def test_parse_keytype_callback() -> None:
    assert parse_keytype_callback("keytype_ff_1_manual") == {"gameType": "ff", "days": 1, "keyType": "manual"}
    assert parse_keytype_callback("keytype_ffmax_2_random") == {"gameType": "ffmax", "days": 2, "keyType": "random"}
    assert parse_keytype_callback("keytype_ff_1_extend") is None
    assert parse_keytype_callback("keytype_ff_1") is None


def test_parse_suffix_helpers() -> None:
    assert parse_suffix_days("extend_duration_10", "extend_duration_") == 10
    assert parse_suffix_days("extend_duration_", "extend_duration_") is None
    assert parse_suffix_game("extend_type_ffmax", "extend_type_") == "ffmax"
    assert parse_suffix_game("extend_type_pubg", "extend_type_") is None


def test_parse_redeem_callback() -> None:
    assert parse_redeem_callback("redeem_7") == {"days": 7}
    assert parse_redeem_callback("redeem_ff") == {"gameType": "ff"}
    assert parse_redeem_callback("redeem_points") is None
    assert parse_redeem_callback("redeem_pubg") is None


def test_keyboards_follow_pricing() -> None:
    pricing = Pricing()
    durations = duration_keyboard(pricing, "ff")
    callbacks = [button.callback_data for row in durations.inline_keyboard for button in row]
    assert "duration_ff_1" in callbacks
    assert "duration_ff_30" in callbacks
    assert callbacks[-2:] == ["new_order", "main_menu"]

    redeem = redeem_keyboard(pricing)
    labels = [button.text for row in redeem.inline_keyboard for button in row]
    assert "7 Day - 84 points" in labels


def test_payment_and_license_messages() -> None:
    order = Order(
        order_id="ORDER1",
        chat_id=5,
        game_type="ff",
        duration_days=1,
        amount=15000,
        deposit_code="DEP1",
        key_type="manual",
        manual_username="<kambing>",
        manual_password="1",
    )
    deposit = QrisDeposit(deposit_code="DEP1", qr_url="https://qr.example/1.png", expires_at="12:10")
    text = build_payment_message(PaymentRequest(order=order, deposit=deposit), 600, 20)
    assert "PAYMENT FREE FIRE (MANUAL)" in text
    assert "Rp 15.000" in text
    assert "&lt;kambing&gt;" in text
    assert "10 minutes" in text

    record = LicenseRecord("ff", "AB12", "34", datetime(2026, 1, 11, 12, tzinfo=UTC))
    done = build_license_message(Fulfillment(order=order, license=record, points_earned=1, balance=3))
    assert "<code>AB12</code>" in done
    assert "11-01-2026 19:00:00 WIB" in done
    assert "total <b>3 points</b>" in done
