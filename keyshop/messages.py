from __future__ import annotations

from datetime import datetime
from html import escape

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from .config import Pricing
from .constants import GAMES, Callback, KeyType, game_title
from .flows import PaymentRequest, Redemption
from .helpers import format_currency, format_date, format_remaining, utcnow
from .licenses import LicenseRecord
from .reconciler import Fulfillment

CREDENTIAL_FORMAT_HINT = (
    "📝 <b>Format:</b> <code>/username-password</code>\n"
    "🎯 <b>Example:</b> <code>/player-123</code>"
)


def _inline_keyboard(rows: list[list[InlineKeyboardButton]]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=rows)


def _short_price(amount: int) -> str:
    return f"{amount // 1000}k" if amount % 1000 == 0 else str(amount)


def back_keyboard(previous: str = "") -> InlineKeyboardMarkup:
    rows: list[list[InlineKeyboardButton]] = []
    if previous:
        rows.append([InlineKeyboardButton(text="↩️ Back", callback_data=previous)])
    rows.append([InlineKeyboardButton(text="🏠 Main menu", callback_data=Callback.MAIN_MENU)])
    return _inline_keyboard(rows)


def main_menu_keyboard() -> InlineKeyboardMarkup:
    return _inline_keyboard(
        [
            [
                InlineKeyboardButton(text="🛒 Buy license", callback_data=Callback.NEW_ORDER),
                InlineKeyboardButton(text="⏰ Extend license", callback_data=Callback.EXTEND_USER),
            ],
            [
                InlineKeyboardButton(text="🎁 Redeem points", callback_data=Callback.REDEEM_POINTS),
                InlineKeyboardButton(text="ℹ️ Help", callback_data=Callback.HELP),
            ],
        ]
    )


def game_keyboard(prefix: str, back: str = Callback.MAIN_MENU) -> InlineKeyboardMarkup:
    return _inline_keyboard(
        [
            [
                InlineKeyboardButton(text=f"{info['EMOJI']} {info['TITLE']}", callback_data=f"{prefix}{key}")
                for key, info in GAMES.items()
            ],
            [InlineKeyboardButton(text="↩️ Back", callback_data=back)],
        ]
    )


def _duration_rows(pricing: Pricing, callback_for) -> list[list[InlineKeyboardButton]]:
    buttons = [
        InlineKeyboardButton(text=f"{days} Day - {_short_price(price)}", callback_data=callback_for(days))
        for days, price in sorted(pricing.prices.items())
    ]
    return [buttons[i:i + 3] for i in range(0, len(buttons), 3)]


def duration_keyboard(pricing: Pricing, game_type: str) -> InlineKeyboardMarkup:
    rows = _duration_rows(pricing, lambda days: f"{Callback.DURATION_PREFIX}{game_type}_{days}")
    rows.append(
        [
            InlineKeyboardButton(text="↩️ Back", callback_data=Callback.NEW_ORDER),
            InlineKeyboardButton(text="🏠 Main menu", callback_data=Callback.MAIN_MENU),
        ]
    )
    return _inline_keyboard(rows)


def extend_duration_keyboard(pricing: Pricing, game_type: str) -> InlineKeyboardMarkup:
    rows = _duration_rows(pricing, lambda days: f"{Callback.EXTEND_DURATION_PREFIX}{days}")
    rows.append(
        [
            InlineKeyboardButton(text="↩️ Back", callback_data=f"{Callback.EXTEND_TYPE_PREFIX}{game_type}"),
            InlineKeyboardButton(text="🏠 Main menu", callback_data=Callback.MAIN_MENU),
        ]
    )
    return _inline_keyboard(rows)


def key_type_keyboard(game_type: str, days: int) -> InlineKeyboardMarkup:
    return _inline_keyboard(
        [
            [
                InlineKeyboardButton(
                    text="🎲 Random key", callback_data=f"{Callback.KEYTYPE_PREFIX}{game_type}_{days}_random"
                ),
                InlineKeyboardButton(
                    text="✍️ Manual key", callback_data=f"{Callback.KEYTYPE_PREFIX}{game_type}_{days}_manual"
                ),
            ],
            [
                InlineKeyboardButton(text="↩️ Back", callback_data=f"{Callback.TYPE_PREFIX}{game_type}"),
                InlineKeyboardButton(text="🏠 Main menu", callback_data=Callback.MAIN_MENU),
            ],
        ]
    )


def redeem_keyboard(pricing: Pricing) -> InlineKeyboardMarkup:
    buttons = [
        InlineKeyboardButton(
            text=f"{days} Day - {pricing.redeem_cost(days)} points",
            callback_data=f"{Callback.REDEEM_PREFIX}{days}",
        )
        for days in pricing.redeem_durations
    ]
    rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
    rows.append([InlineKeyboardButton(text="↩️ Back", callback_data=Callback.MAIN_MENU)])
    return _inline_keyboard(rows)


def payment_keyboard(check_callback: str) -> InlineKeyboardMarkup:
    return _inline_keyboard(
        [
            [InlineKeyboardButton(text="🔍 Check status", callback_data=check_callback)],
            [InlineKeyboardButton(text="❌ Cancel order", callback_data=Callback.CANCEL_ORDER)],
        ]
    )


def success_keyboard(install_guide_url: str, again_callback: str) -> InlineKeyboardMarkup:
    rows: list[list[InlineKeyboardButton]] = []
    if install_guide_url:
        rows.append([InlineKeyboardButton(text="📁 Files & setup", url=install_guide_url)])
    rows.append(
        [
            InlineKeyboardButton(text="🔄 Again", callback_data=again_callback),
            InlineKeyboardButton(text="🎁 Redeem points", callback_data=Callback.REDEEM_POINTS),
        ]
    )
    rows.append([InlineKeyboardButton(text="🏠 Main menu", callback_data=Callback.MAIN_MENU)])
    return _inline_keyboard(rows)


def build_welcome(first_name: str | None, balance: int) -> str:
    name = escape(first_name or "there")
    return (
        f"👋 <b>Hi {name}!</b>\n\n"
        "Buy or extend your game license here and pay with QRIS.\n"
        f"🎁 Your points: <b>{balance}</b>"
    )


def build_points_message(balance: int, pricing: Pricing) -> str:
    return (
        "🎁 <b>YOUR POINTS</b>\n\n"
        f"Balance: <b>{balance} points</b>\n"
        f"Every license day costs <b>{pricing.points_per_day} points</b> to redeem."
    )


def build_help_message(balance: int, pricing: Pricing, order_timeout: int) -> str:
    return (
        "ℹ️ <b>HELP</b>\n\n"
        "1. Pick a game and a duration.\n"
        "2. Choose a random key or send your own as <code>/username-password</code>.\n"
        f"3. Pay the QRIS code within {order_timeout // 60} minutes.\n"
        "4. Your account is delivered automatically.\n\n"
        f"Purchases earn points; {pricing.points_per_day} points = 1 day.\n"
        f"Your points: <b>{balance}</b>"
    )


def build_manual_instruction() -> str:
    return "✍️ <b>SEND USERNAME & PASSWORD</b>\n\n" + CREDENTIAL_FORMAT_HINT


def build_extend_instruction(game_type: str) -> str:
    return (
        f"⏰ <b>EXTEND {game_title(game_type)}</b>\n\n"
        "Send the username and password of the account to extend.\n\n" + CREDENTIAL_FORMAT_HINT
    )


def build_payment_message(request: PaymentRequest, order_timeout: int, check_interval: int) -> str:
    order = request.order
    lines = [
        f"💳 <b>PAYMENT {game_title(order.game_type)} ({order.key_type.upper()})</b>\n",
        f"Duration: <b>{order.duration_days} Day</b>",
    ]
    if order.key_type in {KeyType.MANUAL, KeyType.EXTEND} and order.manual_username:
        lines.append(f"Username: <code>{escape(order.manual_username)}</code>")
    if request.previous_expiry is not None:
        lines.append(f"Current expiry: <b>{format_date(request.previous_expiry)} WIB</b>")
    lines.extend(
        [
            f"Price: <b>{format_currency(order.amount)}</b>",
            f"Order ID: <code>{order.order_id}</code>\n",
            "📱 Scan the QR code and pay the exact amount.",
            f"⏰ Time limit: <b>{order_timeout // 60} minutes</b>",
            f"🔄 Checked automatically every {check_interval} seconds",
            f"Expires: {escape(request.deposit.expires_at)}",
        ]
    )
    return "\n".join(lines)


def build_pending_message(remaining_seconds: int) -> str:
    return (
        "⏳ <b>Payment status: PENDING</b>\n\n"
        f"Time left: <b>{format_remaining(remaining_seconds)}</b>\n"
        "Finish the payment and check again."
    )


def build_license_message(fulfillment: Fulfillment) -> str:
    order = fulfillment.order
    record = fulfillment.license
    return (
        "🎉 <b>PAYMENT SUCCESSFUL!</b>\n\n"
        f"Game: <b>{game_title(order.game_type)}</b>\n"
        f"Duration: <b>{order.duration_days} Day</b>\n"
        f"Key type: <b>{order.key_type.upper()}</b>\n\n"
        f"Username: <code>{escape(record.username)}</code>\n"
        f"Password: <code>{escape(record.password)}</code>\n"
        f"Valid until: <b>{format_date(record.exp_date)} WIB</b>\n\n"
        f"🎁 You earned <b>{fulfillment.points_earned} points</b>, total <b>{fulfillment.balance} points</b>"
    )


def build_extend_message(fulfillment: Fulfillment) -> str:
    order = fulfillment.order
    record = fulfillment.license
    previous = format_date(fulfillment.previous_expiry) if fulfillment.previous_expiry else "-"
    return (
        "🎉 <b>EXTEND SUCCESSFUL!</b>\n\n"
        f"Game: <b>{game_title(order.game_type)}</b>\n"
        f"Username: <code>{escape(record.username)}</code>\n"
        f"Added: <b>{order.duration_days} Day</b>\n"
        f"Old expiry: <b>{previous} WIB</b>\n"
        f"New expiry: <b>{format_date(record.exp_date)} WIB</b>\n\n"
        f"🎁 You earned <b>{fulfillment.points_earned} points</b>, total <b>{fulfillment.balance} points</b>"
    )


def build_admin_fulfillment(fulfillment: Fulfillment, when: datetime | None = None) -> str:
    order = fulfillment.order
    record = fulfillment.license
    title = "⏰ <b>EXTEND</b>" if order.key_type == KeyType.EXTEND else "💰 <b>PURCHASE</b>"
    return (
        f"{title}\n\n"
        f"User ID: <code>{order.chat_id}</code>\n"
        f"Game: <b>{game_title(order.game_type)}</b>\n"
        f"Duration: <b>{order.duration_days} Day</b>\n"
        f"Key type: <b>{order.key_type.upper()}</b>\n"
        f"Username: <code>{escape(record.username)}</code>\n"
        f"Points: <b>{fulfillment.points_earned}</b>\n"
        f"Expiry: <b>{format_date(record.exp_date)} WIB</b>\n"
        f"Time: {format_date(when or utcnow())}"
    )


def build_redeem_message(redemption: Redemption) -> str:
    record = redemption.license
    return (
        "🎉 <b>POINTS REDEEMED!</b>\n\n"
        f"Game: <b>{game_title(record.game_type)}</b>\n"
        f"Duration: <b>{redemption.days} Day</b>\n"
        f"Username: <code>{escape(record.username)}</code>\n"
        f"Password: <code>{escape(record.password)}</code>\n"
        f"Valid until: <b>{format_date(record.exp_date)} WIB</b>\n\n"
        f"Spent <b>{redemption.cost} points</b>, left <b>{redemption.balance} points</b>"
    )


def build_admin_redeem(chat_id: int, redemption: Redemption) -> str:
    record = redemption.license
    return (
        "🎁 <b>POINT REDEMPTION</b>\n\n"
        f"User ID: <code>{chat_id}</code>\n"
        f"Game: <b>{game_title(record.game_type)}</b>\n"
        f"Duration: <b>{redemption.days} Day</b>\n"
        f"Username: <code>{escape(record.username)}</code>\n"
        f"Points: <b>-{redemption.cost}</b>"
    )


def build_extend_match(record: LicenseRecord) -> str:
    return (
        "✅ <b>ACCOUNT FOUND</b>\n\n"
        f"Game: <b>{game_title(record.game_type)}</b>\n"
        f"Username: <code>{escape(record.username)}</code>\n"
        f"Current expiry: <b>{format_date(record.exp_date)} WIB</b>\n\n"
        "Choose how many days to add:"
    )
