from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from html import escape
from typing import Any

from aiogram import Bot, Dispatcher, F, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command, CommandStart
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, Message
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Config, load_config
from .constants import Callback, KeyType
from .db import Database
from .errors import (
    CredentialConflict,
    GatewayUnavailable,
    InsufficientPoints,
    KeyshopError,
    MalformedInput,
    SessionExpired,
    UnknownDuration,
)
from .flows import ExtendMismatch, PaymentRequest, ShopService
from .helpers import (
    parse_duration_callback,
    parse_keytype_callback,
    parse_redeem_callback,
    parse_suffix_days,
    parse_suffix_game,
    utcnow,
)
from .licenses import LicenseStore
from .messages import (
    CREDENTIAL_FORMAT_HINT,
    back_keyboard,
    build_admin_fulfillment,
    build_admin_redeem,
    build_extend_instruction,
    build_extend_match,
    build_extend_message,
    build_help_message,
    build_license_message,
    build_manual_instruction,
    build_payment_message,
    build_pending_message,
    build_points_message,
    build_redeem_message,
    build_welcome,
    duration_keyboard,
    extend_duration_keyboard,
    game_keyboard,
    key_type_keyboard,
    main_menu_keyboard,
    payment_keyboard,
    redeem_keyboard,
    success_keyboard,
)
from .orders import OrderStore
from .points import PointsLedger
from .qris_pay import QrisClient
from .reconciler import Fulfillment, Outcome, PaymentReconciler, ReconcileResult
from .session_store import AwaitingExtendCredentials, AwaitingManualCredentials, ConversationStore

router = Router()


@dataclass(slots=True)
class Services:
    config: Config
    db: Database
    orders: OrderStore
    ledger: PointsLedger
    conversations: ConversationStore
    reconciler: PaymentReconciler
    shop: ShopService


def build_services(config: Config) -> Services:
    db = Database(config.database_url)
    orders = OrderStore(db)
    licenses = LicenseStore(db, reference=config.merchant_code)
    ledger = PointsLedger(db)
    conversations = ConversationStore(db)
    gateway = QrisClient(config.qris_api_key, config.qris_api_base, timeout=config.qris_timeout)
    reconciler = PaymentReconciler(db, orders, licenses, ledger, gateway, config.pricing, config.timeouts)
    shop = ShopService(db, orders, licenses, ledger, conversations, gateway, reconciler, config.pricing)
    return Services(
        config=config,
        db=db,
        orders=orders,
        ledger=ledger,
        conversations=conversations,
        reconciler=reconciler,
        shop=shop,
    )


def _callback_message(callback: CallbackQuery) -> Message | None:
    return callback.message if isinstance(callback.message, Message) else None


def _chat_id(callback: CallbackQuery) -> int:
    message = _callback_message(callback)
    return message.chat.id if message is not None else callback.from_user.id


def require_bot(obj: Message | CallbackQuery) -> Bot:
    bot = obj.bot
    if bot is None:
        raise RuntimeError("Bot is not attached")
    return bot


async def edit_or_reply(callback: CallbackQuery, text: str, keyboard: InlineKeyboardMarkup | None = None) -> None:
    message = _callback_message(callback)
    if message is not None:
        try:
            if message.photo:
                await message.edit_caption(caption=text, reply_markup=keyboard)
            else:
                await message.edit_text(text, reply_markup=keyboard)
            return
        except TelegramBadRequest:
            pass
        await message.answer(text, reply_markup=keyboard)
        return
    await require_bot(callback).send_message(callback.from_user.id, text, reply_markup=keyboard)


async def send_photo_or_text(
    bot: Bot,
    chat_id: int,
    photo: str,
    caption: str,
    keyboard: InlineKeyboardMarkup | None = None,
) -> None:
    if photo:
        try:
            await bot.send_photo(chat_id, photo=photo, caption=caption, reply_markup=keyboard)
            return
        except TelegramBadRequest:
            logging.warning("Photo send failed for chat %s, falling back to text", chat_id)
    await bot.send_message(chat_id, caption, reply_markup=keyboard)


async def notify_admin(bot: Bot, config: Config, text: str) -> None:
    try:
        await bot.send_message(config.admin_chat_id, text)
    except Exception:
        logging.exception("Failed to notify admin")


async def notify_fulfillment(bot: Bot, config: Config, fulfillment: Fulfillment) -> None:
    order = fulfillment.order
    if order.key_type == KeyType.EXTEND:
        text = build_extend_message(fulfillment)
        keyboard = success_keyboard(config.install_guide_url, Callback.EXTEND_USER)
    else:
        text = build_license_message(fulfillment)
        keyboard = success_keyboard(config.install_guide_url, Callback.NEW_ORDER)
    try:
        await send_photo_or_text(bot, order.chat_id, config.welcome_image, text, keyboard)
    except Exception:
        logging.exception("Failed to send license to chat %s", order.chat_id)
    await notify_admin(bot, config, build_admin_fulfillment(fulfillment))


async def send_payment_request(
    bot: Bot,
    chat_id: int,
    services: Services,
    request: PaymentRequest,
    check_callback: str,
) -> None:
    timeouts = services.config.timeouts
    text = build_payment_message(request, timeouts.order_timeout, timeouts.payment_check_interval)
    await send_photo_or_text(bot, chat_id, request.deposit.qr_url, text, payment_keyboard(check_callback))


async def show_main_menu(event: Message | CallbackQuery, services: Services) -> None:
    user = event.from_user
    chat_id = event.chat.id if isinstance(event, Message) else _chat_id(event)
    balance = await services.shop.points(chat_id)
    text = build_welcome(user.first_name if user else None, balance)
    if isinstance(event, CallbackQuery):
        await edit_or_reply(event, text, main_menu_keyboard())
        return
    await send_photo_or_text(require_bot(event), chat_id, services.config.welcome_image, text, main_menu_keyboard())


@router.message(CommandStart())
async def on_start(message: Message, services: Services) -> None:
    await services.shop.reset(message.chat.id)
    await show_main_menu(message, services)


@router.message(Command("menu"))
async def on_menu(message: Message, services: Services) -> None:
    await services.shop.reset(message.chat.id)
    await show_main_menu(message, services)


@router.message(Command("points"))
async def on_points(message: Message, services: Services) -> None:
    balance = await services.shop.points(message.chat.id)
    await message.answer(
        build_points_message(balance, services.config.pricing),
        reply_markup=redeem_keyboard(services.config.pricing),
    )


async def handle_manual_credentials(message: Message, services: Services, text: str) -> None:
    chat_id = message.chat.id
    try:
        request = await services.shop.submit_manual_credentials(chat_id, text)
    except MalformedInput:
        await message.answer("❌ <b>Invalid format!</b>\n\n" + CREDENTIAL_FORMAT_HINT, reply_markup=back_keyboard(Callback.NEW_ORDER))
        return
    except CredentialConflict as exc:
        await message.answer(
            f"❌ <b>Username <code>{escape(exc.username or '')}</code> is already taken.</b>\n\nPick another one.\n\n"
            + CREDENTIAL_FORMAT_HINT,
            reply_markup=back_keyboard(Callback.NEW_ORDER),
        )
        return
    except GatewayUnavailable:
        logging.exception("Payment create error for chat %s", chat_id)
        await message.answer("❌ Could not create the payment. Please try again.", reply_markup=back_keyboard(Callback.NEW_ORDER))
        return
    await send_payment_request(require_bot(message), chat_id, services, request, Callback.CHECK_PAYMENT)


async def handle_extend_credentials(message: Message, services: Services, text: str) -> None:
    chat_id = message.chat.id
    try:
        result = await services.shop.submit_extend_credentials(chat_id, text)
    except MalformedInput:
        await message.answer("❌ <b>Invalid format!</b>\n\n" + CREDENTIAL_FORMAT_HINT, reply_markup=back_keyboard(Callback.EXTEND_USER))
        return

    if isinstance(result, ExtendMismatch):
        if result.cleared:
            await message.answer(
                "❌ <b>Username and password do not match.</b>\n\n⚠️ Two failed attempts, please start over.",
                reply_markup=back_keyboard(),
            )
        else:
            await message.answer(
                "❌ <b>Username and password do not match.</b>\n\nTry again:\n\n" + CREDENTIAL_FORMAT_HINT,
                reply_markup=back_keyboard(Callback.EXTEND_USER),
            )
        return

    await message.answer(
        build_extend_match(result.license),
        reply_markup=extend_duration_keyboard(services.config.pricing, result.state.game_type),
    )


@router.message(F.text)
async def on_text(message: Message, services: Services) -> None:
    stored = await services.shop.state(message.chat.id)
    if stored is None:
        return
    text = message.text or ""
    if isinstance(stored.state, AwaitingManualCredentials):
        await handle_manual_credentials(message, services, text)
    elif isinstance(stored.state, AwaitingExtendCredentials):
        await handle_extend_credentials(message, services, text)


@router.callback_query(F.data == Callback.MAIN_MENU)
async def on_main_menu(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    await services.shop.reset(_chat_id(callback))
    await show_main_menu(callback, services)


@router.callback_query(F.data == Callback.NEW_ORDER)
async def on_new_order(callback: CallbackQuery) -> None:
    await callback.answer()
    await edit_or_reply(callback, "🎮 <b>CHOOSE GAME</b>", game_keyboard(Callback.TYPE_PREFIX))


@router.callback_query(F.data == Callback.EXTEND_USER)
async def on_extend_user(callback: CallbackQuery) -> None:
    await callback.answer()
    await edit_or_reply(callback, "⏰ <b>EXTEND: CHOOSE GAME</b>", game_keyboard(Callback.EXTEND_TYPE_PREFIX))


@router.callback_query(F.data == Callback.REDEEM_POINTS)
async def on_redeem_points(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    balance = await services.shop.points(_chat_id(callback))
    await edit_or_reply(
        callback,
        build_points_message(balance, services.config.pricing),
        redeem_keyboard(services.config.pricing),
    )


@router.callback_query(F.data == Callback.HELP)
async def on_help(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    balance = await services.shop.points(_chat_id(callback))
    await edit_or_reply(
        callback,
        build_help_message(balance, services.config.pricing, services.config.timeouts.order_timeout),
        main_menu_keyboard(),
    )


@router.callback_query(F.data.startswith(Callback.EXTEND_TYPE_PREFIX))
async def on_extend_type(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    game_type = parse_suffix_game(callback.data or "", Callback.EXTEND_TYPE_PREFIX)
    if game_type is None:
        await edit_or_reply(callback, "❌ Unknown game.", back_keyboard(Callback.EXTEND_USER))
        return
    await services.shop.begin_extend(_chat_id(callback), game_type)
    await edit_or_reply(callback, build_extend_instruction(game_type), back_keyboard(Callback.EXTEND_USER))


@router.callback_query(F.data.startswith(Callback.EXTEND_DURATION_PREFIX))
async def on_extend_duration(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    chat_id = _chat_id(callback)
    days = parse_suffix_days(callback.data or "", Callback.EXTEND_DURATION_PREFIX)
    if days is None:
        await edit_or_reply(callback, "❌ Unknown duration.", back_keyboard(Callback.EXTEND_USER))
        return
    try:
        request = await services.shop.start_extend_payment(chat_id, days)
    except SessionExpired:
        await edit_or_reply(callback, "❌ <b>Session expired!</b>\n\nPlease start again.", back_keyboard(Callback.EXTEND_USER))
        return
    except UnknownDuration:
        await edit_or_reply(callback, "❌ Unknown duration.", back_keyboard(Callback.EXTEND_USER))
        return
    except GatewayUnavailable:
        logging.exception("Extend payment create error for chat %s", chat_id)
        await edit_or_reply(callback, "❌ Could not create the extend payment. Please try again.", back_keyboard(Callback.EXTEND_USER))
        return
    await send_payment_request(require_bot(callback), chat_id, services, request, Callback.CHECK_EXTEND)


@router.callback_query(F.data.startswith(Callback.TYPE_PREFIX))
async def on_type(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    game_type = parse_suffix_game(callback.data or "", Callback.TYPE_PREFIX)
    if game_type is None:
        await edit_or_reply(callback, "❌ Unknown game.", back_keyboard(Callback.NEW_ORDER))
        return
    await edit_or_reply(callback, "📅 <b>CHOOSE DURATION</b>", duration_keyboard(services.config.pricing, game_type))


@router.callback_query(F.data.startswith(Callback.DURATION_PREFIX))
async def on_duration(callback: CallbackQuery) -> None:
    await callback.answer()
    parsed = parse_duration_callback(callback.data or "")
    if not parsed:
        await edit_or_reply(callback, "❌ Unknown duration.", back_keyboard(Callback.NEW_ORDER))
        return
    await edit_or_reply(
        callback,
        "🔑 <b>CHOOSE KEY TYPE</b>",
        key_type_keyboard(str(parsed["gameType"]), int(parsed["days"])),
    )


@router.callback_query(F.data.startswith(Callback.KEYTYPE_PREFIX))
async def on_keytype(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    chat_id = _chat_id(callback)
    parsed = parse_keytype_callback(callback.data or "")
    if not parsed:
        await edit_or_reply(callback, "❌ Unknown option.", back_keyboard(Callback.NEW_ORDER))
        return
    game_type = str(parsed["gameType"])
    days = int(parsed["days"])
    back = f"{Callback.TYPE_PREFIX}{game_type}"

    try:
        if parsed["keyType"] == KeyType.MANUAL:
            await services.shop.begin_manual_purchase(chat_id, game_type, days)
            await edit_or_reply(callback, build_manual_instruction(), back_keyboard(f"{Callback.DURATION_PREFIX}{game_type}_{days}"))
            return
        request = await services.shop.start_random_purchase(chat_id, game_type, days)
    except UnknownDuration:
        await edit_or_reply(callback, "❌ Unknown duration.", back_keyboard(back))
        return
    except GatewayUnavailable:
        logging.exception("Payment create error for chat %s", chat_id)
        await edit_or_reply(callback, "❌ Could not create the payment. Please try again.", back_keyboard(back))
        return
    await send_payment_request(require_bot(callback), chat_id, services, request, Callback.CHECK_PAYMENT)


@router.callback_query(F.data.startswith(Callback.REDEEM_PREFIX))
async def on_redeem(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    chat_id = _chat_id(callback)
    parsed = parse_redeem_callback(callback.data or "")
    if not parsed:
        await edit_or_reply(callback, "❌ Unknown option.", back_keyboard(Callback.REDEEM_POINTS))
        return

    try:
        if "days" in parsed:
            prompt = await services.shop.select_redeem_duration(chat_id, int(parsed["days"]))
            await edit_or_reply(
                callback,
                f"🎮 <b>CHOOSE GAME</b>\n\nRedeem <b>{prompt.days} Day</b> for <b>{prompt.cost} points</b>.\n"
                f"Your points: <b>{prompt.balance}</b>",
                game_keyboard(Callback.REDEEM_PREFIX, back=Callback.REDEEM_POINTS),
            )
            return
        redemption = await services.shop.complete_redemption(chat_id, str(parsed["gameType"]))
    except InsufficientPoints as exc:
        await edit_or_reply(
            callback,
            f"❌ <b>Not enough points!</b>\n\nNeeded: <b>{exc.needed} points</b>\nYours: <b>{exc.balance} points</b>",
            back_keyboard(Callback.REDEEM_POINTS),
        )
        return
    except UnknownDuration:
        await edit_or_reply(callback, "❌ This duration cannot be redeemed.", back_keyboard(Callback.REDEEM_POINTS))
        return
    except SessionExpired:
        await edit_or_reply(
            callback,
            "❌ <b>Session expired!</b>\n\nPlease start again from the redeem menu.",
            back_keyboard(Callback.REDEEM_POINTS),
        )
        return
    except CredentialConflict:
        await edit_or_reply(callback, "❌ <b>Could not generate a unique username.</b>\n\nPlease try again.", back_keyboard(Callback.REDEEM_POINTS))
        return

    config = services.config
    bot = require_bot(callback)
    try:
        await send_photo_or_text(
            bot,
            chat_id,
            config.welcome_image,
            build_redeem_message(redemption),
            success_keyboard(config.install_guide_url, Callback.REDEEM_POINTS),
        )
    except Exception:
        logging.exception("Failed to send redeemed license to chat %s", chat_id)
    await notify_admin(bot, config, build_admin_redeem(chat_id, redemption))


async def render_check_result(
    callback: CallbackQuery,
    services: Services,
    result: ReconcileResult,
    check_callback: str,
    back: str,
) -> None:
    if result.outcome == Outcome.COMPLETED and result.fulfillment is not None:
        await notify_fulfillment(require_bot(callback), services.config, result.fulfillment)
        return
    if result.outcome == Outcome.EXPIRED:
        minutes = services.config.timeouts.order_timeout // 60
        await edit_or_reply(
            callback,
            f"❌ <b>Order expired!</b>\n\nPayment was not made within {minutes} minutes.",
            back_keyboard(back),
        )
        return
    if result.outcome in {Outcome.PENDING, Outcome.CONFLICT}:
        await edit_or_reply(callback, build_pending_message(result.remaining_seconds), payment_keyboard(check_callback))
        return
    if result.outcome == Outcome.INCONSISTENT:
        await edit_or_reply(
            callback,
            "⚠️ <b>Payment received, but the account could not be updated.</b>\n\nPlease contact the admin.",
            back_keyboard(),
        )
        return
    await edit_or_reply(callback, "ℹ️ This order is already closed.", back_keyboard(back))


@router.callback_query(F.data.in_({Callback.CHECK_PAYMENT, Callback.CHECK_EXTEND}))
async def on_check_payment(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    extend_only = callback.data == Callback.CHECK_EXTEND
    back = Callback.EXTEND_USER if extend_only else Callback.NEW_ORDER
    result = await services.shop.check_payment(_chat_id(callback), extend_only=extend_only)
    if result is None:
        await edit_or_reply(callback, "❌ No pending order found.", back_keyboard(back))
        return
    await render_check_result(callback, services, result, callback.data or Callback.CHECK_PAYMENT, back)


@router.callback_query(F.data == Callback.CANCEL_ORDER)
async def on_cancel_order(callback: CallbackQuery, services: Services) -> None:
    await callback.answer()
    order = await services.shop.cancel_order(_chat_id(callback))
    if order is None:
        await edit_or_reply(callback, "❌ No pending order found.", back_keyboard())
        return
    await edit_or_reply(callback, "❌ Order cancelled.", back_keyboard())


@router.errors()
async def on_error(event: Any, services: Services) -> None:
    update = getattr(event, "update", None)
    exception = getattr(event, "exception", None)
    error = exception if isinstance(exception, Exception) else RuntimeError(str(exception))
    chat_id: int | None = None
    callback_data: str | None = None
    update_type = "unknown"

    if getattr(update, "callback_query", None):
        callback = update.callback_query
        callback_data = getattr(callback, "data", None)
        user = getattr(callback, "from_user", None)
        if user is not None:
            chat_id = user.id
            update_type = "callback_query"
    elif getattr(update, "message", None):
        msg = update.message
        chat_id = msg.chat.id
        update_type = "message"

    log = logging.error if isinstance(error, KeyshopError) else logging.exception
    log(
        "[BotError] updateType=%s chatId=%s callbackData=%s message=%s",
        update_type,
        chat_id,
        callback_data,
        str(error),
    )
    if chat_id is not None:
        await services.db.log_action(chat_id, "bot_error", f"{update_type}: {error}")
    return True


async def run_payment_sweep(bot: Bot, services: Services) -> None:
    async def on_fulfilled(fulfillment: Fulfillment) -> None:
        await notify_fulfillment(bot, services.config, fulfillment)

    report = await services.reconciler.sweep(on_fulfilled=on_fulfilled)
    logging.info("Payment sweep %s", report.as_dict())
    try:
        await services.orders.sweep_expired(utcnow(), services.config.timeouts.stale_order_timeout)
    except Exception:
        logging.exception("Stale order cleanup failed")


async def start() -> None:
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    services = build_services(config)
    await services.db.ensure_schema()
    bot = Bot(
        token=config.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dispatcher = Dispatcher()
    dispatcher["services"] = services
    dispatcher.include_router(router)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_payment_sweep,
        trigger=IntervalTrigger(seconds=config.timeouts.payment_check_interval),
        args=[bot, services],
        id="payment_sweep",
        name="Reconcile pending payments",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logging.info("Payment sweep scheduled every %s seconds", config.timeouts.payment_check_interval)
    try:
        await dispatcher.start_polling(bot, polling_timeout=config.polling_timeout)
    finally:
        scheduler.shutdown(wait=False)
        await services.db.dispose()


if __name__ == "__main__":
    asyncio.run(start())
