"""
Основной модуль бота - обработчики команд и кнопок (aiogram 3)
"""
import asyncio
import logging
from typing import Optional, Set

import uvicorn
from aiogram import Bot, Dispatcher, F, types
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.client.telegram import TelegramAPIServer
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.filters import Command, CommandObject
from aiogram.types import CallbackQuery, ErrorEvent, InlineKeyboardButton, InlineKeyboardMarkup

from src.bot import messages
from src.bot.relay import TelegramRelay
from src.config import (
    ADMIN_ID,
    BOT_API_URL,
    BOT_TOKEN,
    CASHI_WEBHOOK_SECRET,
    DAILY_BONUS,
    EXTRACTOR,
    LOG_FORMAT,
    LOG_LEVEL,
    WEBHOOK_PORT,
)
from src.database.redis_db import Database
from src.downloader import BatchManager, DownloadManager, MediaFetcher
from src.errors import LedgerPersistenceError, PaymentError
from src.models.batch import BatchConfirmStatus
from src.services import LinkProcessingService, PaymentService, QuotaLedger, ServiceFactory, broadcast
from src.services.payment_service import Settlement, format_price
from src.utils import extract_urls
from src.webhook import create_app

logger = logging.getLogger(__name__)

dp = Dispatcher()

# Сервисы создаются в main() (или подставляются в тестах через setup())
bot: Optional[Bot] = None
relay: Optional[TelegramRelay] = None
ledger: Optional[QuotaLedger] = None
link_processing_service: Optional[LinkProcessingService] = None
download_manager: Optional[DownloadManager] = None
batch_manager: Optional[BatchManager] = None
payment_service: Optional[PaymentService] = None

# Пользователи, нажавшие "Скачать видео" и ждущие ссылку
awaiting_url: Set[int] = set()


def setup(bot_instance, relay_, ledger_, link_processing_service_, download_manager_, batch_manager_,
          payment_service_):
    """Подключить сервисы к обработчикам"""
    global bot, relay, ledger, link_processing_service, download_manager, batch_manager, payment_service
    bot = bot_instance
    relay = relay_
    ledger = ledger_
    link_processing_service = link_processing_service_
    download_manager = download_manager_
    batch_manager = batch_manager_
    payment_service = payment_service_


def is_admin(user_id) -> bool:
    return bool(ADMIN_ID) and str(user_id) == str(ADMIN_ID)


# ========== Клавиатуры ==========

def main_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="📥 Скачать видео", callback_data="download")],
        [
            InlineKeyboardButton(text="💰 Моя квота", callback_data="show_quota"),
            InlineKeyboardButton(text="🎁 Бонус", callback_data="claim_bonus"),
        ],
        [
            InlineKeyboardButton(text="💳 Пополнить", callback_data="show_topup"),
            InlineKeyboardButton(text="ℹ️ Помощь", callback_data="show_help"),
        ],
    ])


def back_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="🏠 Главное меню", callback_data="back_to_start")],
    ])


def topup_keyboard() -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(text=f"{package.label} - {format_price(package.price)}",
                              callback_data=f"buy_{package.id}")]
        for package in payment_service.get_packages()
    ]
    rows.append([InlineKeyboardButton(text="🏠 Главное меню", callback_data="back_to_start")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def no_quota_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="🎁 Бонус", callback_data="claim_bonus"),
            InlineKeyboardButton(text="💳 Пополнить", callback_data="show_topup"),
        ],
    ])


# ========== Сценарии ==========

async def send_error(chat_id: int, reason: str = 'generic'):
    """Отправить шаблон ошибки"""
    await bot.send_message(chat_id, messages.error_text(reason))


async def start_single_download(chat_id: int, user_id: int, url: str):
    """Поставить одну ссылку в очередь и ответить по результату приема"""
    response = await download_manager.request_download(user_id, chat_id, url)

    if response.is_queued():
        return
    if response.is_insufficient_quota():
        await bot.send_message(
            chat_id, messages.insufficient_quota(response.balance, response.required),
            reply_markup=no_quota_keyboard(),
        )
    elif response.is_cooldown():
        await bot.send_message(chat_id, messages.cooldown(response.retry_after))
    elif response.is_unsupported():
        await bot.send_message(chat_id, messages.UNSUPPORTED_URL)
    else:
        logger.warning(f"Неожиданный статус DownloadResponse: {response.status}")
        await send_error(chat_id)


async def propose_batch(chat_id: int, user_id: int, urls):
    """Предложить пакетную загрузку с кнопкой подтверждения"""
    proposal = await batch_manager.propose(user_id, urls)
    if not proposal.affordable:
        await bot.send_message(
            chat_id, messages.batch_insufficient(len(urls), proposal.total_cost, proposal.balance),
            reply_markup=no_quota_keyboard(),
        )
        return

    batch_id = proposal.batch.batch_id
    keyboard = InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="✅ Скачать все", callback_data=f"batch_confirm_{batch_id}"),
            InlineKeyboardButton(text="❌ Отмена", callback_data=f"batch_cancel_{batch_id}"),
        ],
    ])
    await bot.send_message(
        chat_id, messages.batch_proposal(len(urls), proposal.total_cost, proposal.balance), reply_markup=keyboard
    )


async def handle_urls(message: types.Message, text: str):
    """Найти ссылки в тексте: одна - в очередь, несколько - предложить пакет"""
    user_id = message.from_user.id if message.from_user else message.chat.id
    awaiting_url.discard(user_id)

    urls = extract_urls(text)
    if not urls:
        await message.answer(messages.NO_URLS_FOUND)
        return

    supported = [url for url in urls if link_processing_service.is_supported_url(url)]
    if not supported:
        await message.answer(messages.UNSUPPORTED_URL)
        return

    try:
        if len(supported) == 1:
            await start_single_download(message.chat.id, user_id, supported[0])
        else:
            await propose_batch(message.chat.id, user_id, supported)
    except LedgerPersistenceError as e:
        logger.error(f"Ошибка хранилища квоты: {e}", exc_info=True)
        await send_error(message.chat.id)


async def notify_payment(settlement: Settlement):
    """Уведомить пользователя о зачислении оплаты (вызывается из webhook)"""
    await relay.send_message(int(settlement.user_id), messages.payment_settled(settlement.quota, settlement.new_balance))


async def safe_edit(callback: CallbackQuery, text: str, reply_markup=None):
    """Отредактировать сообщение с кнопкой, а если нельзя - отправить новое"""
    try:
        await callback.message.edit_text(text, reply_markup=reply_markup)
    except TelegramBadRequest as e:
        logger.debug(f"Сообщение не отредактировано: {e}")
        await bot.send_message(callback.from_user.id, text, reply_markup=reply_markup)


# ========== Команды ==========

@dp.message(Command("start"))
async def start_handler(message: types.Message):
    """Обработка команды /start"""
    user_id = message.from_user.id if message.from_user else message.chat.id
    awaiting_url.discard(user_id)
    try:
        account = await ledger.get_account(user_id)
        first_name = message.from_user.first_name if message.from_user else ''
        await message.answer(
            messages.welcome(first_name, account.balance, ledger.download_cost), reply_markup=main_keyboard()
        )
    except LedgerPersistenceError as e:
        logger.error(f"Ошибка при обработке /start: {e}", exc_info=True)
        await send_error(message.chat.id)


@dp.message(Command("help"))
async def help_handler(message: types.Message):
    await message.answer(messages.help_text(ledger.download_cost, DAILY_BONUS), reply_markup=back_keyboard())


@dp.message(Command("quota"))
async def quota_handler(message: types.Message):
    """Обработка команды /quota"""
    account = await ledger.get_account(message.from_user.id)
    await message.answer(messages.quota_info(account, ledger.download_cost), reply_markup=no_quota_keyboard())


@dp.message(Command("history"))
async def history_handler(message: types.Message):
    transactions = ledger.get_transaction_history(message.from_user.id, limit=10)
    await message.answer(messages.history(transactions))


@dp.message(Command("bonus"))
async def bonus_handler(message: types.Message):
    """Обработка команды /bonus"""
    claim = await ledger.claim_daily_bonus(message.from_user.id)
    if claim.granted:
        await message.answer(messages.bonus_granted(claim.amount, claim.new_balance))
    else:
        await message.answer(messages.bonus_not_ready(claim.next_claim_in_hours))


@dp.message(Command("topup"))
async def topup_handler(message: types.Message):
    """Обработка команды /topup"""
    if not payment_service.enabled:
        await message.answer(messages.TOPUP_DISABLED)
        return
    balance = await ledger.get_balance(message.from_user.id)
    await message.answer(messages.topup_menu(balance), reply_markup=topup_keyboard())


@dp.message(Command("queue"))
async def queue_handler(message: types.Message):
    await message.answer(messages.queue_status(download_manager.get_queue_status()))


@dp.message(Command("download"))
async def download_command_handler(message: types.Message, command: CommandObject):
    """/download <ссылка> - скачать; без ссылки - ждать ссылку следующим сообщением"""
    if not command.args:
        awaiting_url.add(message.from_user.id)
        await message.answer(messages.ASK_FOR_URL)
        return
    await handle_urls(message, command.args)


@dp.message(Command("cancel"))
async def cancel_handler(message: types.Message):
    awaiting_url.discard(message.from_user.id)
    await message.answer(messages.CANCELLED, reply_markup=main_keyboard())


# ========== Админ-команды ==========

@dp.message(Command("addquota"))
async def addquota_handler(message: types.Message, command: CommandObject):
    """/addquota <user_id> <amount> - ручное начисление"""
    if not is_admin(message.from_user.id):
        return

    parts = (command.args or '').split()
    if len(parts) != 2 or not parts[1].isdigit() or int(parts[1]) <= 0:
        await message.answer("Использование: /addquota &lt;user_id&gt; &lt;amount&gt;")
        return

    target_id, amount = parts[0], int(parts[1])
    new_balance = await ledger.credit(target_id, amount, f"Начисление администратором (+{amount})")
    await message.answer(f"✅ Начислено {amount} квоты пользователю {target_id}. Баланс: {new_balance}")
    try:
        await relay.send_message(target_id, f"🎁 Вам начислено {amount} квоты!\n💰 Баланс: {new_balance}")
    except TelegramAPIError as e:
        logger.warning(f"Не удалось уведомить пользователя {target_id}: {e}")


@dp.message(Command("broadcast"))
async def broadcast_handler(message: types.Message, command: CommandObject):
    """/broadcast <текст> - рассылка всем пользователям"""
    if not is_admin(message.from_user.id):
        return
    if not command.args:
        await message.answer("Использование: /broadcast &lt;текст&gt;")
        return

    user_ids = ledger.known_user_ids()
    await message.answer(f"📢 Начинаю рассылку: {len(user_ids)} пользователей...")
    result = await broadcast(relay, user_ids, command.args)
    await message.answer(f"📢 Рассылка завершена.\n✅ Отправлено: {result.sent}\n❌ Ошибок: {result.failed}")


@dp.message(Command("stats"))
async def stats_handler(message: types.Message):
    """Обработка команды /stats"""
    if not is_admin(message.from_user.id):
        return
    await message.answer(messages.stats(ledger.get_stats(), download_manager.get_queue_status()))


# ========== Текст ==========

@dp.message(F.text)
async def message_handler(message: types.Message):
    """Обработка текстовых сообщений со ссылками"""
    await handle_urls(message, message.text.strip())


# ========== Кнопки ==========

@dp.callback_query(F.data == "download")
async def callback_download_handler(callback: CallbackQuery):
    awaiting_url.add(callback.from_user.id)
    await callback.answer()
    keyboard = InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="❌ Отмена", callback_data="cancel_download")],
    ])
    await bot.send_message(callback.from_user.id, messages.ASK_FOR_URL, reply_markup=keyboard)


@dp.callback_query(F.data == "cancel_download")
async def callback_cancel_download_handler(callback: CallbackQuery):
    awaiting_url.discard(callback.from_user.id)
    await callback.answer()
    await safe_edit(callback, messages.CANCELLED, reply_markup=back_keyboard())


@dp.callback_query(F.data == "back_to_start")
async def callback_back_handler(callback: CallbackQuery):
    awaiting_url.discard(callback.from_user.id)
    await callback.answer()
    account = await ledger.get_account(callback.from_user.id)
    await safe_edit(
        callback,
        messages.welcome(callback.from_user.first_name, account.balance, ledger.download_cost),
        reply_markup=main_keyboard(),
    )


@dp.callback_query(F.data == "show_quota")
async def callback_quota_handler(callback: CallbackQuery):
    await callback.answer()
    account = await ledger.get_account(callback.from_user.id)
    await safe_edit(callback, messages.quota_info(account, ledger.download_cost), reply_markup=back_keyboard())


@dp.callback_query(F.data == "show_help")
async def callback_help_handler(callback: CallbackQuery):
    await callback.answer()
    await safe_edit(callback, messages.help_text(ledger.download_cost, DAILY_BONUS), reply_markup=back_keyboard())


@dp.callback_query(F.data == "claim_bonus")
async def callback_bonus_handler(callback: CallbackQuery):
    claim = await ledger.claim_daily_bonus(callback.from_user.id)
    if claim.granted:
        await callback.answer(f"🎁 +{claim.amount} квоты!")
        await bot.send_message(callback.from_user.id, messages.bonus_granted(claim.amount, claim.new_balance))
    else:
        await callback.answer(messages.bonus_not_ready(claim.next_claim_in_hours), show_alert=True)


@dp.callback_query(F.data == "show_topup")
async def callback_topup_handler(callback: CallbackQuery):
    await callback.answer()
    if not payment_service.enabled:
        await safe_edit(callback, messages.TOPUP_DISABLED, reply_markup=back_keyboard())
        return
    balance = await ledger.get_balance(callback.from_user.id)
    await safe_edit(callback, messages.topup_menu(balance), reply_markup=topup_keyboard())


@dp.callback_query(F.data.startswith("buy_"))
async def callback_buy_handler(callback: CallbackQuery):
    """Создать заказ на выбранный пакет"""
    package_id = callback.data[len("buy_"):]
    await callback.answer("⏳ Создаю заказ...")
    try:
        order = await payment_service.create_order(callback.from_user.id, package_id)
    except PaymentError as e:
        logger.error(f"[payment] Заказ не создан: {e}")
        await bot.send_message(callback.from_user.id, messages.PAYMENT_FAILED)
        return

    rows = []
    if order.get('checkoutUrl'):
        rows.append([InlineKeyboardButton(text="💳 Оплатить", url=order['checkoutUrl'])])
    if order.get('qrUrl'):
        rows.append([InlineKeyboardButton(text="📷 QR-код", url=order['qrUrl'])])
    rows.append([InlineKeyboardButton(text="🔄 Проверить оплату", callback_data=f"check_payment_{order['orderId']}")])
    await bot.send_message(
        callback.from_user.id,
        messages.payment_order(order, format_price(order['amount'])),
        reply_markup=InlineKeyboardMarkup(inline_keyboard=rows),
    )


@dp.callback_query(F.data.startswith("check_payment_"))
async def callback_check_payment_handler(callback: CallbackQuery):
    """Проверить оплату вручную (если webhook еще не пришел)"""
    order_id = callback.data[len("check_payment_"):]
    order = await payment_service.get_order(order_id)
    if not order or order.get('userId') != str(callback.from_user.id):
        await callback.answer(messages.PAYMENT_NOT_FOUND, show_alert=True)
        return
    if order.get('status') == 'SETTLED':
        await callback.answer(messages.PAYMENT_ALREADY_SETTLED, show_alert=True)
        return

    status = await payment_service.check_status(order_id)
    if status['status'] != 'SETTLED':
        await callback.answer(messages.payment_pending(status['status']), show_alert=True)
        return

    settlement = await payment_service.settle(order_id)
    await callback.answer()
    if settlement:
        await bot.send_message(
            callback.from_user.id, messages.payment_settled(settlement.quota, settlement.new_balance)
        )
    else:
        await bot.send_message(callback.from_user.id, messages.PAYMENT_ALREADY_SETTLED)


@dp.callback_query(F.data.startswith("batch_confirm_"))
async def callback_batch_confirm_handler(callback: CallbackQuery):
    """Подтверждение пакетной загрузки"""
    batch_id = callback.data[len("batch_confirm_"):]
    status, _ = await batch_manager.confirm(batch_id, callback.from_user.id, callback.message.chat.id)

    if status == BatchConfirmStatus.STARTED:
        await callback.answer("🚀 Начинаю!")
        await safe_edit(callback, "✅ Пакет подтвержден.")
    elif status == BatchConfirmStatus.FORBIDDEN:
        await callback.answer(messages.BATCH_FORBIDDEN, show_alert=True)
    elif status == BatchConfirmStatus.INSUFFICIENT_QUOTA:
        await callback.answer()
        balance = await ledger.get_balance(callback.from_user.id)
        await safe_edit(
            callback, messages.insufficient_quota(balance, ledger.download_cost), reply_markup=no_quota_keyboard()
        )
    else:
        await callback.answer()
        await safe_edit(callback, messages.BATCH_EXPIRED)


@dp.callback_query(F.data.startswith("batch_cancel_"))
async def callback_batch_cancel_handler(callback: CallbackQuery):
    batch_id = callback.data[len("batch_cancel_"):]
    batch_manager.cancel(batch_id, callback.from_user.id)
    await callback.answer()
    await safe_edit(callback, messages.CANCELLED, reply_markup=back_keyboard())


# ========== Ошибки ==========

@dp.error()
async def error_handler(event: ErrorEvent):
    """Необработанная ошибка в обработчике: лог с трейсбеком и шаблон пользователю"""
    logger.error(f"Ошибка при обработке обновления: {event.exception}", exc_info=event.exception)
    update = event.update
    chat_id = None
    if update.message:
        chat_id = update.message.chat.id
    elif update.callback_query:
        chat_id = update.callback_query.from_user.id
    if chat_id is None:
        return
    try:
        await send_error(chat_id)
    except TelegramAPIError as e:
        logger.warning(f"Не удалось отправить сообщение об ошибке: {e}")


# ========== Запуск ==========

def create_bot() -> Bot:
    """Bot с увеличенным таймаутом для больших файлов и (опционально) локальным Bot API сервером"""
    if not BOT_TOKEN:
        raise ValueError("BOT_TOKEN не найден в .env файле! Создайте .env файл с BOT_TOKEN=ваш_токен")
    if BOT_API_URL:
        session = AiohttpSession(api=TelegramAPIServer.from_base(BOT_API_URL, is_local=True), timeout=600)
        logger.info(f"Используется локальный Bot API сервер: {BOT_API_URL}")
    else:
        session = AiohttpSession(timeout=600)
    return Bot(token=BOT_TOKEN, session=session, default=DefaultBotProperties(parse_mode=ParseMode.HTML))


async def main():
    """Запуск бота (и webhook оплаты, если платежи настроены)"""
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    bot_instance = create_bot()
    db = Database()
    quota_ledger = QuotaLedger(db)
    await quota_ledger.load()

    extractor = ServiceFactory().create(EXTRACTOR)
    if not await extractor.init():
        logger.warning(f"Экстрактор {extractor.name} не готов, повторная попытка при первом запросе")

    telegram_relay = TelegramRelay(bot_instance)
    fetcher = MediaFetcher()
    links = LinkProcessingService()
    downloads = DownloadManager(extractor, fetcher, telegram_relay, quota_ledger, links)
    batches = BatchManager(extractor, fetcher, telegram_relay, quota_ledger, links)
    payments = PaymentService(db, quota_ledger)
    setup(bot_instance, telegram_relay, quota_ledger, links, downloads, batches, payments)

    webhook_server = None
    webhook_task = None
    if payments.enabled:
        app = create_app(payments, notify_payment, CASHI_WEBHOOK_SECRET)
        config = uvicorn.Config(app, host="0.0.0.0", port=WEBHOOK_PORT, log_level=LOG_LEVEL.lower())
        webhook_server = uvicorn.Server(config)
        webhook_task = asyncio.create_task(webhook_server.serve())
        logger.info(f"💳 Webhook оплаты слушает порт {WEBHOOK_PORT}: /webhook/cashi")

    try:
        logger.info(f"Бот запущен! Экстрактор: {extractor.name}")
        await dp.start_polling(bot_instance)
    finally:
        if webhook_server is not None:
            webhook_server.should_exit = True
            await webhook_task
        await batches.close()
        await downloads.close()
        await extractor.close()
        await db.close()
        await bot_instance.session.close()
        logger.info("Бот остановлен")
