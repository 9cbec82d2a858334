"""
Тексты сообщений пользователю (HTML-разметка Telegram)

Сырые тексты ошибок пользователю не показываются, только шаблоны по ключу reason.
"""
from typing import List

from aiogram import html

from src.utils.utils import format_file_size

STATUS_SEARCHING = "🔍 Ищу видео..."
STATUS_DOWNLOADING = "📥 Скачиваю видео..."
STATUS_LINK_FALLBACK = "⚠️ Файл отправить не удалось, отправляю прямую ссылку..."

EXTRACTING_FRAMES = [
    "⏳ Извлекаю видео.",
    "⏳ Извлекаю видео..",
    "⏳ Извлекаю видео...",
]

UNSUPPORTED_URL = (
    "❌ Ссылка не поддерживается.\n\n"
    "Отправь ссылку на видео Doodstream (dood.*, ds2play, d000d и зеркала), "
    "Filemoon, Streamtape, Voe и похожих хостингов.\n"
    "Ссылки на альбомы (/a/...) не поддерживаются."
)

ASK_FOR_URL = "🔗 Отправь ссылку на видео (или несколько ссылок, каждую с новой строки)."
NO_URLS_FOUND = "🤔 Не нашел в сообщении поддерживаемых ссылок.\n\nНажми /help, чтобы узнать, что я умею."
CANCELLED = "❌ Отменено."

ERROR_TEXTS = {
    'content_removed': "❌ Видео удалено или не найдено.\n\nПроверь ссылку и попробуй другую.",
    'extraction_timeout': "⏱ Не удалось извлечь видео вовремя.\n\nСайт отвечает слишком медленно, попробуй позже.",
    'no_media_found': "❌ Не удалось найти видео на странице.\n\nВозможно, видео приватное или формат страницы изменился.",
    'source_unreachable': "❌ Сайт с видео недоступен.\n\nПопробуй позже или проверь ссылку.",
    'fetch_failed': "❌ Не удалось скачать файл.",
    'fetch_timeout': "⏱ Скачивание заняло слишком много времени.",
    'fetch_stalled': "❌ Скачивание остановилось: сервер перестал отдавать данные.",
    'relay_failed': "❌ Не удалось отправить видео.",
    'generic': "❌ Произошла ошибка при обработке видео. Попробуй позже.",
}

# Короткие причины для списка неудач в итоге пакета
SHORT_REASONS = {
    'content_removed': 'удалено',
    'extraction_timeout': 'таймаут извлечения',
    'no_media_found': 'видео не найдено',
    'source_unreachable': 'сайт недоступен',
    'fetch_failed': 'ошибка скачивания',
    'fetch_timeout': 'таймаут скачивания',
    'fetch_stalled': 'скачивание зависло',
    'relay_failed': 'не удалось отправить',
    'generic': 'ошибка',
}


def error_text(reason: str) -> str:
    return ERROR_TEXTS.get(reason, ERROR_TEXTS['generic'])


def short_reason(reason: str) -> str:
    return SHORT_REASONS.get(reason, SHORT_REASONS['generic'])


def queue_position(position: int) -> str:
    return f"📋 Ты в очереди: #{position}\n⏳ Пожалуйста, подожди..."


def uploading(size: int) -> str:
    return f"📤 Отправляю видео ({format_file_size(size)})..."


def file_caption(title: str, size: int) -> str:
    return f"🎬 {html.quote(title)}\n📦 {format_file_size(size)}"


def link_caption(title: str, size: int = 0) -> str:
    text = f"🎬 {html.quote(title)}\n\n🔗 Файл не удалось отправить, вот прямая ссылка на видео."
    if size:
        text += f"\n📦 Размер: {format_file_size(size)}"
    return text


def download_settled(balance: int, cost: int) -> str:
    return f"✅ Готово! Списано {cost} квоты.\n💰 Баланс: {balance}"


def insufficient_quota(balance: int, required: int) -> str:
    return (
        "❌ Недостаточно квоты.\n\n"
        f"💰 Баланс: {balance}\n"
        f"📥 Нужно: {required}\n\n"
        "Получи ежедневный бонус /bonus или пополни квоту /topup"
    )


def cooldown(seconds: int) -> str:
    return f"⏳ Подожди {seconds} сек. перед следующим скачиванием."


def welcome(first_name: str, balance: int, cost: int) -> str:
    return (
        f"👋 Привет, {html.quote(first_name or 'друг')}!\n\n"
        "Я скачиваю видео с Doodstream и похожих хостингов и присылаю файлом прямо в чат.\n\n"
        f"💰 Твой баланс: <b>{balance}</b> квоты\n"
        f"📥 Одно видео стоит {cost} квоты\n\n"
        "Просто отправь ссылку!"
    )


def help_text(cost: int, daily_bonus: int) -> str:
    return (
        "ℹ️ <b>Как пользоваться</b>\n\n"
        "1. Отправь ссылку на видео\n"
        "2. Дождись, пока я найду и скачаю файл\n"
        "3. Получи видео в чат\n\n"
        "Можно отправить несколько ссылок одним сообщением: я предложу скачать их пакетом.\n\n"
        f"💰 Одно видео: {cost} квоты\n"
        f"🎁 Ежедневный бонус: {daily_bonus} квоты (/bonus)\n\n"
        "<b>Команды</b>\n"
        "/quota - баланс\n"
        "/history - последние операции\n"
        "/bonus - ежедневный бонус\n"
        "/topup - пополнить квоту\n"
        "/queue - состояние очереди\n"
        "/download &lt;ссылка&gt; - скачать видео"
    )


def quota_info(account, cost: int) -> str:
    return (
        "💰 <b>Твоя квота</b>\n\n"
        f"Баланс: <b>{account.balance}</b>\n"
        f"Хватит на: {account.balance // cost if cost else 0} видео\n"
        f"Всего скачано: {account.total_downloads}\n"
        f"Всего начислено: {account.total_credited}"
    )


def history(transactions: List) -> str:
    if not transactions:
        return "📜 Операций пока нет."
    icons = {'debit': '➖', 'credit': '➕', 'bonus': '🎁'}
    lines = ["📜 <b>Последние операции</b>\n"]
    for txn in transactions:
        sign = '-' if txn.kind == 'debit' else '+'
        lines.append(
            f"{icons.get(txn.kind, '•')} {sign}{abs(txn.amount)} | {html.quote(txn.description)}\n"
            f"    <i>{txn.timestamp[:16].replace('T', ' ')}</i>"
        )
    return "\n".join(lines)


def bonus_granted(amount: int, balance: int) -> str:
    return f"🎁 Начислен ежедневный бонус: +{amount} квоты!\n💰 Баланс: {balance}"


def bonus_not_ready(hours: int) -> str:
    return f"⏳ Бонус уже получен сегодня. Следующий через ~{hours} ч."


def batch_proposal(count: int, total_cost: int, balance: int) -> str:
    return (
        f"📦 Найдено ссылок: <b>{count}</b>\n\n"
        f"💰 Стоимость: {total_cost} квоты\n"
        f"💳 Баланс: {balance}\n\n"
        "Квота списывается только за доставленные видео."
    )


def batch_insufficient(count: int, total_cost: int, balance: int) -> str:
    return (
        f"📦 Найдено ссылок: {count}\n\n"
        f"❌ Недостаточно квоты: нужно {total_cost}, на балансе {balance}.\n"
        "Пополни квоту /topup или отправь меньше ссылок."
    )


BATCH_EXPIRED = "⌛ Предложение устарело. Отправь ссылки еще раз."
BATCH_FORBIDDEN = "⛔ Это не твой пакет."


def batch_started(count: int) -> str:
    return f"🚀 Начинаю пакетную загрузку: {count} видео..."


def batch_progress(done: int, failed: int, pending: int, total: int) -> str:
    return (
        f"📦 Пакет: {done + failed}/{total}\n"
        f"✅ Скачано: {done}\n"
        f"❌ Ошибок: {failed}\n"
        f"⏳ В работе: {pending}"
    )


def batch_delivering(sent: int, total: int) -> str:
    return f"📤 Отправляю видео: {sent}/{total}..."


def batch_summary(report, balance: int) -> str:
    lines = [
        "📦 <b>Пакетная загрузка завершена</b>\n",
        f"✅ Успешно: {report.succeeded}/{report.total}",
        f"❌ Ошибок: {len(report.failed)}",
        f"💰 Списано: {report.quota_spent} квоты",
    ]
    if report.quota_saved:
        lines.append(f"💚 Сэкономлено: {report.quota_saved} квоты")
    lines.append(f"💳 Баланс: {balance}")
    if report.failed:
        lines.append("\n<b>Не удалось скачать:</b>")
        for url, reason in report.failed:
            lines.append(f"• {html.quote(url)} ({short_reason(reason)})")
    return "\n".join(lines)


def topup_menu(balance: int) -> str:
    return (
        "💳 <b>Пополнение квоты</b>\n\n"
        f"💰 Баланс: {balance}\n\n"
        "Выбери пакет, оплата через QRIS:"
    )


TOPUP_DISABLED = "💳 Пополнение временно недоступно."
PAYMENT_FAILED = "❌ Не удалось создать заказ. Попробуй позже."
PAYMENT_NOT_FOUND = "❌ Заказ не найден или устарел."


def payment_order(order: dict, price: str) -> str:
    return (
        "🧾 <b>Заказ создан</b>\n\n"
        f"📦 Пакет: {order['quota']} квоты\n"
        f"💵 Сумма: {price}\n"
        f"🆔 Заказ: <code>{html.quote(order['orderId'])}</code>\n\n"
        "Оплати по ссылке в течение 10 минут, квота начислится автоматически."
    )


def payment_pending(status: str) -> str:
    return f"⏳ Оплата еще не поступила (статус: {html.quote(status or 'UNKNOWN')})."


def payment_settled(quota: int, balance: int) -> str:
    return f"✅ Оплата получена! Начислено {quota} квоты.\n💰 Баланс: {balance}"


PAYMENT_ALREADY_SETTLED = "✅ Этот заказ уже оплачен и зачислен."


def queue_status(status: dict) -> str:
    return (
        "📋 <b>Очередь</b>\n\n"
        f"В очереди: {status['queue_length']}\n"
        f"Обрабатывается: {status['active']}"
    )


def stats(ledger_stats: dict, queue: dict) -> str:
    return (
        "📊 <b>Статистика</b>\n\n"
        f"👥 Пользователей: {ledger_stats['total_users']}\n"
        f"🟢 Активны сегодня: {ledger_stats['active_today']}\n"
        f"📥 Скачиваний: {ledger_stats['total_downloads']}\n"
        f"💰 Выдано квоты: {ledger_stats['total_quota_issued']}\n\n"
        f"📋 В очереди: {queue['queue_length']}, в работе: {queue['active']}"
    )
