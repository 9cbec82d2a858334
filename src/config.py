"""
Конфигурация бота из переменных окружения (.env)
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


# Telegram
BOT_TOKEN = os.getenv("BOT_TOKEN")
ADMIN_ID = os.getenv("ADMIN_ID", "")
BOT_API_URL = os.getenv("BOT_API_URL", "")  # локальный Bot API сервер (файлы до 2GB)

# Хранилище
DOWNLOAD_DIR = os.getenv("DOWNLOAD_DIR", "downloads")

# Экстрактор: browser | http | ytdlp (выбирается один раз при старте)
EXTRACTOR = os.getenv("EXTRACTOR", "browser").lower()

# Квота
DOWNLOAD_COST = _get_int("DOWNLOAD_COST", 15)
FREE_QUOTA = _get_int("FREE_QUOTA", 50)
DAILY_BONUS = _get_int("DAILY_BONUS", 50)
TRANSACTION_HISTORY_LIMIT = _get_int("TRANSACTION_HISTORY_LIMIT", 1000)

# Очередь одиночных скачиваний
MAX_CONCURRENT_DOWNLOADS = _get_int("MAX_CONCURRENT_DOWNLOADS", 1)
EXTRACTION_TIMEOUT = _get_float("EXTRACTION_TIMEOUT", 60.0)
FETCH_TOTAL_TIMEOUT = _get_float("FETCH_TOTAL_TIMEOUT", 300.0)
FETCH_STALL_TIMEOUT = _get_float("FETCH_STALL_TIMEOUT", 30.0)
MAX_FILE_SIZE_MB = _get_float("MAX_FILE_SIZE_MB", 2000.0)
COOLDOWN_SECONDS = _get_float("COOLDOWN_SECONDS", 30.0)

# Пакетная загрузка
BATCH_TTL_SECONDS = _get_float("BATCH_TTL_SECONDS", 300.0)
BATCH_MAX_RETRIES = _get_int("BATCH_MAX_RETRIES", 2)
BATCH_RETRY_PAUSE = _get_float("BATCH_RETRY_PAUSE", 3.0)
BATCH_POOL_SIZE_BROWSER = _get_int("BATCH_POOL_SIZE_BROWSER", 2)
BATCH_POOL_SIZE_LIGHT = _get_int("BATCH_POOL_SIZE_LIGHT", 5)

# Платежи (Cashi QRIS)
CASHI_API_KEY = os.getenv("CASHI_API_KEY", "")
CASHI_BASE_URL = os.getenv("CASHI_BASE_URL", "https://cashi.id/api")
CASHI_WEBHOOK_SECRET = os.getenv("CASHI_WEBHOOK_SECRET", "")
WEBHOOK_PORT = _get_int("WEBHOOK_PORT", 3000)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
