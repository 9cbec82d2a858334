"""
Модуль для работы с Redis
Хранит аккаунты квоты, журнал транзакций и платежные заказы:
- quota:account:{user_id} -> JSON {balance, totalDownloads, totalCredited, ...}
- quota:accounts -> множество известных user_id
- quota:transactions -> список JSON-транзакций (новые в начале, обрезается до лимита)
- payment:order:{order_id} -> JSON заказа (TTL сутки)
- payment:settled:{order_id} -> отметка о зачислении (SET NX)
"""
import json
import logging
from typing import Dict, List, Optional
from redis import asyncio as redis
import os
from dotenv import load_dotenv

from src.errors import LedgerPersistenceError

load_dotenv()

logger = logging.getLogger(__name__)

# Заказ хранится сутки (срок оплаты - 10 минут - записан в самом заказе)
ORDER_TTL_SECONDS = 24 * 60 * 60

# Отметка о зачислении хранится долго, чтобы повтор webhook не зачислил второй раз (30 дней)
SETTLED_TTL_SECONDS = 30 * 24 * 60 * 60


class Database:
    def __init__(self, redis_url: str = None):
        """
        Инициализация Redis подключения

        Args:
            redis_url: URL для подключения к Redis (по умолчанию из .env или localhost)
        """
        if not redis_url:
            # Сначала проверяем полный URL
            redis_url = os.getenv("REDIS_URL")
            if not redis_url:
                # Если нет полного URL, собираем из отдельных переменных
                redis_host = os.getenv("REDIS_HOST", "localhost")
                redis_port = os.getenv("REDIS_PORT", "6379")
                redis_db = os.getenv("REDIS_DB", "0")
                redis_url = f"redis://{redis_host}:{redis_port}/{redis_db}"

        self.redis_client = redis.from_url(redis_url, decode_responses=True)

    def _get_account_key(self, user_id: str) -> str:
        return f"quota:account:{user_id}"

    def _get_accounts_set_key(self) -> str:
        return "quota:accounts"

    def _get_transactions_key(self) -> str:
        return "quota:transactions"

    def _get_order_key(self, order_id: str) -> str:
        return f"payment:order:{order_id}"

    def _get_settled_key(self, order_id: str) -> str:
        return f"payment:settled:{order_id}"

    # --------- Аккаунты квоты ---------

    async def get_account(self, user_id: str) -> Optional[dict]:
        """
        Получить документ аккаунта

        Returns:
            Словарь аккаунта или None, если аккаунта нет
        """
        try:
            data_str = await self.redis_client.get(self._get_account_key(user_id))
        except Exception as e:
            raise LedgerPersistenceError(f"Не удалось прочитать аккаунт {user_id}: {e}") from e
        return json.loads(data_str) if data_str else None

    async def load_accounts(self) -> Dict[str, dict]:
        """
        Загрузить все аккаунты (при старте бота)

        Returns:
            Словарь user_id -> документ аккаунта
        """
        try:
            user_ids = await self.redis_client.smembers(self._get_accounts_set_key())
            accounts = {}
            for user_id in user_ids:
                data_str = await self.redis_client.get(self._get_account_key(user_id))
                if data_str:
                    accounts[user_id] = json.loads(data_str)
        except Exception as e:
            raise LedgerPersistenceError(f"Не удалось загрузить аккаунты: {e}") from e
        logger.info(f"[ledger] Загружено аккаунтов из Redis: {len(accounts)}")
        return accounts

    async def save_account(self, user_id: str, data: dict, transaction: Optional[dict] = None,
                           history_limit: int = 1000):
        """
        Сохранить аккаунт и (опционально) добавить транзакцию в журнал одной атомарной операцией

        Args:
            user_id: ID пользователя
            data: Документ аккаунта
            transaction: Документ транзакции или None
            history_limit: Сколько последних транзакций хранить

        Raises:
            LedgerPersistenceError: если запись не удалась
        """
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.set(self._get_account_key(user_id), json.dumps(data))
                pipe.sadd(self._get_accounts_set_key(), user_id)
                if transaction is not None:
                    pipe.lpush(self._get_transactions_key(), json.dumps(transaction))
                    pipe.ltrim(self._get_transactions_key(), 0, history_limit - 1)
                await pipe.execute()
        except Exception as e:
            raise LedgerPersistenceError(f"Не удалось сохранить аккаунт {user_id}: {e}") from e

    async def load_transactions(self, limit: int = 1000) -> List[dict]:
        """
        Загрузить последние транзакции

        Returns:
            Список транзакций, новые первыми
        """
        try:
            items = await self.redis_client.lrange(self._get_transactions_key(), 0, limit - 1)
        except Exception as e:
            raise LedgerPersistenceError(f"Не удалось загрузить журнал транзакций: {e}") from e
        return [json.loads(item) for item in items]

    # --------- Платежные заказы ---------

    async def save_order(self, order_id: str, data: dict):
        """Сохранить заказ с TTL"""
        await self.redis_client.set(self._get_order_key(order_id), json.dumps(data), ex=ORDER_TTL_SECONDS)

    async def get_order(self, order_id: str) -> Optional[dict]:
        data_str = await self.redis_client.get(self._get_order_key(order_id))
        return json.loads(data_str) if data_str else None

    async def update_order(self, order_id: str, data: dict):
        """Обновить заказ, сохранив оставшийся TTL"""
        await self.redis_client.set(self._get_order_key(order_id), json.dumps(data), keepttl=True)

    async def claim_order_settlement(self, order_id: str) -> bool:
        """
        Попытаться занять право зачислить заказ
        Использует Redis SET NX (set if not exists) для атомарности

        Returns:
            True если заказ еще не зачислялся (первый webhook), False для повторов
        """
        result = await self.redis_client.set(self._get_settled_key(order_id), "1", ex=SETTLED_TTL_SECONDS, nx=True)
        if result:
            logger.info(f"[payment] Заказ {order_id} помечен к зачислению")
            return True
        logger.info(f"[payment] Заказ {order_id} уже зачислен, повтор пропущен")
        return False

    async def release_order_settlement(self, order_id: str):
        """Снять отметку о зачислении (если зачисление не удалось)"""
        await self.redis_client.delete(self._get_settled_key(order_id))

    async def close(self):
        """Закрыть подключение к Redis"""
        await self.redis_client.close()
