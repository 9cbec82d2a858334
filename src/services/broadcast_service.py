"""
Рассылка сообщения всем известным пользователям (админ-команда /broadcast)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)


@dataclass
class BroadcastResult:
    sent: int = 0
    failed: int = 0


async def broadcast(relay, user_ids: Iterable, text: str, delay: float = 0.05) -> BroadcastResult:
    """
    Разослать текст пользователям с паузой между отправками (лимиты Telegram)

    Args:
        relay: Relay для отправки сообщений
        user_ids: Получатели
        text: Текст рассылки
        delay: Пауза между отправками в секундах

    Returns:
        BroadcastResult со счетчиками отправленных и неудавшихся
    """
    result = BroadcastResult()
    for user_id in user_ids:
        try:
            await relay.send_message(user_id, text)
            result.sent += 1
        except Exception as e:
            logger.warning(f"[broadcast] Не удалось отправить user={user_id}: {e}")
            result.failed += 1
        await asyncio.sleep(delay)

    logger.info(f"[broadcast] Рассылка завершена: отправлено={result.sent}, ошибок={result.failed}")
    return result
