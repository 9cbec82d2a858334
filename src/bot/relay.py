"""
Relay - доставка статусов, файлов и ссылок пользователю

Конвейер скачивания работает только через BaseRelay и не знает про Telegram.
TelegramRelay - реализация поверх aiogram.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.types import FSInputFile, InlineKeyboardButton, InlineKeyboardMarkup

from src.errors import RelayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusHandle:
    """Ссылка на редактируемое сообщение со статусом"""
    chat_id: Any
    message_id: int


class BaseRelay(ABC):
    """Абстрактный канал доставки"""

    @abstractmethod
    async def send_message(self, target, text: str, reply_markup=None):
        """Отправить обычное сообщение (ошибки пробрасываются)"""

    @abstractmethod
    async def send_status(self, target, text: str) -> Optional[StatusHandle]:
        """Отправить сообщение со статусом, вернуть handle для последующих правок"""

    @abstractmethod
    async def update_status(self, handle: Optional[StatusHandle], text: str, with_retry: bool = False) -> bool:
        """
        Отредактировать статус (best effort)

        Returns:
            True если правка прошла, False при любой ошибке
        """

    @abstractmethod
    async def deliver_file(self, target, path: str, caption: str):
        """
        Отправить файл

        Raises:
            RelayError: если получатель отклонил файл
        """

    @abstractmethod
    async def deliver_link(self, target, url: str, caption: str):
        """
        Отправить прямую ссылку на видео

        Raises:
            RelayError: если сообщение не отправилось
        """


def retry_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="🔄 Попробовать снова", callback_data="download")],
        [InlineKeyboardButton(text="🏠 Главное меню", callback_data="back_to_start")],
    ])


class TelegramRelay(BaseRelay):
    """Relay через Telegram Bot API (aiogram)"""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, target, text: str, reply_markup=None):
        return await self.bot.send_message(target, text, reply_markup=reply_markup)

    async def send_status(self, target, text: str) -> Optional[StatusHandle]:
        try:
            message = await self.bot.send_message(target, text)
        except TelegramAPIError as e:
            logger.warning(f"[relay] Не удалось отправить статус в {target}: {e}")
            return None
        return StatusHandle(chat_id=message.chat.id, message_id=message.message_id)

    async def update_status(self, handle: Optional[StatusHandle], text: str, with_retry: bool = False) -> bool:
        if handle is None:
            return False
        try:
            await self.bot.edit_message_text(
                text=text,
                chat_id=handle.chat_id,
                message_id=handle.message_id,
                reply_markup=retry_keyboard() if with_retry else None,
            )
            return True
        except TelegramBadRequest as e:
            # "message is not modified" и удаленные сообщения - обычное дело
            logger.debug(f"[relay] Статус не обновлен: {e}")
            return False
        except TelegramAPIError as e:
            logger.debug(f"[relay] Ошибка обновления статуса: {e}")
            return False

    async def deliver_file(self, target, path: str, caption: str):
        try:
            await self.bot.send_video(
                chat_id=target,
                video=FSInputFile(path),
                caption=caption,
                supports_streaming=True,
            )
        except TelegramAPIError as e:
            logger.warning(f"[relay] Telegram отклонил файл {path}: {e}")
            raise RelayError(str(e)) from e

    async def deliver_link(self, target, url: str, caption: str):
        keyboard = InlineKeyboardMarkup(inline_keyboard=[
            [InlineKeyboardButton(text="⬇️ Скачать видео", url=url)],
        ])
        try:
            await self.bot.send_message(target, caption, reply_markup=keyboard)
        except TelegramAPIError as e:
            logger.warning(f"[relay] Не удалось отправить ссылку: {e}")
            raise RelayError(str(e)) from e
