"""
DownloadResponse - ответ DownloadManager на запрос скачивания
Содержит статус приема заявки и необходимые данные
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class DownloadResponse:
    """
    Ответ от DownloadManager на запрос request_download()

    Используется bot.py для определения дальнейших действий.

    Attributes:
        status: Статус приема заявки:
            - QUEUED: Задача добавлена в очередь
            - INSUFFICIENT_QUOTA: Не хватает квоты, задача не создана
            - COOLDOWN: Пользователь скачивал слишком недавно
            - UNSUPPORTED: Ссылка не поддерживается
        job_id: ID задачи (если QUEUED)
        position: Позиция в очереди (если QUEUED, 1 - уже обрабатывается)
        balance: Текущий баланс (если INSUFFICIENT_QUOTA)
        required: Сколько квоты нужно (если INSUFFICIENT_QUOTA)
        retry_after: Через сколько секунд можно повторить (если COOLDOWN)
    """
    status: str  # QUEUED | INSUFFICIENT_QUOTA | COOLDOWN | UNSUPPORTED
    job_id: Optional[str] = None
    position: Optional[int] = None
    balance: Optional[int] = None
    required: Optional[int] = None
    retry_after: Optional[int] = None

    def is_queued(self) -> bool:
        """Проверка, добавлено ли в очередь"""
        return self.status == 'QUEUED'

    def is_insufficient_quota(self) -> bool:
        """Проверка, не хватило ли квоты"""
        return self.status == 'INSUFFICIENT_QUOTA'

    def is_cooldown(self) -> bool:
        """Проверка, действует ли пауза между скачиваниями"""
        return self.status == 'COOLDOWN'

    def is_unsupported(self) -> bool:
        """Проверка, поддерживается ли ссылка"""
        return self.status == 'UNSUPPORTED'
