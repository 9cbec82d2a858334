"""
DownloadJob - задача одиночного скачивания в очереди DownloadManager
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional


class JobState:
    """Состояния задачи: QUEUED -> EXTRACTING -> FETCHING -> RELAYING -> SETTLED | FAILED"""
    QUEUED = 'QUEUED'
    EXTRACTING = 'EXTRACTING'
    FETCHING = 'FETCHING'
    RELAYING = 'RELAYING'
    SETTLED = 'SETTLED'
    FAILED = 'FAILED'


@dataclass
class DownloadJob:
    """
    Задача на скачивание одной ссылки

    Attributes:
        user_id: ID пользователя (для списания квоты)
        chat_ref: Куда отправлять результат (непрозрачная ссылка на чат)
        url: Исходная ссылка
        status_handle: Ссылка на редактируемое сообщение со статусом
        job_id: Непрозрачный ID задачи
        state: Текущее состояние (JobState)
        media_url: Прямая ссылка, если извлечение прошло
        error: Причина ошибки (ключ шаблона), если задача упала
    """
    user_id: Any
    chat_ref: Any
    url: str
    status_handle: Any = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    state: str = JobState.QUEUED
    media_url: Optional[str] = None
    error: Optional[str] = None
    charged: bool = False

    def is_finished(self) -> bool:
        return self.state in (JobState.SETTLED, JobState.FAILED)
