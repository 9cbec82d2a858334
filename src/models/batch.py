"""
Модели пакетной загрузки (несколько ссылок за раз)
"""
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from src.models.extraction_result import ExtractionResult


@dataclass
class Batch:
    """
    Предложенный пользователем пакет ссылок, ожидающий подтверждения

    Удаляется после подтверждения или по истечении TTL.
    """
    batch_id: str
    user_id: Any
    urls: List[str]
    created_at: float = field(default_factory=time.time)


@dataclass
class BatchItem:
    """
    Элемент пакета: Pending(retries) -> Fetched | FailedTerminal
    """
    url: str
    index: int = 0
    retries: int = 0
    attempts: int = 0
    result: Optional[ExtractionResult] = None
    file_path: Optional[str] = None
    file_size: int = 0
    error: Optional[str] = None
    delivered: bool = False


@dataclass
class BatchProposal:
    """Ответ на предложение пакета: стоимость и хватает ли квоты"""
    batch: Batch
    total_cost: int
    balance: int

    @property
    def affordable(self) -> bool:
        return self.balance >= self.total_cost


@dataclass
class BatchReport:
    """
    Итог пакетной загрузки

    Attributes:
        total: Сколько ссылок было в пакете
        succeeded: Сколько видео доставлено (файлом или ссылкой)
        failed: Список (url, причина) для неудавшихся элементов
        quota_spent: Сколько квоты списано
        quota_saved: Сколько квоты не списано за неудачные элементы
    """
    total: int
    succeeded: int = 0
    failed: List[Tuple[str, str]] = field(default_factory=list)
    quota_spent: int = 0
    quota_saved: int = 0


class BatchConfirmStatus:
    STARTED = 'STARTED'
    EXPIRED = 'EXPIRED'
    FORBIDDEN = 'FORBIDDEN'
    INSUFFICIENT_QUOTA = 'INSUFFICIENT_QUOTA'
