"""
ExtractionResult - результат работы экстрактора
Живет недолго: сразу передается на шаг скачивания, не сохраняется
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class ExtractionResult:
    """
    Результат извлечения прямой ссылки на видео

    Attributes:
        title: Название видео (уже очищенное для имени файла)
        media_url: Прямая ссылка на медиафайл
        thumbnail: Ссылка на превью или None
        source_url: Исходная ссылка пользователя
        extractor: Имя экстрактора, который нашел ссылку
    """
    title: str
    media_url: str
    thumbnail: Optional[str] = None
    source_url: Optional[str] = None
    extractor: Optional[str] = None
