"""
Фабрика экстракторов
Экстрактор выбирается один раз при старте (EXTRACTOR в .env)
"""
from typing import Optional
from src.services.base import BaseExtractor
from src.services.browser_extractor import BrowserExtractor
from src.services.http_extractor import HttpExtractor
from src.services.ytdlp_service import YtDlpService

EXTRACTOR_KINDS = ('browser', 'http', 'ytdlp')


class ServiceFactory:
    """Фабрика для создания экстракторов"""

    def __init__(self):
        self._services = {}

    def get_service(self, kind: str) -> Optional[BaseExtractor]:
        """
        Получить экстрактор

        Args:
            kind: Тип экстрактора ('browser', 'http', 'ytdlp')

        Returns:
            Экстрактор или None если тип не поддерживается
        """
        kind = (kind or '').lower()
        if kind not in self._services:
            if kind == 'browser':
                self._services[kind] = BrowserExtractor()
            elif kind == 'http':
                self._services[kind] = HttpExtractor()
            elif kind == 'ytdlp':
                self._services[kind] = YtDlpService()
            else:
                return None

        return self._services.get(kind)

    def create(self, kind: str) -> BaseExtractor:
        """
        Получить экстрактор или упасть с понятной ошибкой

        Raises:
            ValueError: если тип не поддерживается
        """
        service = self.get_service(kind)
        if service is None:
            raise ValueError(f"Неизвестный экстрактор: {kind}. Доступны: {', '.join(EXTRACTOR_KINDS)}")
        return service
