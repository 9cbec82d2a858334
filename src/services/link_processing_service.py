"""
LinkProcessingService - подготовка ссылки перед извлечением
Разворачивает короткие ссылки-обертки и распознает прямые ссылки на медиафайл
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse, unquote

import aiohttp

from src.services.base import USER_AGENT
from src.utils.utils import is_supported_url

logger = logging.getLogger(__name__)

# Расширения, по которым ссылка считается прямой
MEDIA_EXTENSIONS = ('.mp4', '.m3u8', '.mkv', '.webm', '.mov')

# Обертки, которые заканчиваются на .mp4, но на деле ведут на JS-редирект
FAKE_DIRECT_HOSTS = ('cdn-vid',)

# Сокращатели ссылок: настоящий адрес получаем HTTP-редиректом
REDIRECT_WRAPPER_HOSTS = ('bit.ly', 't.co', 'tinyurl.com', 'cutt.ly', 's.id', 'shorturl.at')


@dataclass
class PreparedLink:
    """
    Ссылка, готовая к обработке

    Attributes:
        url: Итоговая ссылка (после разворачивания редиректов)
        is_direct: Ссылка уже ведет на медиафайл - извлечение не нужно
        filename: Имя файла из пути ссылки (для прямых ссылок)
    """
    url: str
    is_direct: bool = False
    filename: Optional[str] = None


class LinkProcessingService:
    """
    Сервис для подготовки ссылок
    НЕ извлекает видео, НЕ скачивает, НЕ работает с Telegram.
    """

    def __init__(self, timeout: float = 10.0, max_redirects: int = 5):
        """
        Args:
            timeout: Таймаут разворачивания редиректа в секундах
            max_redirects: Максимум редиректов
        """
        self.timeout = timeout
        self.max_redirects = max_redirects

    def is_supported_url(self, url: str) -> bool:
        return is_supported_url(url) or self.is_redirect_wrapper(url)

    @staticmethod
    def _host(url: str) -> str:
        return (urlparse(url).hostname or '').lower()

    def is_redirect_wrapper(self, url: str) -> bool:
        host = self._host(url)
        return any(host == wrapper or host.endswith('.' + wrapper) for wrapper in REDIRECT_WRAPPER_HOSTS)

    def is_direct_media_link(self, url: str) -> bool:
        """
        Прямая ли ссылка на медиафайл

        Путь заканчивается на медиа-расширение и хост не из списка фальшивых прямых ссылок.
        """
        host = self._host(url)
        if any(fake in host for fake in FAKE_DIRECT_HOSTS):
            return False
        path = urlparse(url).path.lower()
        return path.endswith(MEDIA_EXTENSIONS)

    @staticmethod
    def filename_from_url(url: str) -> str:
        name = os.path.basename(unquote(urlparse(url).path))
        return name or 'video.mp4'

    async def resolve_redirect(self, url: str) -> str:
        """
        Получить конечный адрес ссылки-обертки

        Сначала HEAD, при ошибке - GET без чтения тела.
        Ошибка не критична: возвращается исходная ссылка.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        headers = {'User-Agent': USER_AGENT}
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            for method in ('HEAD', 'GET'):
                try:
                    async with session.request(method, url, allow_redirects=True,
                                               max_redirects=self.max_redirects) as resp:
                        if resp.status < 400:
                            final_url = str(resp.url)
                            if final_url != url:
                                logger.info(f"[link] Редирект: {url} -> {final_url}")
                            return final_url
                        logger.debug(f"[link] {method} {url} вернул {resp.status}")
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.debug(f"[link] {method} {url} не удался: {e}")
        logger.info(f"[link] Не удалось развернуть {url}, используем как есть")
        return url

    async def prepare(self, url: str) -> PreparedLink:
        """
        Развернуть обертку (если это обертка) и проверить, не прямая ли ссылка
        """
        if self.is_redirect_wrapper(url):
            url = await self.resolve_redirect(url)

        if self.is_direct_media_link(url):
            return PreparedLink(url=url, is_direct=True, filename=self.filename_from_url(url))
        return PreparedLink(url=url)
