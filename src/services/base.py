"""
Базовый класс для экстракторов и общая политика выбора ссылки
"""
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
import logging
import random
import re
import string
import time

from src.models.extraction_result import ExtractionResult

logger = logging.getLogger(__name__)

USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

DEFAULT_TITLE = 'doodstream_video'

# Первичный CDN хостинга
CDN_HOSTS = ('cloudatacdn.com',)

# Реклама, трекеры и статика - никогда не видео
EXCLUDE_PATTERNS = (
    'google-analytics',
    'googletagmanager',
    'facebook.com',
    'doubleclick',
    'adsense',
    'analytics',
    'tracker',
    'pixel',
    'beacon',
    '.js',
    '.css',
    '.png',
    '.jpg',
    '.gif',
    '.ico',
    '.svg',
    '.woff',
)

# Страница явно сообщает, что видео удалено
NOT_FOUND_PHRASES = ('File not found', 'Oops! Sorry', 'Video not found', 'has been removed')
NOT_FOUND_TITLE_PHRASES = ('File not found', 'Not Found')

_ALIAS_PATH_RE = re.compile(r'/(s|d)/')
_UNSAFE_TITLE_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
_PASS_MD5_RE = re.compile(r'/pass_md5/[^/\'"\s]+(?:/[^\'"\s]*)?')


def is_candidate_url(url: str) -> bool:
    """Похожа ли ссылка на медиа (используется при перехвате запросов)"""
    return (
        '.mp4' in url
        or '.m3u8' in url
        or '/download' in url
        or 'get_file' in url
        or any(host in url for host in CDN_HOSTS)
    )


def select_best_url(urls: Iterable[str]) -> Optional[str]:
    """
    Выбрать лучшую ссылку из собранных кандидатов

    Приоритет:
    1. CDN хостинга (с token=, иначе последняя)
    2. Последняя .mp4 (обычно лучшее качество)
    3. Первый .m3u8
    4. Последняя get_file / download

    Returns:
        Ссылка или None, если ничего не подошло после фильтрации
    """
    unique: List[str] = []
    for url in urls:
        if not url or url in unique:
            continue
        lower = url.lower()
        if any(pattern in lower for pattern in EXCLUDE_PATTERNS):
            continue
        unique.append(url)

    cdn_urls = [u for u in unique if any(host in u for host in CDN_HOSTS)]
    if cdn_urls:
        for url in cdn_urls:
            if 'token=' in url:
                return url
        return cdn_urls[-1]

    mp4_urls = [u for u in unique if '.mp4' in u]
    if mp4_urls:
        return mp4_urls[-1]

    hls_urls = [u for u in unique if '.m3u8' in u]
    if hls_urls:
        return hls_urls[0]

    download_urls = [u for u in unique if 'get_file' in u or 'download' in u]
    if download_urls:
        return download_urls[-1]

    return None


def preprocess_url(url: str, strip_query: bool = True) -> str:
    """Привести /s/ и /d/ к embed-форме /e/ (и отрезать query)"""
    processed = _ALIAS_PATH_RE.sub('/e/', url, count=1)
    if strip_query:
        processed = processed.split('?', 1)[0]
    return processed


def sanitize_title(title: Optional[str]) -> str:
    """Очистить название для использования в имени файла"""
    if not title:
        return DEFAULT_TITLE
    cleaned = _UNSAFE_TITLE_CHARS_RE.sub('', title)
    cleaned = re.sub(r'\s+', '_', cleaned)[:100].strip()
    return cleaned or DEFAULT_TITLE


def has_not_found_marker(body_text: str, title: str = '') -> bool:
    """Есть ли на странице признак удаленного видео"""
    body_text = body_text or ''
    title = title or ''
    return (
        any(phrase in body_text for phrase in NOT_FOUND_PHRASES)
        or any(phrase in title for phrase in NOT_FOUND_TITLE_PHRASES)
    )


def find_pass_md5_path(html: str) -> Optional[str]:
    """Найти путь /pass_md5/... в html страницы"""
    match = _PASS_MD5_RE.search(html or '')
    return match.group(0) if match else None


def build_pass_md5_media_url(response_text: str) -> Optional[str]:
    """
    Превратить ответ /pass_md5/ в ссылку на медиа

    Ответ - префикс ссылки, к которому добавляется случайный token и expiry.
    """
    data = (response_text or '').strip()
    if 'http' not in data:
        return None
    token = ''.join(random.choices(string.ascii_lowercase + string.digits, k=10))
    separator = '&' if '?' in data else '?'
    return f"{data}{separator}token={token}&expiry={int(time.time() * 1000)}"


class BaseExtractor(ABC):
    """
    Базовый класс для всех экстракторов

    Экстрактор по ссылке на страницу хостинга находит прямую ссылку на видео.
    НЕ скачивает видео, НЕ работает с квотой, НЕ работает с Telegram.
    """

    name = 'base'
    # Тяжелый экстрактор (браузер) - меньше параллельных задач в пакете
    heavy = False

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def init(self) -> bool:
        """
        Подготовить экстрактор к работе

        Returns:
            True если экстрактор готов
        """
        pass

    @abstractmethod
    async def extract_video_info(self, url: str) -> ExtractionResult:
        """
        Извлечь прямую ссылку на видео

        Args:
            url: Ссылка на страницу видео

        Returns:
            ExtractionResult

        Raises:
            SourceUnreachableError: страница недоступна
            ContentRemovedError: видео удалено
            NoMediaFoundError: ссылка не найдена
        """
        pass

    async def close(self):
        """Освободить ресурсы"""
        pass
