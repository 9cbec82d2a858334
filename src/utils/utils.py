"""
Утилиты для работы с URL: поиск ссылок в тексте и проверка поддерживаемых хостингов
"""
import re
from typing import List
from urllib.parse import urlparse

# Хостинги и их зеркала (подстрока в имени хоста)
SUPPORTED_DOMAINS = [
    # Doodstream и варианты
    'dood', 'doood', 'dooood', 'doodstream', 'doodster', 'd00d', 'd000d', 'd0000d', 'd0o0d', 'do0od', 'do-od',
    'doods', 'doodss', 'doodz', 'dooodz', 'doodp', 'doodx', 'doodw', 'doodf', 'doodvid', 'doodst', 'doodstr',
    'ds2play', 'ds2video', 'myvidplay', 'videokitrsi', 'dood-hd',
    # Зеркала Doodstream
    'poop', 'poophd', 'poopvid', 'poopvip', 'poopweb', 'poops', 'pooph', 'poodvid', 'poods', 'poo',
    # Lulu
    'lulustream', 'luluvdo', 'lulu', 'lumiawatch',
    # Filemoon
    'filemoon', 'moonmov',
    # Filelions
    'filelions', 'mlions', 'alions', 'dlions', 'fviplions',
    # Vidhide
    'vidhide', 'vidhidepro', 'vidhidevip', 'vidhidepre', 'nekomedia',
    # StreamTape
    'streamtape', 'strtape', 'strcloud', 'strtpe', 'stape', 'shavetape', 'streamadblockplus', 'scloud', 'tapelovesads',
    # VOE
    'voe', 'voe-unblock', 'voeunblock', 'voeunbl0ck', 'voeunblck', 'voeunblk', 'v-o-e-unblock', 'un-block-voe',
    # Прочие
    'gofile', 'filegram', 'mp4upload', 'veev', 'videy', 'javplaya', 'javlion', 'kinoger', 'cinegrab', 'moflix-stream', 'lixey',
    # Технические домены этих сервисов
    'cloudatacdn', 'lw2cgtcm', 'azipcdn', 'cdn-vid',
]

SUPPORTED_HOST_PATTERNS = [
    re.compile(r'doo+d', re.IGNORECASE),
    re.compile(r'd0+d', re.IGNORECASE),
    re.compile(r'poo+p', re.IGNORECASE),
    re.compile(r'filemoon', re.IGNORECASE),
    re.compile(r'filelions?', re.IGNORECASE),
    re.compile(r'streamtape?', re.IGNORECASE),
    re.compile(r'vidhide', re.IGNORECASE),
    re.compile(r'lulu(stream|vdo)?', re.IGNORECASE),
    re.compile(r'\blions?\b', re.IGNORECASE),
]

_ALBUM_PATH_RE = re.compile(r'/a/\w+')
_VIDEO_PATH_RE = re.compile(r'/[edsvwf]/\w+')
_URL_WITH_SCHEME_RE = re.compile(r'https?://[^\s]+', re.IGNORECASE)
_URL_WITHOUT_SCHEME_RE = re.compile(
    r'(?<![/\w.@])([a-zA-Z0-9][-a-zA-Z0-9]*(?:\.[-a-zA-Z0-9]+)*\.[a-zA-Z]{2,}(?:/[^\s]*)?)'
)


def extract_urls(text: str) -> List[str]:
    """
    Найти все ссылки в тексте (со схемой и без, к последним добавляется https://)

    Args:
        text: Текст сообщения

    Returns:
        Список ссылок в порядке появления, без повторов
    """
    if not text:
        return []

    urls = []
    for match in _URL_WITH_SCHEME_RE.findall(text):
        if match not in urls:
            urls.append(match)

    # Ссылки со схемой уже найдены, вырезаем их перед поиском остальных
    rest = _URL_WITH_SCHEME_RE.sub(' ', text)
    for match in _URL_WITHOUT_SCHEME_RE.findall(rest):
        url = f"https://{match}"
        if url not in urls:
            urls.append(url)
    return urls


def is_supported_url(url: str) -> bool:
    """
    Проверка, поддерживается ли URL

    Ссылки на альбомы (/a/...) не поддерживаются - это не видео.
    """
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        return False

    hostname = parsed.hostname.lower()
    path = parsed.path.lower()

    if _ALBUM_PATH_RE.search(path):
        return False

    if any(domain in hostname for domain in SUPPORTED_DOMAINS):
        return True
    if any(pattern.search(hostname) for pattern in SUPPORTED_HOST_PATTERNS):
        return True

    # Неизвестный хост, но путь похож на ссылку на видео (/e/..., /d/...)
    return bool(_VIDEO_PATH_RE.search(path))


def format_file_size(size_bytes: int) -> str:
    """Размер файла в человекочитаемом виде"""
    if not size_bytes:
        return '0 B'
    size = float(size_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            break
        size /= 1024
    if unit == 'B':
        return f"{int(size)} B"
    return f"{size:.2f} {unit}"


def get_origin(url: str) -> str:
    """scheme://host исходной ссылки"""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"
