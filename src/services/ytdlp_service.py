"""
YtDlpService - экстрактор на основе yt-dlp
Получает информацию о видео без скачивания и выбирает прямую mp4-ссылку
"""
import asyncio
import logging
from typing import Optional, Dict, Any, List
import yt_dlp

from src.errors import SourceUnreachableError, ContentRemovedError, NoMediaFoundError, ExtractionTimeoutError
from src.models.extraction_result import ExtractionResult
from src.services.base import BaseExtractor, select_best_url, sanitize_title, preprocess_url

logger = logging.getLogger(__name__)

# Фразы в ошибках yt-dlp, означающие, что видео больше нет
REMOVED_MARKERS = ('not found', '404', '410', 'has been removed', 'no longer available', 'deleted')


class YtDlpService(BaseExtractor):
    """
    Экстрактор через yt-dlp

    Ответственность:
    - Получение информации о видео через yt-dlp (extract_info, download=False)
    - Выбор прямой ссылки по общей политике
    НЕ скачивает видео, НЕ знает о пользователях и Telegram.
    """

    name = 'ytdlp'
    heavy = False

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Максимальное время работы yt-dlp в секундах
        """
        super().__init__()
        self.timeout = timeout

    async def init(self) -> bool:
        logger.info(f"[yt-dlp] Версия yt-dlp: {yt_dlp.version.__version__}")
        return True

    def get_info(self, url: str, ydl_opts: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Получить информацию о видео через yt-dlp

        Args:
            url: URL видео
            ydl_opts: Опции для yt-dlp (опционально)

        Returns:
            Словарь с информацией о видео

        Raises:
            yt_dlp.utils.DownloadError: если yt-dlp не смог обработать ссылку
        """
        if ydl_opts is None:
            ydl_opts = {
                'quiet': True,
                'no_warnings': True,
                'noplaylist': True,
                'nocheckcertificate': True,
            }

        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            return ydl.extract_info(url, download=False)

    @staticmethod
    def candidate_urls(info: Dict[str, Any]) -> List[str]:
        """
        Ссылки-кандидаты из ответа yt-dlp

        mp4-форматы без manifest, от меньшего размера к большему
        (самый большой оказывается последним .mp4 и выигрывает у политики),
        плюс info['url'] в начале.
        """
        formats = [
            f for f in (info.get('formats') or [])
            if f.get('ext') == 'mp4' and f.get('url') and 'manifest' not in f['url']
        ]
        formats.sort(key=lambda f: f.get('filesize') or f.get('filesize_approx') or 0)
        candidates = [f['url'] for f in formats]
        if info.get('url') and info['url'] not in candidates:
            candidates.insert(0, info['url'])
        return candidates

    async def extract_video_info(self, url: str) -> ExtractionResult:
        target_url = preprocess_url(url, strip_query=False)
        logger.info(f"[yt-dlp] Извлечение: {target_url}")
        try:
            info = await asyncio.wait_for(asyncio.to_thread(self.get_info, target_url), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionTimeoutError(f"yt-dlp не уложился в {self.timeout}с: {url}") from e
        except yt_dlp.utils.DownloadError as e:
            message = str(e).lower()
            if any(marker in message for marker in REMOVED_MARKERS):
                raise ContentRemovedError(f"Видео удалено: {url}") from e
            raise SourceUnreachableError(f"yt-dlp не смог открыть {url}: {e}") from e

        media_url = select_best_url(self.candidate_urls(info or {}))
        if not media_url:
            raise NoMediaFoundError(f"yt-dlp не нашел подходящую ссылку: {url}")

        logger.info(f"[yt-dlp] ✅ Найдена ссылка: {info.get('title')}")
        return ExtractionResult(
            title=sanitize_title(info.get('title')),
            media_url=media_url,
            thumbnail=info.get('thumbnail'),
            source_url=url,
            extractor=self.name,
        )
