"""
MediaFetcher - потоковое скачивание файла по прямой ссылке (aiohttp)

Два таймаута:
- общий (total_timeout) на всю передачу
- таймаут простоя (stall_timeout): сколько можно ждать очередной порции данных
Недокачанный файл удаляется при любой ошибке.
"""
import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp

from src.config import DOWNLOAD_DIR, FETCH_STALL_TIMEOUT, FETCH_TOTAL_TIMEOUT, MAX_FILE_SIZE_MB
from src.errors import FetchError, FetchStalledError, FetchTimeoutError
from src.services.base import USER_AGENT

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024


@dataclass
class FetchResult:
    path: str
    size: int


class MediaFetcher:
    def __init__(
        self,
        download_dir: str = DOWNLOAD_DIR,
        total_timeout: float = FETCH_TOTAL_TIMEOUT,
        stall_timeout: float = FETCH_STALL_TIMEOUT,
        max_file_size_mb: float = MAX_FILE_SIZE_MB,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.download_dir = download_dir
        self.total_timeout = total_timeout
        self.stall_timeout = stall_timeout
        self.max_bytes = int(max_file_size_mb * 1024 * 1024)
        self.chunk_size = chunk_size
        os.makedirs(self.download_dir, exist_ok=True)

    def make_path(self, suffix: str = '.mp4') -> str:
        """Уникальный путь для нового файла (параллельные задачи не пересекаются)"""
        filename = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{suffix}"
        return os.path.join(self.download_dir, filename)

    @staticmethod
    def remove(path: Optional[str]):
        """Удалить локальный файл, если он есть"""
        if not path or not os.path.exists(path):
            return
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"[fetch] Не удалось удалить файл {path}: {e}")

    def _window(self, deadline: float, loop) -> float:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise FetchTimeoutError(f"Превышено общее время скачивания ({self.total_timeout}s)")
        return min(self.stall_timeout, remaining)

    async def fetch(
        self,
        url: str,
        dest_path: str,
        referer: Optional[str] = None,
        on_progress: Optional[Callable[[int, Optional[int]], None]] = None,
    ) -> FetchResult:
        """
        Скачать файл по прямой ссылке

        Args:
            url: Прямая ссылка на видео
            dest_path: Куда сохранить
            referer: Заголовок Referer (многие CDN без него отдают 403)
            on_progress: Колбэк (скачано байт, всего байт или None)

        Returns:
            FetchResult с путем и размером

        Raises:
            FetchTimeoutError: передача не началась или не уложилась в общее время
            FetchStalledError: передача началась, но данные перестали приходить
            FetchError: HTTP-ошибка, обрыв соединения, превышен размер
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.total_timeout
        headers = {'User-Agent': USER_AGENT}
        if referer:
            headers['Referer'] = referer

        size = 0
        logger.info(f"[fetch] Начинаю скачивание: {url[:100]}")
        try:
            async with aiohttp.ClientSession() as session:
                try:
                    resp = await asyncio.wait_for(
                        session.get(url, headers=headers, allow_redirects=True),
                        timeout=self._window(deadline, loop),
                    )
                except asyncio.TimeoutError as e:
                    raise FetchTimeoutError("Сервер не начал отдавать файл") from e
                except aiohttp.ClientError as e:
                    raise FetchError(f"Ошибка соединения: {e}") from e

                async with resp:
                    if resp.status >= 400:
                        raise FetchError(f"HTTP {resp.status}")
                    total = resp.content_length
                    if total and total > self.max_bytes:
                        raise FetchError(f"Файл слишком большой: {total} байт")

                    with open(dest_path, 'wb') as f:
                        while True:
                            try:
                                chunk = await asyncio.wait_for(
                                    resp.content.read(self.chunk_size),
                                    timeout=self._window(deadline, loop),
                                )
                            except asyncio.TimeoutError as e:
                                if loop.time() >= deadline:
                                    raise FetchTimeoutError(
                                        f"Превышено общее время скачивания ({self.total_timeout}s)"
                                    ) from e
                                if size == 0:
                                    raise FetchTimeoutError("Передача данных так и не началась") from e
                                raise FetchStalledError(
                                    f"Нет данных {self.stall_timeout}s, скачано {size} байт"
                                ) from e
                            except aiohttp.ClientError as e:
                                raise FetchError(f"Обрыв соединения после {size} байт: {e}") from e

                            if not chunk:
                                break
                            f.write(chunk)
                            size += len(chunk)
                            if size > self.max_bytes:
                                raise FetchError(f"Файл больше {self.max_bytes} байт")
                            if on_progress:
                                on_progress(size, total)

            if size == 0:
                raise FetchError("Сервер вернул пустой файл")
        except BaseException:
            self.remove(dest_path)
            raise

        logger.info(f"[fetch] ✅ Скачано {size} байт -> {dest_path}")
        return FetchResult(path=dest_path, size=size)
