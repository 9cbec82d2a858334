"""
Модуль для скачивания видео: очередь одиночных задач и пакетная загрузка
"""
from .media_fetcher import MediaFetcher, FetchResult
from .status_ticker import StatusTicker
from .download_manager import DownloadManager, extract_media
from .batch_manager import BatchManager

__all__ = ['MediaFetcher', 'FetchResult', 'StatusTicker', 'DownloadManager', 'extract_media', 'BatchManager']
