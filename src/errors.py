"""
Ошибки конвейера скачивания и хранилища квоты

Каждая ошибка конвейера несет:
- reason: ключ шаблона сообщения для пользователя (src/bot/messages.py)
- retryable: можно ли повторить попытку в пакетном режиме
"""


class DownloadError(Exception):
    """Базовая ошибка конвейера извлечение -> скачивание -> отправка"""

    reason = 'generic'
    retryable = True


class SourceUnreachableError(DownloadError):
    """Страница источника недоступна (сеть, навигация, таймаут навигации)"""

    reason = 'source_unreachable'
    retryable = True


class ContentRemovedError(DownloadError):
    """Источник явно сообщает, что видео удалено или не найдено"""

    reason = 'content_removed'
    retryable = False


class ExtractionTimeoutError(DownloadError):
    """Извлечение не уложилось в отведенное время"""

    reason = 'extraction_timeout'
    retryable = True


class NoMediaFoundError(DownloadError):
    """Страница обработана, но ни один кандидат не прошел политику выбора"""

    reason = 'no_media_found'
    retryable = False


class FetchError(DownloadError):
    """Ошибка передачи файла"""

    reason = 'fetch_failed'
    retryable = True


class FetchTimeoutError(FetchError):
    """Превышено общее время передачи или передача так и не началась"""

    reason = 'fetch_timeout'


class FetchStalledError(FetchError):
    """Передача началась, но перестала продвигаться"""

    reason = 'fetch_stalled'


class RelayError(DownloadError):
    """Получатель отклонил файл (например, превышен лимит размера)"""

    reason = 'relay_failed'


class LedgerPersistenceError(Exception):
    """Не удалось сохранить состояние квоты"""


class PaymentError(Exception):
    """Платежный шлюз отклонил запрос или недоступен"""
