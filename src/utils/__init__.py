"""
Утилиты для работы с URL
"""
from .utils import (
    extract_urls,
    is_supported_url,
    format_file_size,
    get_origin
)

__all__ = [
    'extract_urls',
    'is_supported_url',
    'format_file_size',
    'get_origin'
]
