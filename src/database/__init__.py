"""
Модуль для работы с хранилищем (Redis)
"""
from .redis_db import Database

__all__ = ['Database']
