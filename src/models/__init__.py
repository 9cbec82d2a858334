"""
Модели данных конвейера скачивания и учета квоты
"""
from .extraction_result import ExtractionResult
from .download_job import DownloadJob, JobState
from .download_response import DownloadResponse
from .batch import Batch, BatchItem, BatchProposal, BatchReport, BatchConfirmStatus
from .account import UserAccount, Transaction, TransactionKind

__all__ = [
    'ExtractionResult',
    'DownloadJob',
    'JobState',
    'DownloadResponse',
    'Batch',
    'BatchItem',
    'BatchProposal',
    'BatchReport',
    'BatchConfirmStatus',
    'UserAccount',
    'Transaction',
    'TransactionKind',
]
