"""
Сервисы: экстракторы, подготовка ссылок, учет квоты, оплата и рассылка
"""
from .base import BaseExtractor, select_best_url
from .browser_extractor import BrowserExtractor
from .http_extractor import HttpExtractor
from .ytdlp_service import YtDlpService
from .service_factory import ServiceFactory
from .link_processing_service import LinkProcessingService, PreparedLink
from .quota_ledger import QuotaLedger, BonusClaim
from .payment_service import PaymentService, QuotaPackage, Settlement
from .broadcast_service import broadcast, BroadcastResult

__all__ = [
    'BaseExtractor',
    'select_best_url',
    'BrowserExtractor',
    'HttpExtractor',
    'YtDlpService',
    'ServiceFactory',
    'LinkProcessingService',
    'PreparedLink',
    'QuotaLedger',
    'BonusClaim',
    'PaymentService',
    'QuotaPackage',
    'Settlement',
    'broadcast',
    'BroadcastResult',
]
