"""
PaymentService - покупка пакетов квоты через QRIS (Cashi)

Создание заказа, проверка статуса и однократное зачисление оплаченного заказа.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import aiohttp

from src.config import CASHI_API_KEY, CASHI_BASE_URL
from src.errors import PaymentError

logger = logging.getLogger(__name__)

ORDER_PAYMENT_WINDOW = timedelta(minutes=10)


@dataclass(frozen=True)
class QuotaPackage:
    id: str
    quota: int
    price: int
    label: str


PACKAGES = [
    QuotaPackage('pkg_100', 100, 10000, '100 квоты'),
    QuotaPackage('pkg_250', 250, 22500, '250 квоты (-10%)'),
    QuotaPackage('pkg_500', 500, 40000, '500 квоты (-20%)'),
    QuotaPackage('pkg_1000', 1000, 70000, '1000 квоты (-30%)'),
]


@dataclass
class Settlement:
    """Результат зачисления оплаченного заказа"""
    order_id: str
    user_id: str
    quota: int
    amount: int
    new_balance: int


def format_price(amount: int) -> str:
    """10000 -> 'Rp 10.000'"""
    return f"Rp {amount:,}".replace(',', '.')


class PaymentService:
    """
    Сервис оплаты

    Заказы хранятся в Redis. Зачисление идемпотентно: повторный webhook
    по тому же order_id квоту не начисляет.
    """

    def __init__(self, db, ledger, api_key: str = CASHI_API_KEY, base_url: str = CASHI_BASE_URL,
                 timeout: float = 15.0):
        """
        Args:
            db: Экземпляр Database
            ledger: Экземпляр QuotaLedger
            api_key: Ключ API Cashi
            base_url: Базовый URL API Cashi
            timeout: Таймаут запросов к шлюзу в секундах
        """
        self.db = db
        self.ledger = ledger
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def get_packages(self) -> List[QuotaPackage]:
        return list(PACKAGES)

    def get_package(self, package_id: str) -> Optional[QuotaPackage]:
        for package in PACKAGES:
            if package.id == package_id:
                return package
        return None

    async def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> dict:
        headers = {'X-API-KEY': self.api_key}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, f"{self.base_url}{path}", json=json_body, headers=headers) as resp:
                return await resp.json(content_type=None)

    async def create_order(self, user_id, package_id: str) -> dict:
        """
        Создать заказ на оплату пакета

        Returns:
            Документ заказа (orderId, quota, amount, checkoutUrl, qrUrl, expiresAt, ...)

        Raises:
            PaymentError: если пакет не найден или шлюз отклонил заказ
        """
        package = self.get_package(package_id)
        if package is None:
            raise PaymentError(f"Пакет не найден: {package_id}")

        order_id = f"DOOD-{user_id}-{int(time.time() * 1000)}"
        try:
            data = await self._request('POST', '/create-order', {'amount': package.price, 'order_id': order_id})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[payment] Ошибка создания заказа {order_id}: {e}")
            raise PaymentError(f"Шлюз недоступен: {e}") from e

        if not data or not data.get('success'):
            logger.error(f"[payment] Шлюз отклонил заказ {order_id}: {data}")
            raise PaymentError("Не удалось создать заказ")

        now = datetime.now()
        order = {
            'orderId': order_id,
            'userId': str(user_id),
            'packageId': package.id,
            'quota': package.quota,
            'amount': data.get('amount', package.price),
            'status': 'PENDING',
            'checkoutUrl': data.get('checkout_url'),
            'qrUrl': data.get('qrUrl'),
            'createdAt': now.isoformat(),
            'expiresAt': (now + ORDER_PAYMENT_WINDOW).isoformat(),
        }
        await self.db.save_order(order_id, order)
        logger.info(f"[payment] Заказ создан: {order_id}, user={user_id}, пакет={package.id}")
        return order

    async def check_status(self, order_id: str) -> dict:
        """
        Проверить статус заказа в шлюзе

        Returns:
            {'success': bool, 'status': str, 'amount': int | None}
        """
        try:
            data = await self._request('GET', f"/check-status/{order_id}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[payment] Ошибка проверки статуса {order_id}: {e}")
            return {'success': False, 'status': 'ERROR', 'amount': None}

        if data and data.get('success'):
            return {'success': True, 'status': data.get('status'), 'amount': data.get('amount')}
        return {'success': False, 'status': 'UNKNOWN', 'amount': None}

    async def get_order(self, order_id: str) -> Optional[dict]:
        return await self.db.get_order(order_id)

    async def settle(self, order_id: str) -> Optional[Settlement]:
        """
        Зачислить квоту по оплаченному заказу (ровно один раз)

        Returns:
            Settlement или None, если заказ неизвестен или уже зачислен
        """
        order = await self.db.get_order(order_id)
        if not order:
            logger.warning(f"[payment] Заказ не найден: {order_id}")
            return None
        if order.get('status') == 'SETTLED':
            logger.info(f"[payment] Заказ {order_id} уже зачислен")
            return None

        if not await self.db.claim_order_settlement(order_id):
            return None

        quota = int(order['quota'])
        try:
            new_balance = await self.ledger.credit(
                order['userId'], quota, f"Пополнение {quota} квоты через QRIS ({order_id})"
            )
        except Exception:
            logger.error(f"[payment] Не удалось зачислить заказ {order_id}", exc_info=True)
            await self.db.release_order_settlement(order_id)
            raise

        order['status'] = 'SETTLED'
        order['settledAt'] = datetime.now().isoformat()
        await self.db.update_order(order_id, order)

        logger.info(f"[payment] ✅ Зачислено {quota} квоты user={order['userId']}, баланс={new_balance}")
        return Settlement(
            order_id=order_id,
            user_id=order['userId'],
            quota=quota,
            amount=int(order.get('amount') or 0),
            new_balance=new_balance,
        )
