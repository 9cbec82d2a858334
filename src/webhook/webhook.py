"""
Webhook для уведомлений об оплате от Cashi.
Работает в процессе бота (тот же event loop и тот же QuotaLedger).
"""
import hashlib
import hmac
import json
import logging
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.services.payment_service import Settlement

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Cashi-Signature'


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 тела запроса в hex"""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def create_app(
    payment_service,
    notifier: Optional[Callable[[Settlement], Awaitable[None]]] = None,
    secret: str = '',
) -> FastAPI:
    """
    Создать приложение webhook

    Args:
        payment_service: PaymentService (зачисление по order_id)
        notifier: Корутина для уведомления пользователя о зачислении
        secret: Секрет подписи; пустой - подпись не проверяется
    """
    app = FastAPI(title="Quota Payment Webhook", version="0.1.0")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "quota-payment"}

    @app.post("/webhook/cashi")
    async def cashi_webhook(request: Request):
        body = await request.body()
        if secret and not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("[webhook] Неверная подпись запроса")
            return PlainTextResponse("Invalid signature", status_code=401)

        # Шлюз повторяет запрос при любом ответе кроме 200, поэтому ошибки только логируем
        try:
            payload = json.loads(body or b'{}')
            event = payload.get('event')
            data = payload.get('data') or {}
            order_id = data.get('order_id') or ''
            logger.info(f"[webhook] Получено событие {event}, заказ {order_id}")

            if event != 'PAYMENT_SETTLED':
                return PlainTextResponse("OK")
            if order_id.startswith('TEST-'):
                logger.info("[webhook] Тестовый запрос от шлюза")
                return PlainTextResponse("Test OK")
            if data.get('status') != 'SETTLED':
                return PlainTextResponse("OK")

            settlement = await payment_service.settle(order_id)
            if settlement and notifier:
                try:
                    await notifier(settlement)
                except Exception as e:
                    logger.error(f"[webhook] Не удалось уведомить user={settlement.user_id}: {e}")
        except Exception as e:
            logger.error(f"[webhook] Ошибка обработки запроса: {e}", exc_info=True)

        return PlainTextResponse("OK")

    @app.get("/check/{order_id}")
    async def check_order(order_id: str):
        status = await payment_service.check_status(order_id)
        return JSONResponse(status)

    return app
