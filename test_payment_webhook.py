"""
Тесты для PaymentService и webhook оплаты
"""
import hashlib
import hmac
import json
import unittest
from unittest.mock import AsyncMock, patch

import aiohttp
import httpx

from fakes import FakeDatabase
from src.errors import LedgerPersistenceError, PaymentError
from src.services.payment_service import PaymentService, format_price
from src.services.quota_ledger import QuotaLedger
from src.webhook import create_app, verify_signature

ORDER_ID = 'DOOD-1-1715000000000'


def settled_event(order_id: str = ORDER_ID, status: str = 'SETTLED') -> dict:
    return {'event': 'PAYMENT_SETTLED', 'data': {'order_id': order_id, 'status': status, 'amount': 10000}}


class PaymentTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.db = FakeDatabase()
        self.ledger = QuotaLedger(self.db, download_cost=15, free_quota=50, daily_bonus=50)
        self.payments = PaymentService(self.db, self.ledger, api_key='key', base_url='https://cashi.test/api/')
        self.db.orders[ORDER_ID] = {
            'orderId': ORDER_ID,
            'userId': '1',
            'packageId': 'pkg_100',
            'quota': 100,
            'amount': 10000,
            'status': 'PENDING',
        }


class TestPaymentService(PaymentTestCase):

    async def test_create_order(self):
        gateway = AsyncMock(return_value={
            'success': True, 'amount': 10000, 'checkout_url': 'https://pay/x', 'qrUrl': 'https://qr/x',
        })
        with patch.object(self.payments, '_request', gateway):
            order = await self.payments.create_order(1, 'pkg_100')

        method, path, body = gateway.await_args.args
        self.assertEqual((method, path), ('POST', '/create-order'))
        self.assertEqual(body['amount'], 10000)
        self.assertTrue(order['orderId'].startswith('DOOD-1-'))
        self.assertEqual(order['status'], 'PENDING')
        self.assertEqual(order['quota'], 100)
        self.assertEqual(order['checkoutUrl'], 'https://pay/x')
        self.assertIn('expiresAt', order)
        self.assertEqual(self.db.orders[order['orderId']], order)

    async def test_unknown_package(self):
        with self.assertRaises(PaymentError):
            await self.payments.create_order(1, 'pkg_nope')

    async def test_gateway_rejects_order(self):
        with patch.object(self.payments, '_request', AsyncMock(return_value={'success': False})):
            with self.assertRaises(PaymentError):
                await self.payments.create_order(1, 'pkg_250')

    async def test_gateway_unreachable(self):
        with patch.object(self.payments, '_request', AsyncMock(side_effect=aiohttp.ClientConnectionError())):
            with self.assertRaises(PaymentError):
                await self.payments.create_order(1, 'pkg_250')
            status = await self.payments.check_status(ORDER_ID)
        self.assertEqual(status, {'success': False, 'status': 'ERROR', 'amount': None})

    async def test_check_status(self):
        gateway = AsyncMock(return_value={'success': True, 'status': 'PENDING', 'amount': 10000})
        with patch.object(self.payments, '_request', gateway):
            status = await self.payments.check_status(ORDER_ID)
        gateway.assert_awaited_once_with('GET', f'/check-status/{ORDER_ID}')
        self.assertEqual(status, {'success': True, 'status': 'PENDING', 'amount': 10000})

    async def test_settle_once(self):
        first = await self.payments.settle(ORDER_ID)
        self.assertEqual(first.quota, 100)
        self.assertEqual(first.new_balance, 150)
        self.assertEqual(self.db.orders[ORDER_ID]['status'], 'SETTLED')

        self.assertIsNone(await self.payments.settle(ORDER_ID))
        self.assertEqual(await self.ledger.get_balance(1), 150)

    async def test_settle_unknown_order(self):
        self.assertIsNone(await self.payments.settle('DOOD-9-1'))

    async def test_failed_credit_can_be_retried(self):
        await self.ledger.get_balance(1)
        self.db.fail_writes = True
        with self.assertRaises(LedgerPersistenceError):
            await self.payments.settle(ORDER_ID)
        self.assertEqual(self.db.settled, set())
        self.assertEqual(self.db.orders[ORDER_ID]['status'], 'PENDING')

        self.db.fail_writes = False
        settlement = await self.payments.settle(ORDER_ID)
        self.assertEqual(settlement.new_balance, 150)

    def test_packages_and_price(self):
        self.assertEqual(format_price(10000), 'Rp 10.000')
        self.assertEqual(format_price(1500000), 'Rp 1.500.000')
        self.assertEqual([p.id for p in self.payments.get_packages()], ['pkg_100', 'pkg_250', 'pkg_500', 'pkg_1000'])
        self.assertTrue(self.payments.enabled)
        self.assertFalse(PaymentService(self.db, self.ledger, api_key='').enabled)


class TestWebhook(PaymentTestCase):
    """Webhook поверх httpx ASGI транспорта"""

    def setUp(self):
        super().setUp()
        self.notified = []

        async def notifier(settlement):
            self.notified.append(settlement)

        self.notifier = notifier

    def client(self, secret: str = '') -> httpx.AsyncClient:
        app = create_app(self.payments, notifier=self.notifier, secret=secret)
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url='http://webhook')

    async def test_health(self):
        async with self.client() as client:
            response = await client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok', 'service': 'quota-payment'})

    async def test_settled_event_credits_once(self):
        async with self.client() as client:
            first = await client.post('/webhook/cashi', json=settled_event())
            second = await client.post('/webhook/cashi', json=settled_event())

        self.assertEqual((first.status_code, first.text), (200, 'OK'))
        self.assertEqual((second.status_code, second.text), (200, 'OK'))
        self.assertEqual(await self.ledger.get_balance(1), 150)
        self.assertEqual(len(self.notified), 1)
        self.assertEqual(self.notified[0].order_id, ORDER_ID)

    async def test_test_order(self):
        async with self.client() as client:
            response = await client.post('/webhook/cashi', json=settled_event('TEST-123'))
        self.assertEqual(response.text, 'Test OK')
        self.assertEqual(self.notified, [])

    async def test_other_events_ignored(self):
        async with self.client() as client:
            pending = await client.post('/webhook/cashi', json=settled_event(status='PENDING'))
            other = await client.post('/webhook/cashi', json={'event': 'PAYMENT_EXPIRED', 'data': {}})
            broken = await client.post('/webhook/cashi', content=b'not json')

        for response in (pending, other, broken):
            self.assertEqual((response.status_code, response.text), (200, 'OK'))
        self.assertEqual(self.db.orders[ORDER_ID]['status'], 'PENDING')
        self.assertEqual(self.notified, [])

    async def test_notifier_failure_does_not_break_settlement(self):
        async def failing(settlement):
            raise RuntimeError("telegram недоступен")

        self.notifier = failing
        async with self.client() as client:
            response = await client.post('/webhook/cashi', json=settled_event())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(await self.ledger.get_balance(1), 150)

    async def test_signature(self):
        body = json.dumps(settled_event()).encode()
        signature = hmac.new(b'secret', body, hashlib.sha256).hexdigest()
        headers = {'Content-Type': 'application/json'}

        async with self.client(secret='secret') as client:
            unsigned = await client.post('/webhook/cashi', content=body, headers=headers)
            forged = await client.post(
                '/webhook/cashi', content=body, headers={**headers, 'X-Cashi-Signature': 'deadbeef'}
            )
            self.assertEqual(unsigned.status_code, 401)
            self.assertEqual(forged.status_code, 401)
            self.assertEqual(await self.ledger.get_balance(1), 50)

            signed = await client.post(
                '/webhook/cashi', content=body, headers={**headers, 'X-Cashi-Signature': signature}
            )
        self.assertEqual(signed.status_code, 200)
        self.assertEqual(await self.ledger.get_balance(1), 150)

    def test_verify_signature(self):
        body = b'{"event": "x"}'
        good = hmac.new(b'k', body, hashlib.sha256).hexdigest()
        self.assertTrue(verify_signature('k', body, good))
        self.assertTrue(verify_signature('k', body, good.upper()))
        self.assertFalse(verify_signature('k', body, None))
        self.assertFalse(verify_signature('other', body, good))

    async def test_check_endpoint(self):
        status = {'success': True, 'status': 'SETTLED', 'amount': 10000}
        with patch.object(self.payments, 'check_status', AsyncMock(return_value=status)):
            async with self.client() as client:
                response = await client.get(f'/check/{ORDER_ID}')
        self.assertEqual(response.json(), status)


if __name__ == '__main__':
    unittest.main()
