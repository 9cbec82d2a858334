"""
Тесты для QuotaLedger
"""
import asyncio
import unittest
from datetime import datetime

from fakes import FakeDatabase
from src.errors import LedgerPersistenceError
from src.services.quota_ledger import QuotaLedger


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestQuotaLedger(unittest.IsolatedAsyncioTestCase):
    """Тесты учета квоты"""

    def setUp(self):
        self.db = FakeDatabase()
        self.clock = Clock(datetime(2024, 5, 10, 12, 0, 0))
        self.ledger = QuotaLedger(self.db, download_cost=15, free_quota=50, daily_bonus=50, now_func=self.clock)

    def reconcile(self, user_id: str) -> int:
        """Стартовый бонус + сумма транзакций пользователя"""
        return self.ledger.free_quota + sum(
            t.amount for t in self.ledger._transactions if t.user_id == user_id
        )

    async def test_new_account_gets_starting_grant(self):
        """Новый пользователь получает стартовый бонус, и он сохраняется"""
        self.assertEqual(await self.ledger.get_balance(1), 50)
        self.assertEqual(self.db.accounts['1']['balance'], 50)
        self.assertEqual(self.db.accounts['1']['totalCredited'], 50)
        # Стартовый бонус не пишется в журнал
        self.assertEqual(self.db.transactions, [])

    async def test_debit_success(self):
        """Списание за скачивание: 50 -> 35"""
        self.assertTrue(await self.ledger.debit(1, 15, "Скачивание видео"))
        account = await self.ledger.get_account(1)
        self.assertEqual(account.balance, 35)
        self.assertEqual(account.total_downloads, 1)
        self.assertEqual(self.db.transactions[0]['kind'], 'debit')
        self.assertEqual(self.db.transactions[0]['amount'], -15)
        self.assertEqual(self.db.transactions[0]['userId'], '1')

    async def test_debit_insufficient_changes_nothing(self):
        """Не хватает квоты: False, баланс и журнал не меняются"""
        self.db.accounts['2'] = {'balance': 10, 'totalDownloads': 0, 'totalCredited': 10}
        self.assertFalse(await self.ledger.debit(2))
        self.assertEqual(await self.ledger.get_balance(2), 10)
        self.assertEqual(self.db.transactions, [])
        self.assertFalse(await self.ledger.has_sufficient(2))

    async def test_concurrent_debits_never_overdraw(self):
        """Параллельные списания: баланс никогда не уходит в минус"""
        results = await asyncio.gather(*(self.ledger.debit(1, 15) for _ in range(10)))
        self.assertEqual(sum(results), 3)
        self.assertEqual(await self.ledger.get_balance(1), 5)
        self.assertEqual(self.db.accounts['1']['balance'], 5)

    async def test_reconciliation(self):
        """Баланс == стартовый бонус + сумма транзакций"""
        await self.ledger.debit(1, 15)
        await self.ledger.credit(1, 100, "Пополнение")
        await self.ledger.claim_daily_bonus(1)
        await self.ledger.debit(1, 15)
        balance = await self.ledger.get_balance(1)
        self.assertEqual(balance, 50 - 15 + 100 + 50 - 15)
        self.assertEqual(balance, self.reconcile('1'))

    async def test_credit_rejects_non_positive(self):
        with self.assertRaises(ValueError):
            await self.ledger.credit(1, 0)
        with self.assertRaises(ValueError):
            await self.ledger.credit(1, -5)

    async def test_debit_rejects_non_positive(self):
        balance = await self.ledger.get_balance(1)
        with self.assertRaises(ValueError):
            await self.ledger.debit(1, 0)
        with self.assertRaises(ValueError):
            await self.ledger.debit(1, -15)
        account = await self.ledger.get_account(1)
        self.assertEqual(account.balance, balance)
        self.assertEqual(account.total_downloads, 0)
        self.assertEqual(self.db.transactions, [])

        with self.assertRaises(ValueError):
            QuotaLedger(self.db, download_cost=0)

    async def test_daily_bonus_once_per_local_day(self):
        """Бонус не чаще раза в календарные сутки"""
        first = await self.ledger.claim_daily_bonus(1)
        self.assertTrue(first.granted)
        self.assertEqual(first.new_balance, 100)

        self.clock.now = datetime(2024, 5, 10, 22, 30, 0)
        second = await self.ledger.claim_daily_bonus(1)
        self.assertFalse(second.granted)
        self.assertEqual(second.new_balance, 100)
        # До полуночи 1.5 часа, округляем вверх
        self.assertEqual(second.next_claim_in_hours, 2)
        self.assertEqual(await self.ledger.can_claim_daily_bonus(1), 2)

        # Новые сутки наступают в полночь, а не через 24 часа
        self.clock.now = datetime(2024, 5, 11, 0, 5, 0)
        self.assertEqual(await self.ledger.can_claim_daily_bonus(1), 0)
        third = await self.ledger.claim_daily_bonus(1)
        self.assertTrue(third.granted)
        self.assertEqual(third.new_balance, 150)

    async def test_concurrent_bonus_claims_grant_once(self):
        claims = await asyncio.gather(*(self.ledger.claim_daily_bonus(1) for _ in range(5)))
        self.assertEqual(sum(1 for c in claims if c.granted), 1)
        self.assertEqual(await self.ledger.get_balance(1), 100)

    async def test_persistence_failure_keeps_memory_unchanged(self):
        """Ошибка записи: LedgerPersistenceError, баланс в памяти не меняется"""
        await self.ledger.get_balance(1)
        self.db.fail_writes = True
        with self.assertRaises(LedgerPersistenceError):
            await self.ledger.debit(1, 15)
        with self.assertRaises(LedgerPersistenceError):
            await self.ledger.credit(1, 100)
        self.db.fail_writes = False
        self.assertEqual(await self.ledger.get_balance(1), 50)
        self.assertEqual(self.ledger.get_transaction_history(1), [])

    async def test_load_restores_state(self):
        """После перезапуска аккаунты и журнал читаются из хранилища"""
        await self.ledger.debit(1, 15)
        await self.ledger.credit(2, 30, "Начисление")

        restored = QuotaLedger(self.db, download_cost=15, free_quota=50, now_func=self.clock)
        await restored.load()
        self.assertEqual(await restored.get_balance(1), 35)
        self.assertEqual(await restored.get_balance(2), 80)
        self.assertEqual([t.amount for t in restored.get_transaction_history(1)], [-15])
        self.assertEqual(sorted(restored.known_user_ids()), ['1', '2'])

    async def test_history_newest_first_and_limited(self):
        for amount in (10, 20, 30):
            await self.ledger.credit(1, amount, f"+{amount}")
        await self.ledger.credit(2, 99, "чужая")
        history = self.ledger.get_transaction_history(1, limit=2)
        self.assertEqual([t.amount for t in history], [30, 20])

    async def test_transaction_log_is_capped(self):
        ledger = QuotaLedger(self.db, free_quota=50, history_limit=3, now_func=self.clock)
        for amount in range(1, 6):
            await ledger.credit(1, amount)
        self.assertEqual(len(ledger._transactions), 3)
        self.assertEqual(len(self.db.transactions), 3)
        self.assertEqual([t.amount for t in ledger.get_transaction_history(1)], [5, 4, 3])

    async def test_stats(self):
        await self.ledger.debit(1, 15)
        await self.ledger.credit(2, 100)
        stats = self.ledger.get_stats()
        self.assertEqual(stats['total_users'], 2)
        self.assertEqual(stats['total_downloads'], 1)
        self.assertEqual(stats['total_quota_issued'], 50 + 50 + 100)
        self.assertEqual(stats['active_today'], 2)


if __name__ == '__main__':
    unittest.main()
