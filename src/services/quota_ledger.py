"""
QuotaLedger - учет квоты пользователей

Баланс, списания/зачисления и журнал транзакций.
Состояние хранится в памяти процесса и сохраняется в Redis (Database).
"""
import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from src.config import DOWNLOAD_COST, FREE_QUOTA, DAILY_BONUS, TRANSACTION_HISTORY_LIMIT
from src.errors import LedgerPersistenceError
from src.models.account import UserAccount, Transaction, TransactionKind

logger = logging.getLogger(__name__)


@dataclass
class BonusClaim:
    """
    Результат попытки получить ежедневный бонус

    Attributes:
        granted: Начислен ли бонус
        amount: Сколько начислено (0 если не начислено)
        new_balance: Баланс после попытки
        next_claim_in_hours: Через сколько часов можно снова (0 если можно сейчас)
    """
    granted: bool
    amount: int
    new_balance: int
    next_claim_in_hours: int = 0


class QuotaLedger:
    """
    Учет квоты

    Гарантии:
    - баланс никогда не уходит в минус (проверка и списание под замком аккаунта)
    - стартовый бонус + сумма транзакций == баланс
    - аккаунт в памяти заменяется только после успешной записи в Redis
    """

    def __init__(
        self,
        db,
        download_cost: int = DOWNLOAD_COST,
        free_quota: int = FREE_QUOTA,
        daily_bonus: int = DAILY_BONUS,
        history_limit: int = TRANSACTION_HISTORY_LIMIT,
        now_func: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            db: Экземпляр Database
            download_cost: Стоимость одного скачивания
            free_quota: Стартовый бонус нового пользователя
            daily_bonus: Размер ежедневного бонуса
            history_limit: Сколько последних транзакций хранить
            now_func: Источник локального времени (подменяется в тестах)
        """
        if download_cost <= 0:
            raise ValueError(f"Стоимость скачивания должна быть положительной: {download_cost}")
        self.db = db
        self.download_cost = download_cost
        self.free_quota = free_quota
        self.daily_bonus = daily_bonus
        self.history_limit = history_limit
        self._now = now_func
        self._accounts: Dict[str, UserAccount] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Старые слева, новые справа
        self._transactions = deque(maxlen=history_limit)

    async def load(self):
        """Загрузить аккаунты и журнал транзакций из Redis (при старте)"""
        accounts = await self.db.load_accounts()
        for user_id, data in accounts.items():
            self._accounts[str(user_id)] = UserAccount.from_dict(user_id, data)

        transactions = await self.db.load_transactions(self.history_limit)
        self._transactions.clear()
        for data in reversed(transactions):
            self._transactions.append(Transaction.from_dict(data))

        logger.info(
            f"[ledger] Загружено: аккаунтов={len(self._accounts)}, транзакций={len(self._transactions)}"
        )

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _load_or_create(self, user_id: str) -> UserAccount:
        """Вызывать только под замком аккаунта"""
        account = self._accounts.get(user_id)
        if account is not None:
            return account

        data = await self.db.get_account(user_id)
        if data:
            account = UserAccount.from_dict(user_id, data)
            self._accounts[user_id] = account
            return account

        now = self._now().isoformat()
        account = UserAccount(
            user_id=user_id,
            balance=self.free_quota,
            total_credited=self.free_quota,
            created_at=now,
            last_active_at=now,
        )
        await self._persist(account)
        logger.info(f"[ledger] Новый аккаунт {user_id}: стартовый бонус {self.free_quota}")
        return account

    async def _persist(self, account: UserAccount, transaction: Optional[Transaction] = None):
        try:
            await self.db.save_account(
                account.user_id,
                account.to_dict(),
                transaction.to_dict() if transaction else None,
                history_limit=self.history_limit,
            )
        except LedgerPersistenceError:
            logger.error(f"[ledger] Ошибка записи аккаунта {account.user_id}", exc_info=True)
            raise

        self._accounts[account.user_id] = account
        if transaction is not None:
            self._transactions.append(transaction)

    async def get_account(self, user_id) -> UserAccount:
        user_id = str(user_id)
        async with self._lock(user_id):
            return await self._load_or_create(user_id)

    async def get_balance(self, user_id) -> int:
        """
        Получить баланс (создает аккаунт со стартовым бонусом, если его нет)
        """
        account = await self.get_account(user_id)
        return account.balance

    async def has_sufficient(self, user_id, amount: Optional[int] = None) -> bool:
        if amount is None:
            amount = self.download_cost
        return await self.get_balance(user_id) >= amount

    async def debit(self, user_id, amount: Optional[int] = None, description: Optional[str] = None) -> bool:
        """
        Списать квоту за доставленное видео

        Args:
            user_id: ID пользователя
            amount: Сколько списать (по умолчанию стоимость скачивания)
            description: Описание транзакции

        Returns:
            True если списано, False если не хватает квоты (ничего не меняется)

        Raises:
            LedgerPersistenceError: если не удалось сохранить
        """
        if amount is None:
            amount = self.download_cost
        if amount <= 0:
            raise ValueError(f"Сумма списания должна быть положительной: {amount}")
        user_id = str(user_id)

        async with self._lock(user_id):
            account = await self._load_or_create(user_id)
            if account.balance < amount:
                logger.info(
                    f"[ledger] Недостаточно квоты: user={user_id}, баланс={account.balance}, нужно={amount}"
                )
                return False

            updated = replace(
                account,
                balance=account.balance - amount,
                total_downloads=account.total_downloads + 1,
                last_active_at=self._now().isoformat(),
            )
            transaction = Transaction(
                user_id=user_id,
                kind=TransactionKind.DEBIT,
                amount=-amount,
                description=description or f"Скачивание видео (-{amount})",
                timestamp=self._now().isoformat(),
            )
            await self._persist(updated, transaction)

        logger.info(f"[ledger] Списано {amount}: user={user_id}, баланс={updated.balance}")
        return True

    async def credit(self, user_id, amount: int, reason: str = "Пополнение",
                     kind: str = TransactionKind.CREDIT) -> int:
        """
        Зачислить квоту (покупка, бонус, ручное начисление админом)

        Returns:
            Новый баланс
        """
        if amount <= 0:
            raise ValueError(f"Сумма зачисления должна быть положительной: {amount}")
        user_id = str(user_id)

        async with self._lock(user_id):
            account = await self._load_or_create(user_id)
            updated = replace(
                account,
                balance=account.balance + amount,
                total_credited=account.total_credited + amount,
                last_active_at=self._now().isoformat(),
            )
            transaction = Transaction(
                user_id=user_id,
                kind=kind,
                amount=amount,
                description=reason,
                timestamp=self._now().isoformat(),
            )
            await self._persist(updated, transaction)

        logger.info(f"[ledger] Зачислено {amount} ({reason}): user={user_id}, баланс={updated.balance}")
        return updated.balance

    def _hours_until_next_claim(self, account: UserAccount, now: datetime) -> int:
        """0 если бонус можно получить сейчас, иначе часы до полуночи (округление вверх)"""
        if not account.last_bonus_claim_at:
            return 0
        last_claim = datetime.fromisoformat(account.last_bonus_claim_at)
        if now.date() > last_claim.date():
            return 0
        tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
        return max(1, math.ceil((tomorrow - now).total_seconds() / 3600))

    async def can_claim_daily_bonus(self, user_id) -> int:
        """
        Returns:
            0 если бонус доступен, иначе сколько часов ждать
        """
        account = await self.get_account(user_id)
        return self._hours_until_next_claim(account, self._now())

    async def claim_daily_bonus(self, user_id) -> BonusClaim:
        """
        Ежедневный бонус: не чаще одного раза за локальные календарные сутки
        """
        user_id = str(user_id)

        async with self._lock(user_id):
            account = await self._load_or_create(user_id)
            now = self._now()
            wait_hours = self._hours_until_next_claim(account, now)
            if wait_hours:
                return BonusClaim(False, 0, account.balance, wait_hours)

            updated = replace(
                account,
                balance=account.balance + self.daily_bonus,
                total_credited=account.total_credited + self.daily_bonus,
                last_bonus_claim_at=now.isoformat(),
                last_active_at=now.isoformat(),
            )
            transaction = Transaction(
                user_id=user_id,
                kind=TransactionKind.BONUS,
                amount=self.daily_bonus,
                description="Ежедневный бонус 🎁",
                timestamp=now.isoformat(),
            )
            await self._persist(updated, transaction)

        logger.info(f"[ledger] Ежедневный бонус {self.daily_bonus}: user={user_id}")
        return BonusClaim(True, self.daily_bonus, updated.balance, 0)

    def get_transaction_history(self, user_id, limit: int = 10) -> List[Transaction]:
        """
        Последние транзакции пользователя (новые первыми)
        Видны только транзакции, оставшиеся в журнале
        """
        user_id = str(user_id)
        history = [t for t in self._transactions if t.user_id == user_id]
        return list(reversed(history[-limit:])) if limit > 0 else []

    def get_stats(self) -> dict:
        """Общая статистика для админа"""
        today = self._now().date()
        accounts = list(self._accounts.values())
        return {
            'total_users': len(accounts),
            'total_quota_issued': sum(a.total_credited for a in accounts),
            'total_downloads': sum(a.total_downloads for a in accounts),
            'active_today': sum(
                1 for a in accounts
                if datetime.fromisoformat(a.last_active_at).date() == today
            ),
        }

    def known_user_ids(self) -> List[str]:
        """Все известные пользователи (для рассылки)"""
        return list(self._accounts.keys())
