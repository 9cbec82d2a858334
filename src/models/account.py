"""
Модели учета квоты: аккаунт пользователя и запись журнала транзакций
Сериализуются в JSON-документы для хранения в Redis
"""
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional


def _now_iso() -> str:
    return datetime.now().isoformat()


def _new_transaction_id() -> str:
    # txn_<миллисекунды>_<случайный хвост>
    return f"txn_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class UserAccount:
    """
    Аккаунт пользователя

    Создается лениво при первом запросе баланса со стартовым бонусом.
    Изменяется только через debit/credit, никогда не удаляется.
    """
    user_id: str
    balance: int
    total_downloads: int = 0
    total_credited: int = 0
    created_at: str = field(default_factory=_now_iso)
    last_active_at: str = field(default_factory=_now_iso)
    last_bonus_claim_at: Optional[str] = None

    def to_dict(self) -> dict:
        """Документ для хранения (ключ - user_id, поэтому сам user_id не пишем)"""
        return {
            'balance': self.balance,
            'totalDownloads': self.total_downloads,
            'totalCredited': self.total_credited,
            'createdAt': self.created_at,
            'lastActiveAt': self.last_active_at,
            'lastBonusClaimAt': self.last_bonus_claim_at,
        }

    @classmethod
    def from_dict(cls, user_id: str, data: dict) -> 'UserAccount':
        return cls(
            user_id=str(user_id),
            balance=int(data.get('balance', 0)),
            total_downloads=int(data.get('totalDownloads', 0)),
            total_credited=int(data.get('totalCredited', 0)),
            created_at=data.get('createdAt') or _now_iso(),
            last_active_at=data.get('lastActiveAt') or _now_iso(),
            last_bonus_claim_at=data.get('lastBonusClaimAt'),
        )


class TransactionKind:
    DEBIT = 'debit'
    CREDIT = 'credit'
    BONUS = 'bonus'


@dataclass
class Transaction:
    """Запись журнала (только добавление). amount со знаком: списание < 0"""
    user_id: str
    kind: str
    amount: int
    description: str
    id: str = field(default_factory=_new_transaction_id)
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['userId'] = data.pop('user_id')
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Transaction':
        return cls(
            id=data['id'],
            user_id=str(data['userId']),
            kind=data['kind'],
            amount=int(data['amount']),
            description=data.get('description', ''),
            timestamp=data.get('timestamp') or _now_iso(),
        )
