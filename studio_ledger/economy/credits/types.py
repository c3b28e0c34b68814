from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class GenerationType(str, Enum):
    APPAREL = "apparel"
    PRODUCT = "product"
    VIDEO = "video"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    GRANT = "grant"
    REFUND = "refund"
    MONTHLY_RESET = "monthly_reset"
    USAGE = "usage"


class TransactionDirection(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


@dataclass(slots=True)
class CreditAccount:
    user_id: str
    email: str | None
    plan_tier: PlanTier
    credits_balance: int


@dataclass(slots=True)
class CreditTransactionResult:
    transaction_id: UUID
    balance_after: int
    idempotent_replay: bool = False


@dataclass(slots=True)
class CreditTransactionView:
    transaction_id: UUID
    user_id: str
    transaction_type: TransactionType
    direction: TransactionDirection
    amount: int
    balance_after: int
    description: str
    related_generation_id: UUID | None
    refund_of_transaction_id: UUID | None
    created_at: datetime
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def delta(self) -> int:
        return self.amount if self.direction is TransactionDirection.CREDIT else -self.amount


@dataclass(slots=True)
class UsageEventView:
    event_id: int
    event_type: str
    cost: float
    tokens: int | None
    request_id: str | None
    created_at: datetime


@dataclass(slots=True)
class UsageEventResult:
    event_id: int
    new_balance: int
    was_duplicate: bool
    credits_charged: int = 0
