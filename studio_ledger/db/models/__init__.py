from studio_ledger.db.models.base import Base
from studio_ledger.db.models.credit_transactions import CreditTransaction
from studio_ledger.db.models.generations import Generation
from studio_ledger.db.models.rate_limit_buckets import RateLimitBucket
from studio_ledger.db.models.usage_analytics import UsageAnalytics
from studio_ledger.db.models.usage_events import UsageEvent
from studio_ledger.db.models.users import User

__all__ = [
    "Base",
    "CreditTransaction",
    "Generation",
    "RateLimitBucket",
    "UsageAnalytics",
    "UsageEvent",
    "User",
]
