from __future__ import annotations


class CreditError(Exception):
    pass


class InvalidInputError(CreditError):
    pass


class InvalidAmountError(InvalidInputError):
    pass


class InvalidLimitError(InvalidInputError):
    pass


class UserNotFoundError(CreditError):
    pass


class InsufficientCreditsError(CreditError):
    def __init__(self, *, needed: int, have: int) -> None:
        super().__init__(f"insufficient credits: needed={needed} have={have}")
        self.needed = needed
        self.have = have


class TransactionNotFoundError(CreditError):
    pass


class TransactionOwnershipMismatchError(CreditError):
    pass


class TransactionNotRefundableError(CreditError):
    pass


class GenerationValidationError(CreditError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class GenerationLoggingFailedError(CreditError):
    pass


class UnauthenticatedError(CreditError):
    pass


class RateLimitExceededError(CreditError):
    def __init__(self, *, scope: str, plan: str, limit: int, reset_at: int) -> None:
        super().__init__(f"rate limit exceeded: scope={scope} plan={plan}")
        self.scope = scope
        self.plan = plan
        self.limit = limit
        self.reset_at = reset_at
