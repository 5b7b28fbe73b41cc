from decimal import Decimal


class PayoutServiceError(Exception):
    """Base exception for settlement errors."""


class PayoutConfigurationError(PayoutServiceError):
    """Raised when PAYOUT_* settings are invalid."""


class PayoutValidationError(PayoutServiceError):
    """Raised for bad input (amounts, statuses). Nothing is mutated."""


class VendorNotEligibleError(PayoutServiceError):
    """Raised when the vendor is not approved/active or does not own the requested scope."""


class InsufficientBalanceError(PayoutServiceError):
    def __init__(self, requested: Decimal, available: Decimal):
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient balance. Requested: {requested}, available: {available}")


class ClaimConflictError(PayoutServiceError):
    """Raised when some revenue events were claimed by another batch first."""

    def __init__(self, expected: int, claimed: int):
        self.expected = expected
        self.claimed = claimed
        super().__init__(f"Revenue claim conflict: expected {expected} pending events, claimed {claimed}")


class SettlementConflictError(PayoutServiceError):
    """Raised when a batch could not be claimed even after retrying."""


class InvalidTransitionError(PayoutServiceError):
    """Raised when a payout batch status change is not allowed."""


class ReconciliationError(PayoutServiceError):
    """Raised when stored batch totals disagree with its included revenue events."""
