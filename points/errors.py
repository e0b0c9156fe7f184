from typing import Any, Optional


class PointsServiceError(Exception):
    """Base class for errors raised by the points, redemption and issue services."""

    error_code = "ERR_POINTS"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidAmountError(PointsServiceError):
    error_code = "ERR_INVALID_AMOUNT"


class InsufficientFundsError(PointsServiceError):
    error_code = "ERR_INSUFFICIENT_FUNDS"

    def __init__(self, user_id, balance: int, required: int):
        super().__init__(
            f"Insufficient points: balance {balance}, required {required}",
            {"user_id": str(user_id), "balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class UserNotFoundError(PointsServiceError):
    error_code = "ERR_USER_NOT_FOUND"
    status_code = 404


class IssueNotFoundError(PointsServiceError):
    error_code = "ERR_ISSUE_NOT_FOUND"
    status_code = 404


class RewardNotFoundError(PointsServiceError):
    error_code = "ERR_REWARD_NOT_FOUND"
    status_code = 404


class RewardUnavailableError(PointsServiceError):
    error_code = "ERR_REWARD_UNAVAILABLE"
    status_code = 409


class OutOfStockError(PointsServiceError):
    error_code = "ERR_OUT_OF_STOCK"
    status_code = 409


class RedemptionNotFoundError(PointsServiceError):
    error_code = "ERR_REDEMPTION_NOT_FOUND"
    status_code = 404


class RedemptionAlreadyUsedError(PointsServiceError):
    error_code = "ERR_REDEMPTION_USED"
    status_code = 409


class UnauthorizedError(PointsServiceError):
    error_code = "ERR_UNAUTHORIZED"
    status_code = 403


class PersistenceFailureError(PointsServiceError):
    """The store rejected a write. Callers must not assume any part of the operation applied."""

    error_code = "ERR_PERSISTENCE"
    status_code = 503


class ValidationUnavailableError(PointsServiceError):
    """Classifier unreachable or unusable. Recovered inside the validator."""

    error_code = "ERR_VALIDATION_UNAVAILABLE"
    status_code = 503
