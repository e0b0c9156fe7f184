"""
Points Ledger and Redemption Engine for Civic Issue Reports

This module provides:
- Append-only ledger entries with a denormalised balance cache
- Awards, deductions and rollbacks with idempotence guards
- Atomic conditional deduction so concurrent spends never go negative
- Reward redemption with unique codes and inventory tracking
- Balance reconciliation from the ledger
"""

from .models import (
    ActionType,
    IssueCategory,
    IssueStatus,
    PointsTransaction,
    Redemption,
    Reward,
    User,
    UserBalance,
)
from .redemption import RedemptionService
from .service import PointsService
from .storage import InMemoryStorage

__all__ = [
    "ActionType",
    "IssueCategory",
    "IssueStatus",
    "PointsTransaction",
    "Redemption",
    "Reward",
    "User",
    "UserBalance",
    "PointsService",
    "RedemptionService",
    "InMemoryStorage",
]
