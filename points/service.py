import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from core.config import Settings, get_settings

from .errors import (
    InsufficientFundsError,
    InvalidAmountError,
    IssueNotFoundError,
    PersistenceFailureError,
    PointsServiceError,
    UserNotFoundError,
)
from .models import (
    ActionType,
    PointsChangeResult,
    PointsHistoryResponse,
    PointsStats,
    PointsTransaction,
    ReconcileResult,
    User,
    UserBalance,
)
from .storage import InMemoryStorage, StorageError

logger = logging.getLogger("civic.points")

# Issue-scoped awards that may only ever be granted once per (user, issue).
ONE_SHOT_ISSUE_ACTIONS = frozenset({ActionType.REPORT_RESOLVED})


class PointsService:
    """
    The only writer of ledger entries and of the cached balance.

    Each mutation appends exactly one entry (or none when guarded) and moves
    the cache by the same value while holding the storage transaction.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def award(
        self,
        user_id: UUID,
        amount: int,
        action_type: ActionType,
        issue_id: Optional[UUID] = None,
    ) -> PointsChangeResult:
        self._require_positive(amount)
        action_type = ActionType(action_type)

        with self.storage.transaction():
            self._require_user(user_id)
            issue = self._require_issue(issue_id) if issue_id else None

            if action_type in ONE_SHOT_ISSUE_ACTIONS:
                existing = self.storage.find_ledger_entries(
                    user_id=user_id, issue_id=issue_id, action_type=action_type
                )
                if existing:
                    logger.info(
                        "Duplicate award skipped: %s already granted to user %s for issue %s",
                        action_type.value, user_id, issue_id,
                    )
                    return PointsChangeResult(
                        applied=False,
                        message=f"Points for {action_type.value} already awarded for issue {issue_id}",
                    )

            entry, balance = self._write_entry(user_id, action_type, amount, issue_id=issue_id)

            if issue is not None:
                self._update_issue_points(issue_id, issue["points_awarded"] + amount)

        logger.info("Awarded %d points (%s) to user %s", amount, action_type.value, user_id)
        return PointsChangeResult(
            applied=True, amount=amount, entry=entry, balance_after=balance,
            message=f"Awarded {amount} points",
        )

    def deduct(
        self,
        user_id: UUID,
        amount: int,
        action_type: ActionType = ActionType.REWARD_REDEMPTION,
        reward_id: Optional[UUID] = None,
    ) -> PointsChangeResult:
        """
        Spend points if the balance covers them.

        Unlike ``award``, the cache moves before the ledger: the conditional
        decrement is what decides between concurrent spends, and a failed
        check must leave no entry behind. If the entry write then fails the
        decrement is undone from the ledger. A crash between the two writes
        leaves the cache below the ledger, which ``reconcile_balance`` repairs
        and which can never let a user overspend.
        """
        self._require_positive(amount)
        action_type = ActionType(action_type)

        with self.storage.transaction():
            user = self._require_user(user_id)
            try:
                balance = self.storage.decrement_balance_if_sufficient(user_id, amount)
            except StorageError as e:
                raise PersistenceFailureError(f"Could not update balance for user {user_id}") from e
            if balance is None:
                raise InsufficientFundsError(user_id, user.points_balance, amount)

            entry_data = self._entry_data(user_id, action_type, -amount, reward_id=reward_id)
            try:
                self.storage.append_ledger_entry(entry_data)
            except StorageError as e:
                logger.error("Ledger write failed for deduction of %d from user %s", amount, user_id)
                # Give the points back so the cache never runs ahead of the ledger.
                self._compensate_balance(user_id, entry_data["id"])
                raise PersistenceFailureError(f"Could not record deduction for user {user_id}") from e

        logger.info("Deducted %d points (%s) from user %s", amount, action_type.value, user_id)
        return PointsChangeResult(
            applied=True, amount=-amount, entry=PointsTransaction(**entry_data),
            balance_after=balance, message=f"Deducted {amount} points",
        )

    def rollback(self, user_id: UUID, issue_id: UUID, amount: Optional[int] = None) -> PointsChangeResult:
        """
        Reverse all points granted for an issue that turned out to be invalid.

        ``amount`` defaults to the issue's ``points_awarded``; any other value
        is rejected so the issue's ledger entries always sum to that field.
        """
        if amount is not None:
            self._require_positive(amount)

        with self.storage.transaction():
            issue = self._require_issue(issue_id)
            awarded = issue["points_awarded"]
            if awarded == 0:
                return PointsChangeResult(applied=False, message=f"No points to roll back for issue {issue_id}")
            if amount is None:
                amount = awarded
            elif amount != awarded:
                raise InvalidAmountError(
                    f"Rollback of {amount} does not match {awarded} points awarded for issue {issue_id}",
                    {"issue_id": str(issue_id), "points_awarded": awarded},
                )
            self._require_user(user_id)

            entry, balance = self._write_entry(user_id, ActionType.ROLLBACK_INVALID, -amount, issue_id=issue_id)
            self._update_issue_points(issue_id, 0)

        logger.info("Rolled back %d points from user %s for invalid issue %s", amount, user_id, issue_id)
        return PointsChangeResult(
            applied=True, amount=-amount, entry=entry, balance_after=balance,
            message=f"Rolled back {amount} points",
        )

    def refund(self, user_id: UUID, amount: int, reward_id: Optional[UUID] = None) -> PointsChangeResult:
        """Give back points from a redemption that could not be completed."""
        self._require_positive(amount)

        with self.storage.transaction():
            self._require_user(user_id)
            entry, balance = self._write_entry(user_id, ActionType.REWARD_REFUND, amount, reward_id=reward_id)

        logger.info("Refunded %d points to user %s for reward %s", amount, user_id, reward_id)
        return PointsChangeResult(
            applied=True, amount=amount, entry=entry, balance_after=balance,
            message=f"Refunded {amount} points",
        )

    def award_referral_bonus(self, user_id: UUID, referred_user_id: UUID) -> PointsChangeResult:
        if user_id == referred_user_id:
            raise PointsServiceError("A user cannot refer themselves")
        amount = self.settings.REFERRAL_BONUS_POINTS

        with self.storage.transaction():
            self._require_user(user_id)
            self._require_user(referred_user_id)
            existing = self.storage.find_ledger_entries(
                user_id=user_id, action_type=ActionType.REFERRAL, referred_user_id=referred_user_id
            )
            if existing:
                logger.info("Referral bonus for %s already awarded to %s", referred_user_id, user_id)
                return PointsChangeResult(applied=False, message="Referral bonus already awarded")
            entry, balance = self._write_entry(
                user_id, ActionType.REFERRAL, amount, referred_user_id=referred_user_id
            )

        return PointsChangeResult(
            applied=True, amount=amount, entry=entry, balance_after=balance,
            message=f"Awarded {amount} referral points",
        )

    def award_daily_login(self, user_id: UUID, now: Optional[datetime] = None) -> PointsChangeResult:
        now = now or datetime.now(timezone.utc)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        amount = self.settings.DAILY_LOGIN_POINTS

        with self.storage.transaction():
            self._require_user(user_id)
            today = [
                e for e in self.storage.find_ledger_entries(user_id=user_id, action_type=ActionType.DAILY_LOGIN)
                if e["created_at"] >= start_of_day
            ]
            if today:
                return PointsChangeResult(applied=False, message="Daily login bonus already awarded today")
            entry, balance = self._write_entry(user_id, ActionType.DAILY_LOGIN, amount, created_at=now)

        return PointsChangeResult(
            applied=True, amount=amount, entry=entry, balance_after=balance,
            message=f"Awarded {amount} daily login points",
        )

    def reconcile_balance(self, user_id: UUID) -> ReconcileResult:
        """Maintenance: recompute the cached balance from the ledger."""
        with self.storage.transaction():
            user = self._require_user(user_id)
            ledger_total = self._ledger_total(user_id)
            try:
                self.storage.set_balance(user_id, ledger_total)
            except StorageError as e:
                raise PersistenceFailureError(f"Could not reconcile balance for user {user_id}") from e

        drift = user.points_balance - ledger_total
        if drift:
            logger.warning(
                "Reconciled balance for user %s: cache %d, ledger %d",
                user_id, user.points_balance, ledger_total,
            )
        return ReconcileResult(
            user_id=user_id, cached_balance=user.points_balance,
            ledger_balance=ledger_total, drift=drift,
        )

    def get_user(self, user_id: UUID) -> User:
        return self._require_user(user_id)

    def get_balance(self, user_id: UUID) -> UserBalance:
        user = self._require_user(user_id)
        entries = self.storage.find_ledger_entries(user_id=user_id)
        return UserBalance(
            user_id=user_id,
            points_balance=user.points_balance,
            ledger_total=sum(e["value"] for e in entries),
            total_entries=len(entries),
            last_transaction_at=entries[-1]["created_at"] if entries else None,
        )

    def get_history(self, user_id: UUID, limit: int = 20, offset: int = 0) -> PointsHistoryResponse:
        user = self._require_user(user_id)
        entries = self.storage.find_ledger_entries(user_id=user_id, descending=True)
        return PointsHistoryResponse(
            user_id=user_id,
            entries=[PointsTransaction(**e) for e in entries[offset:offset + limit]],
            total_count=len(entries),
            current_balance=user.points_balance,
        )

    def get_stats(self, user_id: UUID) -> PointsStats:
        self._require_user(user_id)
        stats = PointsStats(user_id=user_id)
        counters = {
            ActionType.REPORT_SUBMITTED: "report_submissions",
            ActionType.REPORT_RESOLVED: "report_resolutions",
            ActionType.REFERRAL: "referrals",
            ActionType.DAILY_LOGIN: "daily_logins",
            ActionType.REWARD_REDEMPTION: "reward_redemptions",
            ActionType.REWARD_REFUND: "reward_refunds",
            ActionType.ROLLBACK_INVALID: "rollbacks",
        }
        for entry in self.storage.find_ledger_entries(user_id=user_id):
            if entry["value"] > 0:
                stats.total_earned += entry["value"]
            else:
                stats.total_spent += abs(entry["value"])
            counter = counters.get(entry["action_type"])
            if counter:
                setattr(stats, counter, getattr(stats, counter) + 1)
        return stats

    # Internals

    @staticmethod
    def _require_positive(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmountError(f"Amount must be a positive integer, got {amount!r}")

    def _require_user(self, user_id: UUID) -> User:
        data = self.storage.get_user(user_id)
        if not data:
            raise UserNotFoundError(f"User {user_id} not found")
        return User(**data)

    def _require_issue(self, issue_id: UUID) -> dict:
        data = self.storage.get_issue(issue_id)
        if not data:
            raise IssueNotFoundError(f"Issue {issue_id} not found")
        return data

    def _ledger_total(self, user_id: UUID) -> int:
        return sum(e["value"] for e in self.storage.find_ledger_entries(user_id=user_id, order_by=None))

    @staticmethod
    def _entry_data(user_id: UUID, action_type: ActionType, value: int, created_at: Optional[datetime] = None, **refs) -> dict:
        return {
            "id": uuid4(),
            "user_id": user_id,
            "action_type": action_type,
            "value": value,
            "issue_id": refs.get("issue_id"),
            "reward_id": refs.get("reward_id"),
            "referred_user_id": refs.get("referred_user_id"),
            "created_at": created_at or datetime.now(timezone.utc),
        }

    def _write_entry(self, user_id: UUID, action_type: ActionType, value: int, **refs) -> tuple[PointsTransaction, int]:
        """Append the ledger entry, then move the cache. Caller holds the transaction."""
        entry_data = self._entry_data(user_id, action_type, value, **refs)
        try:
            self.storage.append_ledger_entry(entry_data)
        except StorageError as e:
            logger.error("Ledger write failed for user %s (%s %+d)", user_id, action_type.value, value)
            raise PersistenceFailureError(f"Could not record {action_type.value} for user {user_id}") from e

        try:
            balance = self.storage.increment_balance(user_id, value)
        except StorageError:
            logger.error(
                "Balance update failed after ledger entry %s for user %s, reconciling from ledger",
                entry_data["id"], user_id,
            )
            balance = self._compensate_balance(user_id, entry_data["id"])
        return PointsTransaction(**entry_data), balance

    def _compensate_balance(self, user_id: UUID, entry_id: UUID) -> int:
        try:
            return self.storage.set_balance(user_id, self._ledger_total(user_id))
        except StorageError as e:
            logger.error("Balance for user %s is stale and needs reconcile_balance()", user_id)
            raise PersistenceFailureError(
                f"Balance for user {user_id} could not be brought in line with the ledger (entry {entry_id})",
                {"entry_id": str(entry_id), "needs_reconciliation": True},
            ) from e

    def _update_issue_points(self, issue_id: UUID, points: int) -> None:
        try:
            self.storage.update_issue(
                issue_id, points_awarded=points, updated_at=datetime.now(timezone.utc)
            )
        except StorageError as e:
            logger.error("Could not set points_awarded=%d on issue %s", points, issue_id)
            raise PersistenceFailureError(f"Could not update points on issue {issue_id}") from e
