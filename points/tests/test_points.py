"""
Unit Tests for the Points Service

Tests cover:
1. Award flow and the resolution-bonus duplicate guard
2. Deduction and insufficient funds, including concurrent spends
3. Rollback of points for invalid issues
4. Ledger / balance consistency and reconciliation
5. Persistence failures and their compensation
6. Referral and daily login bonuses, history and stats
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from points.errors import (
    InsufficientFundsError,
    InvalidAmountError,
    IssueNotFoundError,
    PersistenceFailureError,
    PointsServiceError,
    UserNotFoundError,
)
from points.models import ActionType, IssueCategory, IssueStatus
from points.service import PointsService
from points.storage import ADMIN_USER_ID, CITIZEN_USER_ID, InMemoryStorage, StorageError


# Test constants
USER_ID = CITIZEN_USER_ID
OTHER_USER_ID = ADMIN_USER_ID
UNKNOWN_USER_ID = UUID("00000000-0000-0000-0000-000000000000")


def add_issue(service: PointsService, user_id=USER_ID, points_awarded: int = 0) -> UUID:
    now = datetime.now(timezone.utc)
    issue_id = uuid4()
    service.storage.add_issue({
        "id": issue_id, "user_id": user_id, "category": IssueCategory.POTHOLE,
        "title": "Hål i vägen vid Järntorget", "description": "Djupt hål i cykelbanan, farligt på natten",
        "image_url": None, "location": {"lat": 57.7, "lng": 11.95, "address": None},
        "status": IssueStatus.CONFIRMED, "submission_time_ms": 30000,
        "points_awarded": points_awarded, "created_at": now, "updated_at": now,
    })
    return issue_id


def fund(service: PointsService, amount: int, user_id=USER_ID) -> None:
    service.award(user_id, amount, ActionType.BONUS)


def ledger_total(service: PointsService, user_id=USER_ID) -> int:
    return sum(e["value"] for e in service.storage.find_ledger_entries(user_id=user_id))


class TestAwardFlow:
    """Tests for awarding points."""

    def test_award_writes_entry_and_balance(self):
        """Test that an award appends one entry and moves the cache by the same amount."""
        service = PointsService()
        issue_id = add_issue(service)

        result = service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)

        assert result.applied is True
        assert result.entry.value == 1
        assert result.entry.issue_id == issue_id
        assert result.balance_after == 1
        assert service.get_user(USER_ID).points_balance == 1
        assert service.storage.get_issue(issue_id)["points_awarded"] == 1

    def test_resolution_bonus_awarded_once(self):
        """Test that a repeated resolution bonus for the same issue is a no-op."""
        service = PointsService()
        issue_id = add_issue(service)

        first = service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)
        second = service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)

        assert first.applied is True
        assert second.applied is False
        assert "already awarded" in second.message
        entries = service.storage.find_ledger_entries(user_id=USER_ID, action_type=ActionType.REPORT_RESOLVED)
        assert len(entries) == 1
        assert service.get_user(USER_ID).points_balance == 15
        assert service.storage.get_issue(issue_id)["points_awarded"] == 15

    def test_resolution_bonus_per_issue(self):
        """Test that the guard is scoped to the issue."""
        service = PointsService()
        first_issue, second_issue = add_issue(service), add_issue(service)

        service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, first_issue)
        result = service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, second_issue)

        assert result.applied is True
        assert service.get_user(USER_ID).points_balance == 30

    def test_submission_award_not_guarded(self):
        """Test that report_submitted awards are not deduplicated by the engine."""
        service = PointsService()
        issue_id = add_issue(service)

        service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)
        result = service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)

        assert result.applied is True
        assert service.get_user(USER_ID).points_balance == 2

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_award_rejects_non_positive_amounts(self, amount):
        """Test that only positive integer amounts are accepted."""
        service = PointsService()

        with pytest.raises(InvalidAmountError):
            service.award(USER_ID, amount, ActionType.BONUS)

        assert ledger_total(service) == 0

    def test_award_unknown_user_fails(self):
        """Test that awarding to an unknown user fails without writing."""
        service = PointsService()

        with pytest.raises(UserNotFoundError):
            service.award(UNKNOWN_USER_ID, 5, ActionType.BONUS)

        assert service.storage.find_ledger_entries() == []

    def test_award_unknown_issue_fails(self):
        """Test that awarding against a missing issue fails without writing."""
        service = PointsService()

        with pytest.raises(IssueNotFoundError):
            service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, uuid4())

        assert ledger_total(service) == 0


class TestDeductFlow:
    """Tests for deducting points."""

    def test_deduct_success(self):
        """Test that a deduction writes a negative entry and lowers the cache."""
        service = PointsService()
        fund(service, 50)
        reward_id = uuid4()

        result = service.deduct(USER_ID, 30, ActionType.REWARD_REDEMPTION, reward_id)

        assert result.applied is True
        assert result.entry.value == -30
        assert result.entry.reward_id == reward_id
        assert result.balance_after == 20
        assert ledger_total(service) == 20

    def test_deduct_insufficient_funds(self):
        """Test that an unaffordable deduction fails and writes nothing."""
        service = PointsService()
        fund(service, 10)

        with pytest.raises(InsufficientFundsError) as exc_info:
            service.deduct(USER_ID, 25)

        assert exc_info.value.balance == 10
        assert exc_info.value.required == 25
        assert service.get_user(USER_ID).points_balance == 10
        assert len(service.storage.find_ledger_entries(user_id=USER_ID)) == 1

    def test_deduct_exact_balance(self):
        """Test that spending the whole balance is allowed."""
        service = PointsService()
        fund(service, 25)

        result = service.deduct(USER_ID, 25)

        assert result.balance_after == 0

    def test_refund_credits_reward(self):
        """Test that a refund writes a positive entry tied to the reward."""
        service = PointsService()
        fund(service, 30)
        reward_id = uuid4()
        service.deduct(USER_ID, 30, ActionType.REWARD_REDEMPTION, reward_id)

        result = service.refund(USER_ID, 30, reward_id)

        assert result.entry.action_type == ActionType.REWARD_REFUND
        assert result.entry.reward_id == reward_id
        assert result.balance_after == 30
        assert ledger_total(service) == 30
        assert service.get_stats(USER_ID).reward_refunds == 1

    def test_concurrent_deducts_never_overdraw(self):
        """Test that two simultaneous affordable deductions cannot both succeed."""
        service = PointsService()
        fund(service, 50)
        barrier = threading.Barrier(2)

        def spend():
            barrier.wait()
            try:
                service.deduct(USER_ID, 30)
                return "ok"
            except InsufficientFundsError:
                return "insufficient"

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = sorted(pool.map(lambda _: spend(), range(2)))

        assert outcomes == ["insufficient", "ok"]
        assert service.get_user(USER_ID).points_balance == 20
        assert ledger_total(service) == 20

    def test_many_concurrent_deducts(self):
        """Test that a burst of spends drains the balance exactly and never below zero."""
        service = PointsService()
        fund(service, 100)

        def spend():
            try:
                service.deduct(USER_ID, 7)
                return True
            except InsufficientFundsError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            successes = sum(pool.map(lambda _: spend(), range(30)))

        assert successes == 100 // 7
        assert service.get_user(USER_ID).points_balance == 100 % 7
        assert ledger_total(service) == 100 % 7


class TestRollbackFlow:
    """Tests for rolling back points of invalid issues."""

    def test_rollback_zeroes_issue_points(self):
        """Test that a rollback offsets the award and zeroes points_awarded."""
        service = PointsService()
        issue_id = add_issue(service)
        service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)

        result = service.rollback(USER_ID, issue_id, 1)

        assert result.applied is True
        assert result.entry.action_type == ActionType.ROLLBACK_INVALID
        assert result.entry.value == -1
        assert service.storage.get_issue(issue_id)["points_awarded"] == 0
        assert service.get_user(USER_ID).points_balance == 0
        issue_entries = service.storage.find_ledger_entries(issue_id=issue_id)
        assert sum(e["value"] for e in issue_entries) == 0

    def test_rollback_without_points_is_noop(self):
        """Test that rolling back an issue with nothing awarded writes nothing."""
        service = PointsService()
        issue_id = add_issue(service)

        result = service.rollback(USER_ID, issue_id, 1)

        assert result.applied is False
        assert service.storage.find_ledger_entries() == []

    def test_rollback_after_spending_goes_below_zero(self):
        """Test that the cache follows the ledger even when a rollback overdraws it."""
        service = PointsService()
        issue_id = add_issue(service)
        service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)
        fund(service, 10)
        service.deduct(USER_ID, 25)

        service.rollback(USER_ID, issue_id, 15)

        assert service.get_user(USER_ID).points_balance == -15
        assert ledger_total(service) == -15

    def test_partial_rollback_rejected(self):
        """Test that rolling back less than the issue earned changes nothing."""
        service = PointsService()
        issue_id = add_issue(service)
        service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)
        service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)

        with pytest.raises(InvalidAmountError):
            service.rollback(USER_ID, issue_id, 1)

        assert service.storage.get_issue(issue_id)["points_awarded"] == 16
        assert service.get_user(USER_ID).points_balance == 16
        assert service.storage.find_ledger_entries(action_type=ActionType.ROLLBACK_INVALID) == []

    def test_rollback_defaults_to_awarded_points(self):
        """Test that without an amount the whole award for the issue is reversed."""
        service = PointsService()
        issue_id = add_issue(service)
        service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)
        service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)

        result = service.rollback(USER_ID, issue_id)

        assert result.amount == -16
        issue_sum = sum(e["value"] for e in service.storage.find_ledger_entries(issue_id=issue_id))
        assert service.storage.get_issue(issue_id)["points_awarded"] == issue_sum == 0
        assert service.get_user(USER_ID).points_balance == 0

    def test_rollback_missing_issue(self):
        """Test that rolling back an unknown issue fails."""
        service = PointsService()

        with pytest.raises(IssueNotFoundError):
            service.rollback(USER_ID, uuid4(), 1)


class TestConsistency:
    """Tests for ledger / balance consistency."""

    def test_balance_matches_ledger_after_mixed_operations(self):
        """Test the cache equals the ledger sum after awards, deductions and rollbacks."""
        service = PointsService()
        issues = [add_issue(service) for _ in range(3)]
        for issue_id in issues:
            service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)
            service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)
            service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)
        service.deduct(USER_ID, 25)
        service.rollback(USER_ID, issues[0], 16)

        balance = service.get_balance(USER_ID)

        assert balance.points_balance == balance.ledger_total == 3 * 16 - 25 - 16
        assert balance.total_entries == 3 * 2 + 2
        for issue_id in issues:
            issue = service.storage.get_issue(issue_id)
            issue_sum = sum(e["value"] for e in service.storage.find_ledger_entries(issue_id=issue_id))
            assert issue["points_awarded"] == issue_sum

    def test_reconcile_fixes_drift(self):
        """Test that reconciliation rewrites a drifted cache from the ledger."""
        service = PointsService()
        fund(service, 40)
        service.storage.set_balance(USER_ID, 999)

        result = service.reconcile_balance(USER_ID)

        assert result.cached_balance == 999
        assert result.ledger_balance == 40
        assert result.drift == 959
        assert service.get_user(USER_ID).points_balance == 40

    def test_reconcile_without_drift(self):
        """Test that reconciling a consistent balance reports no drift."""
        service = PointsService()
        fund(service, 12)

        assert service.reconcile_balance(USER_ID).drift == 0

    def test_ledger_entries_are_immutable(self):
        """Test that returned entries cannot be edited."""
        service = PointsService()
        result = service.award(USER_ID, 5, ActionType.BONUS)

        with pytest.raises(Exception):
            result.entry.value = 500

        assert ledger_total(service) == 5


class TestPersistenceFailures:
    """Tests for storage failures during mutations."""

    def test_ledger_write_failure_leaves_balance_untouched(self, monkeypatch):
        """Test that a failed ledger write surfaces and changes nothing."""
        service = PointsService()

        def broken_append(data):
            raise StorageError("disk full")

        monkeypatch.setattr(service.storage, "append_ledger_entry", broken_append)

        with pytest.raises(PersistenceFailureError):
            service.award(USER_ID, 5, ActionType.BONUS)

        assert service.get_user(USER_ID).points_balance == 0

    def test_balance_write_failure_is_reconciled(self, monkeypatch):
        """Test that a failed cache increment after the ledger write is repaired from the ledger."""
        service = PointsService()

        def broken_increment(user_id, delta):
            raise StorageError("timeout")

        monkeypatch.setattr(service.storage, "increment_balance", broken_increment)

        result = service.award(USER_ID, 5, ActionType.BONUS)

        assert result.applied is True
        assert result.balance_after == 5
        assert service.get_user(USER_ID).points_balance == ledger_total(service) == 5

    def test_unrecoverable_balance_failure_surfaces(self, monkeypatch):
        """Test that a stale cache is reported when compensation also fails."""
        service = PointsService()
        storage = service.storage
        working_set_balance = storage.set_balance

        def broken(*args):
            raise StorageError("connection reset")

        monkeypatch.setattr(storage, "increment_balance", broken)
        monkeypatch.setattr(storage, "set_balance", broken)

        with pytest.raises(PersistenceFailureError) as exc_info:
            service.award(USER_ID, 5, ActionType.BONUS)

        assert exc_info.value.details["needs_reconciliation"] is True
        assert ledger_total(service) == 5

        monkeypatch.setattr(storage, "set_balance", working_set_balance)
        assert service.reconcile_balance(USER_ID).ledger_balance == 5
        assert service.get_user(USER_ID).points_balance == 5

    def test_deduct_ledger_failure_restores_balance(self, monkeypatch):
        """Test that a deduction whose ledger write fails gives the points back."""
        service = PointsService()
        fund(service, 50)

        def broken_append(data):
            raise StorageError("disk full")

        monkeypatch.setattr(service.storage, "append_ledger_entry", broken_append)

        with pytest.raises(PersistenceFailureError):
            service.deduct(USER_ID, 30)

        assert service.get_user(USER_ID).points_balance == 50
        assert ledger_total(service) == 50

    def test_interrupted_deduct_never_overstates_balance(self, monkeypatch):
        """Test that a deduction stopped between its two writes leaves the cache below the ledger until reconciled."""
        service = PointsService()
        fund(service, 50)
        storage = service.storage
        working_set_balance = storage.set_balance

        def broken(*args):
            raise StorageError("connection reset")

        monkeypatch.setattr(storage, "append_ledger_entry", broken)
        monkeypatch.setattr(storage, "set_balance", broken)

        with pytest.raises(PersistenceFailureError) as exc_info:
            service.deduct(USER_ID, 30)

        assert exc_info.value.details["needs_reconciliation"] is True
        assert service.get_user(USER_ID).points_balance == 20
        assert ledger_total(service) == 50

        monkeypatch.setattr(storage, "set_balance", working_set_balance)
        assert service.reconcile_balance(USER_ID).drift == -30
        assert service.get_user(USER_ID).points_balance == 50


class TestBonuses:
    """Tests for referral and daily login bonuses."""

    def test_referral_bonus_once_per_referred_user(self):
        """Test that a referral bonus is paid once per referred user."""
        service = PointsService()

        first = service.award_referral_bonus(USER_ID, OTHER_USER_ID)
        second = service.award_referral_bonus(USER_ID, OTHER_USER_ID)

        assert first.applied is True
        assert first.amount == 25
        assert first.entry.referred_user_id == OTHER_USER_ID
        assert second.applied is False
        assert service.get_user(USER_ID).points_balance == 25

    def test_self_referral_rejected(self):
        """Test that users cannot refer themselves."""
        service = PointsService()

        with pytest.raises(PointsServiceError):
            service.award_referral_bonus(USER_ID, USER_ID)

    def test_daily_login_once_per_day(self):
        """Test that the daily login bonus is paid once per UTC day."""
        service = PointsService()
        morning = datetime(2026, 3, 2, 7, 30, tzinfo=timezone.utc)

        first = service.award_daily_login(USER_ID, now=morning)
        again = service.award_daily_login(USER_ID, now=morning + timedelta(hours=5))
        next_day = service.award_daily_login(USER_ID, now=morning + timedelta(days=1))

        assert first.applied is True
        assert again.applied is False
        assert next_day.applied is True
        assert service.get_user(USER_ID).points_balance == 4


class TestReadOperations:
    """Tests for history and stats."""

    def test_history_newest_first_with_pagination(self):
        """Test that history is ordered newest first and paginated."""
        service = PointsService()
        for amount in (1, 2, 3):
            fund(service, amount)

        history = service.get_history(USER_ID, limit=2, offset=0)

        assert history.total_count == 3
        assert [e.value for e in history.entries] == [3, 2]
        assert history.current_balance == 6
        assert [e.value for e in service.get_history(USER_ID, limit=2, offset=2).entries] == [1]

    def test_stats(self):
        """Test that stats split earned and spent and count actions."""
        service = PointsService()
        issue_id = add_issue(service)
        service.award(USER_ID, 1, ActionType.REPORT_SUBMITTED, issue_id)
        service.award(USER_ID, 15, ActionType.REPORT_RESOLVED, issue_id)
        fund(service, 20)
        service.deduct(USER_ID, 25)

        stats = service.get_stats(USER_ID)

        assert stats.total_earned == 36
        assert stats.total_spent == 25
        assert stats.report_submissions == 1
        assert stats.report_resolutions == 1
        assert stats.reward_redemptions == 1

    def test_unknown_user_balance(self):
        """Test that reading an unknown user's balance fails."""
        service = PointsService(InMemoryStorage(seed=False))

        with pytest.raises(UserNotFoundError):
            service.get_balance(USER_ID)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
