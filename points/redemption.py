import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    InsufficientFundsError,
    OutOfStockError,
    PersistenceFailureError,
    RedemptionAlreadyUsedError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    RewardUnavailableError,
)
from .models import (
    ActionType,
    CodeVerification,
    Redemption,
    RedemptionResult,
    Reward,
)
from .service import PointsService
from .storage import DuplicateKeyError, StorageError

logger = logging.getLogger("civic.redemption")

BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
CODE_SUFFIX_LENGTH = 9
MAX_CODE_ATTEMPTS = 5


def to_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_redemption_code(prefix: str = "FMC", now_ms: Optional[int] = None) -> str:
    """Build ``PREFIX-<ms timestamp base36>-<random base36, upper case>``."""
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{prefix}-{to_base36(now_ms)}-{suffix.upper()}"


class RedemptionService:
    """Exchanges points for catalog rewards. Not idempotent: every successful call spends points."""

    def __init__(self, points_service: Optional[PointsService] = None):
        self.points = points_service or PointsService()
        self.storage = self.points.storage
        self.settings = self.points.settings

    def redeem(self, user_id: UUID, reward_id: UUID) -> RedemptionResult:
        """
        Spend points on a reward.

        Flow:
        1. Reward must exist, be available and be in stock
        2. Fresh balance must cover the cost
        3. Deduct through the points service (abort on failure)
        4-5. Create the redemption with a unique code, refunding if it cannot be stored
        6. Decrement tracked inventory, best-effort
        """
        warnings: list[str] = []

        with self.storage.transaction():
            reward = self.get_reward(reward_id)
            if not reward.available:
                raise RewardUnavailableError(f"Reward {reward_id} is not available")
            if not reward.in_stock():
                raise OutOfStockError(f"Reward {reward_id} is out of stock")

            user = self.points.get_user(user_id)
            if user.points_balance < reward.cost:
                raise InsufficientFundsError(user_id, user.points_balance, reward.cost)

            deduction = self.points.deduct(user_id, reward.cost, ActionType.REWARD_REDEMPTION, reward_id)

            try:
                redemption = self._create_redemption(user_id, reward_id)
            except StorageError as e:
                logger.error(
                    "Redemption record for reward %s not created after deduction %s, refunding",
                    reward_id, deduction.entry.id,
                )
                details = {"deduction_entry_id": str(deduction.entry.id), "points_deducted": reward.cost}
                try:
                    refund = self.points.refund(user_id, reward.cost, reward_id)
                except PersistenceFailureError as refund_error:
                    logger.error("Refund of %d points to user %s failed: %s", reward.cost, user_id, refund_error)
                    details["refunded"] = False
                else:
                    details["refunded"] = True
                    details["refund_entry_id"] = str(refund.entry.id)
                raise PersistenceFailureError(
                    f"Redemption of reward {reward_id} could not be recorded", details
                ) from e

            if reward.tracks_inventory:
                try:
                    self.storage.increment_inventory(reward_id, -1)
                except StorageError as e:
                    logger.warning("Inventory for reward %s not decremented: %s", reward_id, e)
                    warnings.append(f"Inventory for reward {reward_id} could not be updated")

        logger.info("Reward %s redeemed by user %s with code %s", reward_id, user_id, redemption.redemption_code)
        return RedemptionResult(
            redemption_id=redemption.id,
            redemption_code=redemption.redemption_code,
            reward_id=reward_id,
            balance_after=deduction.balance_after,
            warnings=warnings,
        )

    def get_reward(self, reward_id: UUID) -> Reward:
        data = self.storage.get_reward(reward_id)
        if not data:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return Reward(**data)

    def list_available_rewards(self) -> list[Reward]:
        rewards = [Reward(**r) for r in self.storage.find_rewards(available=True)]
        return [r for r in rewards if r.in_stock()]

    def get_user_redemptions(self, user_id: UUID) -> list[Redemption]:
        self.points.get_user(user_id)
        return [Redemption(**r) for r in self.storage.find_redemptions(user_id=user_id)]

    def verify_code(self, code: str) -> CodeVerification:
        data = self.storage.get_redemption_by_code(code)
        if not data:
            return CodeVerification(valid=False, message="Invalid redemption code")
        redemption = Redemption(**data)
        if redemption.used:
            return CodeVerification(valid=False, message="Redemption code already used", redemption=redemption)

        reward_data = self.storage.get_reward(redemption.reward_id)
        return CodeVerification(
            valid=True,
            message="Redemption code is valid",
            redemption=redemption,
            reward=Reward(**reward_data) if reward_data else None,
        )

    def mark_used(self, redemption_id: UUID) -> Redemption:
        with self.storage.transaction():
            data = self.storage.get_redemption(redemption_id)
            if not data:
                raise RedemptionNotFoundError(f"Redemption {redemption_id} not found")
            if data["used"]:
                raise RedemptionAlreadyUsedError(f"Redemption {redemption_id} has already been used")
            try:
                updated = self.storage.update_redemption(redemption_id, used=True)
            except StorageError as e:
                raise PersistenceFailureError(f"Could not mark redemption {redemption_id} as used") from e

        logger.info("Redemption %s marked as used", redemption_id)
        return Redemption(**updated)

    def _create_redemption(self, user_id: UUID, reward_id: UUID) -> Redemption:
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            data = {
                "id": uuid4(),
                "user_id": user_id,
                "reward_id": reward_id,
                "redemption_code": generate_redemption_code(self.settings.REDEMPTION_CODE_PREFIX),
                "redeemed_at": datetime.now(timezone.utc),
                "used": False,
            }
            try:
                return Redemption(**self.storage.add_redemption(data))
            except DuplicateKeyError:
                logger.warning("Redemption code collision on attempt %d, drawing a new code", attempt)
        raise StorageError(f"No unique redemption code after {MAX_CODE_ATTEMPTS} attempts")
