from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class IssueCategory(str, Enum):
    POTHOLE = "pothole"
    STREETLIGHT = "streetlight"
    GRAFFITI = "graffiti"
    GARBAGE = "garbage"
    OTHER = "other"


class IssueStatus(str, Enum):
    PENDING_VALIDATION = "pending_validation"
    NEW = "new"
    CONFIRMED = "confirmed"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    INVALID = "invalid"


class ActionType(str, Enum):
    REPORT_SUBMITTED = "report_submitted"
    REPORT_RESOLVED = "report_resolved"
    REWARD_REDEMPTION = "reward_redemption"
    REWARD_REFUND = "reward_refund"
    ROLLBACK_INVALID = "rollback_invalid"
    REFERRAL = "referral"
    DAILY_LOGIN = "daily_login"
    BONUS = "bonus"


class ValidationMethod(str, Enum):
    AI = "ai"
    AI_REJECTED = "ai_rejected"
    BASIC = "basic"
    BASIC_REJECTED = "basic_rejected"
    NONE = "none"


class User(BaseModel):
    id: UUID
    display_name: str
    role: UserRole = UserRole.USER
    # Only a rollback after spending can take this below zero.
    points_balance: int = 0
    preferred_language: str = "sv"
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None


class ValidationOutcome(BaseModel):
    is_valid: bool = False
    method: ValidationMethod = ValidationMethod.NONE
    confidence: int = Field(default=0, ge=0, le=100)
    reason: str = ""
    suggested_category: Optional[IssueCategory] = None


class Issue(BaseModel):
    id: UUID
    user_id: Optional[UUID] = None
    category: IssueCategory
    title: str
    description: str
    image_url: Optional[str] = None
    location: Location
    status: IssueStatus
    validation: ValidationOutcome = Field(default_factory=ValidationOutcome)
    submission_time_ms: int = 0
    points_awarded: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PointsTransaction(BaseModel):
    """A single ledger entry. Corrections are new offsetting entries."""

    id: UUID
    user_id: UUID
    action_type: ActionType
    value: int
    issue_id: Optional[UUID] = None
    reward_id: Optional[UUID] = None
    referred_user_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class Reward(BaseModel):
    id: UUID
    title: dict[str, str]
    description: dict[str, str] = Field(default_factory=dict)
    cost: int = Field(..., gt=0)
    icon_name: Optional[str] = None
    available: bool = True
    inventory_count: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def tracks_inventory(self) -> bool:
        return self.inventory_count is not None

    def in_stock(self) -> bool:
        return not self.tracks_inventory or self.inventory_count > 0


class Redemption(BaseModel):
    id: UUID
    user_id: UUID
    reward_id: UUID
    redemption_code: str
    redeemed_at: datetime
    used: bool = False

    model_config = ConfigDict(from_attributes=True)


# Request / response shapes

class SubmitIssueRequest(BaseModel):
    category: IssueCategory
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    location: Location
    image_url: Optional[str] = None
    submission_time_ms: int = Field(default=0, ge=0, description="Milliseconds between first keystroke and submit")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "category": "pothole",
            "title": "Stort hål i vägen på Avenyn",
            "description": "Ett djupt hål mitt i körfältet utanför nummer 12, farligt för cyklister.",
            "location": {"lat": 57.6989, "lng": 11.9746, "address": "Kungsportsavenyen 12"},
            "submission_time_ms": 42000,
        }
    })


class UpdateStatusRequest(BaseModel):
    status: IssueStatus


class ReferralRequest(BaseModel):
    referred_user_id: UUID


class PointsChangeResult(BaseModel):
    applied: bool
    amount: int = 0
    entry: Optional[PointsTransaction] = None
    balance_after: Optional[int] = None
    message: str


class SubmitIssueResponse(BaseModel):
    issue: Issue
    points_awarded: int
    message: str


class StatusChangeResponse(BaseModel):
    issue: Issue
    previous_status: IssueStatus
    points_delta: int = 0
    message: str


class UserBalance(BaseModel):
    user_id: UUID
    points_balance: int
    ledger_total: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class PointsHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[PointsTransaction]
    total_count: int
    current_balance: int


class PointsStats(BaseModel):
    user_id: UUID
    total_earned: int = 0
    total_spent: int = 0
    report_submissions: int = 0
    report_resolutions: int = 0
    referrals: int = 0
    daily_logins: int = 0
    reward_redemptions: int = 0
    reward_refunds: int = 0
    rollbacks: int = 0


class ReconcileResult(BaseModel):
    user_id: UUID
    cached_balance: int
    ledger_balance: int
    drift: int


class RedemptionResult(BaseModel):
    redemption_id: UUID
    redemption_code: str
    reward_id: UUID
    balance_after: int
    warnings: list[str] = Field(default_factory=list)


class CodeVerification(BaseModel):
    valid: bool
    message: str
    redemption: Optional[Redemption] = None
    reward: Optional[Reward] = None
