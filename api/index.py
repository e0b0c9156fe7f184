from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from core.config import get_settings
from core.logging_config import configure_logging
from issues.workflow import IssueService
from points.errors import PointsServiceError, UnauthorizedError
from points.models import (
    CodeVerification,
    Issue,
    IssueStatus,
    PointsChangeResult,
    PointsHistoryResponse,
    PointsStats,
    ReconcileResult,
    ReferralRequest,
    Redemption,
    RedemptionResult,
    Reward,
    StatusChangeResponse,
    SubmitIssueRequest,
    SubmitIssueResponse,
    UpdateStatusRequest,
    UserBalance,
)
from points.redemption import RedemptionService
from points.service import PointsService
from points.storage import InMemoryStorage

settings = get_settings()
logger = configure_logging(settings.LOG_LEVEL)


class Services:
    """The engines for one store, wired together."""

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.points = PointsService(storage or InMemoryStorage(seed=settings.SEED_DEMO_DATA), settings)
        self.redemptions = RedemptionService(self.points)
        self.issues = IssueService(self.points)


services = Services()


def get_services() -> Services:
    return services


app = FastAPI(
    title=settings.APP_NAME,
    description="Civic issue reports, loyalty points ledger and reward redemption",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PointsServiceError)
async def points_error_handler(request: Request, exc: PointsServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code, "details": exc.details},
    )


def current_user_id(x_user_id: Optional[UUID] = Header(default=None)) -> Optional[UUID]:
    return x_user_id


def require_user_id(user_id: Optional[UUID] = Depends(current_user_id)) -> UUID:
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    return user_id


def require_admin(user_id: UUID = Depends(require_user_id), svc: Services = Depends(get_services)) -> UUID:
    if not svc.points.get_user(user_id).is_admin:
        raise UnauthorizedError("Admin access required")
    return user_id


def require_self(user_id: UUID, caller_id: UUID = Depends(require_user_id)) -> UUID:
    if caller_id != user_id:
        raise UnauthorizedError("Cannot act on behalf of another user")
    return caller_id


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "civic-points"}


@app.post("/issues", response_model=SubmitIssueResponse, status_code=status.HTTP_201_CREATED, tags=["Issues"])
def submit_issue(
    request: SubmitIssueRequest,
    user_id: Optional[UUID] = Depends(current_user_id),
    svc: Services = Depends(get_services),
) -> SubmitIssueResponse:
    return svc.issues.submit_issue(request, user_id)


@app.get("/issues", response_model=list[Issue], tags=["Issues"])
def list_issues(
    issue_status: Optional[IssueStatus] = Query(default=None, alias="status"),
    svc: Services = Depends(get_services),
) -> list[Issue]:
    return svc.issues.list_issues(issue_status)


@app.get("/issues/{issue_id}", response_model=Issue, tags=["Issues"])
def get_issue(issue_id: UUID, svc: Services = Depends(get_services)) -> Issue:
    return svc.issues.get_issue(issue_id)


@app.patch("/issues/{issue_id}/status", response_model=StatusChangeResponse, tags=["Admin"])
def update_issue_status(
    issue_id: UUID,
    request: UpdateStatusRequest,
    admin_id: UUID = Depends(require_user_id),
    svc: Services = Depends(get_services),
) -> StatusChangeResponse:
    return svc.issues.update_status(issue_id, request.status, admin_id)


@app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Points"])
def get_user_balance(user_id: UUID, svc: Services = Depends(get_services)) -> UserBalance:
    return svc.points.get_balance(user_id)


@app.get("/users/{user_id}/points", response_model=PointsHistoryResponse, tags=["Points"])
def get_points_history(
    user_id: UUID, limit: int = 20, offset: int = 0, svc: Services = Depends(get_services)
) -> PointsHistoryResponse:
    return svc.points.get_history(user_id, limit, offset)


@app.get("/users/{user_id}/points/stats", response_model=PointsStats, tags=["Points"])
def get_points_stats(user_id: UUID, svc: Services = Depends(get_services)) -> PointsStats:
    return svc.points.get_stats(user_id)


@app.post("/users/{user_id}/daily-login", response_model=PointsChangeResult, tags=["Points"])
def claim_daily_login(
    user_id: UUID, caller_id: UUID = Depends(require_self), svc: Services = Depends(get_services)
) -> PointsChangeResult:
    return svc.points.award_daily_login(caller_id)


@app.post("/users/{user_id}/reconcile", response_model=ReconcileResult, tags=["Admin"])
def reconcile_balance(
    user_id: UUID, admin_id: UUID = Depends(require_admin), svc: Services = Depends(get_services)
) -> ReconcileResult:
    return svc.points.reconcile_balance(user_id)


@app.post("/users/{user_id}/referrals", response_model=PointsChangeResult, tags=["Admin"])
def award_referral_bonus(
    user_id: UUID,
    request: ReferralRequest,
    admin_id: UUID = Depends(require_admin),
    svc: Services = Depends(get_services),
) -> PointsChangeResult:
    return svc.points.award_referral_bonus(user_id, request.referred_user_id)


@app.get("/rewards", response_model=list[Reward], tags=["Rewards"])
def list_rewards(svc: Services = Depends(get_services)) -> list[Reward]:
    return svc.redemptions.list_available_rewards()


@app.post("/rewards/{reward_id}/redeem", response_model=RedemptionResult, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
def redeem_reward(
    reward_id: UUID, user_id: UUID = Depends(require_user_id), svc: Services = Depends(get_services)
) -> RedemptionResult:
    return svc.redemptions.redeem(user_id, reward_id)


@app.get("/users/{user_id}/redemptions", response_model=list[Redemption], tags=["Rewards"])
def get_user_redemptions(user_id: UUID, svc: Services = Depends(get_services)) -> list[Redemption]:
    return svc.redemptions.get_user_redemptions(user_id)


@app.get("/redemptions/{code}/verify", response_model=CodeVerification, tags=["Rewards"])
def verify_redemption_code(code: str, svc: Services = Depends(get_services)) -> CodeVerification:
    return svc.redemptions.verify_code(code)


@app.post("/redemptions/{redemption_id}/use", response_model=Redemption, tags=["Admin"])
def mark_redemption_used(
    redemption_id: UUID, admin_id: UUID = Depends(require_admin), svc: Services = Depends(get_services)
) -> Redemption:
    return svc.redemptions.mark_used(redemption_id)


handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
