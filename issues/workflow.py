import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from points.errors import (
    IssueNotFoundError,
    PersistenceFailureError,
    PointsServiceError,
    UnauthorizedError,
)
from points.models import (
    ActionType,
    Issue,
    IssueStatus,
    StatusChangeResponse,
    SubmitIssueRequest,
    SubmitIssueResponse,
    UserRole,
)
from points.service import PointsService
from points.storage import StorageError
from validation.validator import IssueValidator

logger = logging.getLogger("civic.issues")


class IssueService:
    """
    Report intake and the admin status workflow.

    Status moves are permissive: an admin may set any status from any other.
    Double awards on resolved -> x -> resolved are stopped by the points
    service's guard, not here.
    """

    def __init__(self, points_service: Optional[PointsService] = None, validator: Optional[IssueValidator] = None):
        self.points = points_service or PointsService()
        self.storage = self.points.storage
        self.settings = self.points.settings
        self.validator = validator or IssueValidator(settings=self.settings)

    def submit_issue(self, request: SubmitIssueRequest, user_id: Optional[UUID] = None) -> SubmitIssueResponse:
        if user_id is not None:
            self.points.get_user(user_id)

        validation = self.validator.validate(
            request.title, request.description, request.category,
            request.submission_time_ms, request.image_url,
        )

        now = datetime.now(timezone.utc)
        issue_id = uuid4()
        issue_data = {
            "id": issue_id,
            "user_id": user_id,
            "category": validation.suggested_category or request.category,
            "title": request.title,
            "description": request.description,
            "image_url": request.image_url,
            "location": request.location.model_dump(),
            "status": IssueStatus.CONFIRMED if validation.is_valid else IssueStatus.PENDING_VALIDATION,
            "validation": validation.model_dump(),
            "submission_time_ms": request.submission_time_ms,
            "points_awarded": 0,
            "created_at": now,
            "updated_at": now,
        }
        try:
            self.storage.add_issue(issue_data)
        except StorageError as e:
            raise PersistenceFailureError("Could not store the report") from e

        points_awarded = 0
        if validation.is_valid and user_id is not None:
            try:
                result = self.points.award(
                    user_id, self.settings.REPORT_SUBMITTED_POINTS, ActionType.REPORT_SUBMITTED, issue_id
                )
                points_awarded = result.amount
            except PointsServiceError as e:
                # The report itself is stored; points can be reconciled later.
                logger.error("Issue %s stored but submission points not awarded to %s: %s", issue_id, user_id, e)

        if user_id is None:
            message = "Report received. Sign in to earn points for future reports."
        elif points_awarded:
            message = f"Report received. You earned {points_awarded} point(s)."
        else:
            message = "Report received. It will be reviewed before any points are awarded."

        logger.info(
            "Issue %s submitted (valid=%s, method=%s, points=%d)",
            issue_id, validation.is_valid, validation.method.value, points_awarded,
        )
        return SubmitIssueResponse(issue=self.get_issue(issue_id), points_awarded=points_awarded, message=message)

    def update_status(self, issue_id: UUID, new_status: IssueStatus, admin_user_id: UUID) -> StatusChangeResponse:
        """
        Change an issue's status and apply its points side effect.

        Entering resolved awards the resolution bonus to the owner; entering
        invalid rolls back whatever the issue has earned. The status change is
        committed before the side effect and stays even if the side effect fails.
        """
        self._require_admin(admin_user_id)
        new_status = IssueStatus(new_status)

        with self.storage.transaction():
            issue = self._require_issue(issue_id)
            previous_status = issue.status
            try:
                self.storage.update_issue(issue_id, status=new_status, updated_at=datetime.now(timezone.utc))
            except StorageError as e:
                raise PersistenceFailureError(f"Could not update status of issue {issue_id}") from e

            points_delta = 0
            owner_id = issue.user_id
            try:
                if new_status == IssueStatus.RESOLVED and previous_status != IssueStatus.RESOLVED and owner_id:
                    result = self.points.award(
                        owner_id, self.settings.REPORT_RESOLVED_POINTS, ActionType.REPORT_RESOLVED, issue_id
                    )
                    points_delta = result.amount
                elif new_status == IssueStatus.INVALID and issue.points_awarded > 0 and owner_id:
                    result = self.points.rollback(owner_id, issue_id, issue.points_awarded)
                    points_delta = result.amount
            except PointsServiceError:
                logger.error(
                    "Issue %s moved %s -> %s but its points side effect failed; manual reconciliation needed",
                    issue_id, previous_status.value, new_status.value,
                )
                raise

        logger.info(
            "Issue %s status %s -> %s by admin %s (points %+d)",
            issue_id, previous_status.value, new_status.value, admin_user_id, points_delta,
        )
        return StatusChangeResponse(
            issue=self.get_issue(issue_id),
            previous_status=previous_status,
            points_delta=points_delta,
            message=f"Status updated to {new_status.value}",
        )

    def get_issue(self, issue_id: UUID) -> Issue:
        return self._require_issue(issue_id)

    def list_issues(self, status: Optional[IssueStatus] = None) -> list[Issue]:
        filters = {"status": IssueStatus(status)} if status else {}
        return [Issue(**i) for i in self.storage.find_issues(**filters)]

    def _require_issue(self, issue_id: UUID) -> Issue:
        data = self.storage.get_issue(issue_id)
        if not data:
            raise IssueNotFoundError(f"Issue {issue_id} not found")
        return Issue(**data)

    def _require_admin(self, user_id: UUID) -> None:
        user = self.storage.get_user(user_id)
        if not user or user["role"] != UserRole.ADMIN:
            raise UnauthorizedError("Admin access required")
