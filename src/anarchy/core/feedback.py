"""Client feedback and the performance metrics derived from it.

Only non-staff may submit. Feedback naming a staff member must name someone
active in the guild; feedback without a target is for the firm as a whole.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import ValidationError

from anarchy.models.feedback import (
    FeedbackPage,
    FeedbackSearchFilters,
    FeedbackSubmission,
    FirmPerformanceMetrics,
    RatingTrendReport,
    StaffPerformanceMetrics,
    empty_distribution,
)

if TYPE_CHECKING:
    from anarchy.core.audit import AuditLogger
    from anarchy.core.permissions import PermissionContext
    from anarchy.db.repository import FeedbackRepository, StaffRepository
    from anarchy.models.feedback import Feedback

logger = logging.getLogger(__name__)

RECENT_FEEDBACK_LIMIT = 5
STABLE_TREND_PERCENT = 5.0


class FeedbackError(Exception):
    """A feedback request was rejected. The message is safe to show users."""


def _mean(feedback: list[Feedback]) -> float:
    if not feedback:
        return 0.0
    return sum(f.rating for f in feedback) / len(feedback)


def _average(feedback: list[Feedback]) -> float:
    return round(_mean(feedback), 2)


def _distribution(feedback: list[Feedback]) -> dict[int, int]:
    counts = empty_distribution()
    for entry in feedback:
        counts[entry.rating] += 1
    return counts


def _staff_metrics(staff_id: str, feedback: list[Feedback]) -> StaffPerformanceMetrics:
    newest_first = sorted(feedback, key=lambda f: f.created_at, reverse=True)
    return StaffPerformanceMetrics(
        staff_id=staff_id,
        staff_username=(feedback[0].target_staff_username or "") if feedback else "",
        total_feedback=len(feedback),
        average_rating=_average(feedback),
        rating_distribution=_distribution(feedback),
        recent_feedback=newest_first[:RECENT_FEEDBACK_LIMIT],
    )


class FeedbackService:
    def __init__(
        self,
        feedback_repo: FeedbackRepository,
        staff_repo: StaffRepository,
        audit: AuditLogger | None = None,
    ) -> None:
        self.feedback_repo = feedback_repo
        self.staff_repo = staff_repo
        self.audit = audit

    async def submit_feedback(
        self,
        context: PermissionContext,
        submitter_username: str,
        rating: int,
        comment: str,
        target_staff_id: str | None = None,
        target_staff_username: str | None = None,
    ) -> Feedback:
        try:
            submission = FeedbackSubmission(
                guild_id=context.guild_id,
                submitter_id=context.user_id,
                submitter_username=submitter_username,
                target_staff_id=target_staff_id,
                target_staff_username=target_staff_username,
                rating=rating,
                comment=comment,
            )
        except ValidationError as exc:
            raise FeedbackError(exc.errors()[0]["msg"].removeprefix("Value error, ")) from exc

        submitter = await self.staff_repo.find_by_user_id(context.guild_id, context.user_id)
        if submitter is not None and submitter.is_active:
            raise FeedbackError(
                "Staff members cannot submit feedback. Only clients can provide feedback."
            )
        if target_staff_id is not None:
            target = await self.staff_repo.find_by_user_id(context.guild_id, target_staff_id)
            if target is None or not target.is_active:
                raise FeedbackError("Target staff member not found")

        feedback = await self.feedback_repo.add(submission)
        await self.feedback_repo.session.commit()
        if self.audit is not None:
            await self.audit.log_action(
                guild_id=context.guild_id,
                action="feedback_submitted",
                actor_id=context.user_id,
                target_id=target_staff_id,
                details={"feedback_id": feedback.id, "rating": feedback.rating},
            )
        logger.info(
            "feedback_submitted feedback_id=%s submitter_id=%s target_staff_id=%s rating=%d",
            feedback.id,
            context.user_id,
            target_staff_id,
            feedback.rating,
        )
        return feedback

    async def search_feedback(
        self,
        filters: FeedbackSearchFilters,
        sort_field: str = "created_at",
        descending: bool = True,
        page: int = 1,
        per_page: int = 10,
    ) -> FeedbackPage:
        page = max(page, 1)
        total = await self.feedback_repo.count(filters)
        entries = await self.feedback_repo.search(
            filters,
            sort_field=sort_field,
            descending=descending,
            offset=(page - 1) * per_page,
            limit=per_page,
        )
        return FeedbackPage(
            feedback=entries,
            total=total,
            page=page,
            total_pages=max(1, math.ceil(total / per_page)),
        )

    async def get_staff_performance_metrics(
        self, guild_id: str, staff_id: str
    ) -> StaffPerformanceMetrics | None:
        """None when the staff member has no feedback yet."""
        feedback = await self.feedback_repo.find_for_staff(guild_id, staff_id)
        if not feedback:
            return None
        return _staff_metrics(staff_id, feedback)

    async def get_firm_performance_metrics(self, guild_id: str) -> FirmPerformanceMetrics:
        feedback = await self.feedback_repo.find_by_guild(guild_id)
        by_staff: dict[str, list[Feedback]] = {}
        for entry in feedback:
            if entry.target_staff_id is not None:
                by_staff.setdefault(entry.target_staff_id, []).append(entry)
        return FirmPerformanceMetrics(
            guild_id=guild_id,
            total_feedback=len(feedback),
            average_rating=_average(feedback),
            rating_distribution=_distribution(feedback),
            staff_metrics=[_staff_metrics(sid, entries) for sid, entries in by_staff.items()],
            firm_wide_feedback=[f for f in feedback if f.is_for_firm],
        )

    async def get_recent_feedback(self, guild_id: str, limit: int = 10) -> list[Feedback]:
        return await self.feedback_repo.get_recent_feedback(guild_id, limit)

    async def calculate_rating_trend(
        self,
        guild_id: str,
        staff_id: str,
        days: int = 30,
        now: datetime | None = None,
    ) -> RatingTrendReport:
        """Compare the last *days* against the *days* before them.

        A change under 5% either way is ``stable``.
        """
        end = now or datetime.now(UTC)
        middle = end - timedelta(days=days)
        start = middle - timedelta(days=days)
        current = await self.feedback_repo.search(
            FeedbackSearchFilters(
                guild_id=guild_id, target_staff_id=staff_id, start_date=middle, end_date=end
            )
        )
        previous = await self.feedback_repo.search(
            FeedbackSearchFilters(
                guild_id=guild_id, target_staff_id=staff_id, start_date=start, end_date=middle
            )
        )
        current_avg = _mean(current)
        previous_avg = _mean(previous)

        change = 0.0
        trend = "stable"
        if previous_avg > 0:
            change = (current_avg - previous_avg) / previous_avg * 100
            if abs(change) >= STABLE_TREND_PERCENT:
                trend = "improving" if change > 0 else "declining"
        return RatingTrendReport(
            current_period_average=round(current_avg, 2),
            previous_period_average=round(previous_avg, 2),
            trend=trend,
            change_percentage=round(change, 2),
        )
