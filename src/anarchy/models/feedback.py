"""Client feedback: a 1-5 star rating with a comment, for one staff member or the firm."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

MIN_RATING = 1
MAX_RATING = 5
MAX_COMMENT_LENGTH = 1000

RATING_TEXT: dict[int, str] = {
    1: "Poor",
    2: "Fair",
    3: "Good",
    4: "Very Good",
    5: "Excellent",
}

RatingTrend = Literal["improving", "declining", "stable"]


def get_star_display(rating: int) -> str:
    """``★★★☆☆`` for a rating of 3."""
    rating = max(0, min(MAX_RATING, rating))
    return "★" * rating + "☆" * (MAX_RATING - rating)


def get_rating_text(rating: int) -> str:
    return RATING_TEXT.get(rating, "Unknown")


def empty_distribution() -> dict[int, int]:
    return dict.fromkeys(range(MIN_RATING, MAX_RATING + 1), 0)


class FeedbackSubmission(BaseModel):
    guild_id: str
    submitter_id: str
    submitter_username: str
    target_staff_id: str | None = None
    target_staff_username: str | None = None
    rating: int
    comment: str

    @field_validator("rating")
    @classmethod
    def _rating_in_range(cls, value: int) -> int:
        if not MIN_RATING <= value <= MAX_RATING:
            raise ValueError("Rating must be between 1 and 5 stars")
        return value

    @field_validator("comment")
    @classmethod
    def _comment_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Feedback comment is required")
        if len(value) > MAX_COMMENT_LENGTH:
            raise ValueError(f"Feedback comment cannot exceed {MAX_COMMENT_LENGTH} characters")
        return value


class Feedback(BaseModel):
    id: str
    guild_id: str
    submitter_id: str
    submitter_username: str
    target_staff_id: str | None = None
    target_staff_username: str | None = None
    rating: int
    comment: str
    is_for_firm: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FeedbackSearchFilters(BaseModel):
    guild_id: str
    submitter_id: str | None = None
    target_staff_id: str | None = None
    rating: int | None = None
    min_rating: int | None = None
    max_rating: int | None = None
    is_for_firm: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search_text: str | None = None


class FeedbackPage(BaseModel):
    feedback: list[Feedback]
    total: int
    page: int = 1
    total_pages: int = 1


class StaffPerformanceMetrics(BaseModel):
    staff_id: str
    staff_username: str
    total_feedback: int
    average_rating: float
    rating_distribution: dict[int, int] = Field(default_factory=empty_distribution)
    recent_feedback: list[Feedback] = Field(default_factory=list)


class FirmPerformanceMetrics(BaseModel):
    guild_id: str
    total_feedback: int = 0
    average_rating: float = 0.0
    rating_distribution: dict[int, int] = Field(default_factory=empty_distribution)
    staff_metrics: list[StaffPerformanceMetrics] = Field(default_factory=list)
    firm_wide_feedback: list[Feedback] = Field(default_factory=list)

    def top_rated_staff(
        self, min_feedback: int = 3, limit: int = 5
    ) -> list[StaffPerformanceMetrics]:
        rated = [m for m in self.staff_metrics if m.total_feedback >= min_feedback]
        return sorted(rated, key=lambda m: m.average_rating, reverse=True)[:limit]


class RatingTrendReport(BaseModel):
    current_period_average: float
    previous_period_average: float
    trend: RatingTrend
    change_percentage: float
