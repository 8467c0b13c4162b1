from typing import NamedTuple

from firm_errors import ValidationFailed

MIN_RATING = 1
MAX_RATING = 5
MIN_COMMENT = 10
MAX_COMMENT = 2000


class FeedbackSummary(NamedTuple):
    total: int
    average: float
    distribution: dict[int, int]


def validate_rating(rating: int) -> int:
    if not isinstance(rating, int) or isinstance(rating, bool) or not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationFailed(f"Rating must be a whole number from {MIN_RATING} to {MAX_RATING}.")
    return rating


def validate_comment(comment: str) -> str:
    comment = (comment or "").strip()
    if len(comment) < MIN_COMMENT:
        raise ValidationFailed(f"Feedback must be at least {MIN_COMMENT} characters.")
    if len(comment) > MAX_COMMENT:
        raise ValidationFailed(f"Feedback cannot exceed {MAX_COMMENT} characters.")
    return comment


def star_display(rating: int) -> str:
    rating = max(MIN_RATING, min(MAX_RATING, rating))
    return "⭐" * rating + "☆" * (MAX_RATING - rating)


def summarize_ratings(counts: dict[int, int]) -> FeedbackSummary:
    """Build totals from a ``{rating: count}`` map; missing ratings count as zero."""
    distribution = {r: int(counts.get(r, 0)) for r in range(MIN_RATING, MAX_RATING + 1)}
    total = sum(distribution.values())
    average = sum(r * n for r, n in distribution.items()) / total if total else 0.0
    return FeedbackSummary(total=total, average=round(average, 2), distribution=distribution)
