from __future__ import annotations

import calendar
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

Category = Literal["primary", "secondary"]
CategoryFilter = Literal["primary", "secondary", "all"]
TimeWindow = Literal["today", "week", "month", "all"]

CATEGORIES: tuple[str, ...] = ("primary", "secondary")
TIME_WINDOWS: tuple[str, ...] = ("today", "week", "month", "all")
CATEGORY_ALIASES = {
    "reddit": "primary",
    "community": "secondary",
    "overall": "all",
}
LEADERBOARD_LIMIT = 50


@dataclass(frozen=True)
class ScorableIdea:
    id: str
    category: Category
    created_at: datetime
    upvotes: int
    downvotes: int
    potential_score: int

    @property
    def net_score(self) -> int:
        return self.upvotes - self.downvotes


@dataclass(frozen=True)
class RankedIdea:
    idea: ScorableIdea
    net_score: int
    rank: int


def normalize_category(value: str | None) -> CategoryFilter:
    if not value:
        return "all"
    key = value.strip().lower()
    key = CATEGORY_ALIASES.get(key, key)
    if key in CATEGORIES:
        return key  # type: ignore[return-value]
    return "all"


def normalize_window(value: str | None) -> TimeWindow:
    if not value:
        return "all"
    key = value.strip().lower()
    if key in TIME_WINDOWS:
        return key  # type: ignore[return-value]
    return "all"


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _one_month_earlier(moment: datetime) -> datetime:
    if moment.month == 1:
        year, month = moment.year - 1, 12
    else:
        year, month = moment.year, moment.month - 1
    # Mar 31 -> Feb 28/29 rather than rolling over into March.
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def window_cutoff(window: str | None, now: datetime) -> datetime | None:
    """Earliest ``created_at`` still inside ``window``, or None for no cutoff.

    ``today`` starts at midnight in the timezone of ``now`` itself, so callers
    that want a viewer's local day pass ``now`` already converted to it.
    """
    resolved = normalize_window(window)
    current = _as_aware(now)
    if resolved == "today":
        return current.replace(hour=0, minute=0, second=0, microsecond=0)
    if resolved == "week":
        return current - timedelta(days=7)
    if resolved == "month":
        return _one_month_earlier(current)
    return None


def rank_ideas(
    ideas: Iterable[ScorableIdea],
    category: str | None,
    window: str | None,
    *,
    now: datetime,
    limit: int = LEADERBOARD_LIMIT,
) -> list[RankedIdea]:
    """Filter, order and number ideas for a leaderboard.

    Ordering is net score, then potential score, both descending. The sort is
    stable, so ideas tying on both keys keep the order they arrived in and the
    earlier one takes the lower rank. Truncation to ``limit`` happens only
    after the full candidate set is ordered.
    """
    resolved_category = normalize_category(category)
    cutoff = window_cutoff(window, now)

    candidates = [
        idea
        for idea in ideas
        if (resolved_category == "all" or idea.category == resolved_category)
        and (cutoff is None or _as_aware(idea.created_at) >= cutoff)
    ]
    ordered = sorted(
        candidates,
        key=lambda idea: (idea.net_score, idea.potential_score),
        reverse=True,
    )
    return [
        RankedIdea(idea=idea, net_score=idea.net_score, rank=rank)
        for rank, idea in enumerate(ordered[: max(limit, 0)], start=1)
    ]
