"""
Badge rule engine.

Badges are declarative (condition type + threshold) and evaluated against
statistics derived from the student's completed exams. Awarding relies on
the (student, badge) uniqueness in storage, so evaluation is idempotent and
safe to run concurrently.
"""
import logging
import time
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from cachetools import TTLCache

from ..core.config import settings
from ..models.domain import AchievementResult, Badge, BadgeCondition, ExamRecord, StudentStats

logger = logging.getLogger(__name__)


class BadgeCatalogCache:
    """Holds the badge catalog for a bounded time."""

    _KEY = "catalog"

    def __init__(self, ttl: float = settings.BADGE_CATALOG_TTL, timer: Callable[[], float] = time.monotonic):
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl, timer=timer)

    async def get(self, loader) -> List[Badge]:
        catalog = self._cache.get(self._KEY)
        if catalog is None:
            catalog = list(await loader())
            self._cache[self._KEY] = catalog
            logger.debug(f"Badge catalog loaded ({len(catalog)} badges)")
        return catalog

    def invalidate(self):
        self._cache.clear()


def _utc_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def compute_streaks(timestamps: Iterable[datetime]) -> Tuple[int, int]:
    """Return (longest, current) runs of consecutive UTC calendar days."""
    days = sorted({_utc_date(ts) for ts in timestamps})
    if not days:
        return 0, 0
    longest = run = 1
    for previous, current in zip(days, days[1:]):
        run = run + 1 if current - previous == timedelta(days=1) else 1
        longest = max(longest, run)
    return longest, run


def compute_stats(exams: List[ExamRecord], total_xp: int) -> StudentStats:
    completed = [e for e in exams if e.completed]
    by_subject = Counter(e.subject for e in completed)
    longest, current = compute_streaks(e.created_at for e in completed)
    return StudentStats(
        total_exams=len(completed),
        perfect_scores=sum(1 for e in completed if e.score == 100),
        best_score=max((e.score for e in completed), default=0),
        total_xp=total_xp,
        max_subject_exams=max(by_subject.values(), default=0),
        max_streak_days=longest,
        current_streak_days=current,
    )


CONDITION_PREDICATES: Dict[str, Callable[[StudentStats, int], bool]] = {
    BadgeCondition.FIRST_EXAM.value: lambda s, v: s.total_exams >= 1,
    BadgeCondition.EXAMS_COMPLETED.value: lambda s, v: s.total_exams >= v,
    BadgeCondition.PERFECT_SCORE.value: lambda s, v: s.perfect_scores >= max(v, 1),
    BadgeCondition.STREAK_DAYS.value: lambda s, v: s.max_streak_days >= v,
    BadgeCondition.XP_EARNED.value: lambda s, v: s.total_xp >= v,
    BadgeCondition.SUBJECT_MASTERY.value: lambda s, v: s.max_subject_exams >= v,
    BadgeCondition.SCORE_RANGE.value: lambda s, v: s.best_score >= v,
}


def qualifies(badge: Badge, stats: StudentStats) -> bool:
    predicate = CONDITION_PREDICATES.get(badge.condition_type)
    if predicate is None:
        logger.warning(f"Unknown badge condition type: {badge.condition_type} (badge {badge.id})")
        return False
    return predicate(stats, badge.condition_value)


class AchievementEngine:
    def __init__(
        self,
        repository,
        catalog_cache: Optional[BadgeCatalogCache] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.catalog_cache = catalog_cache or BadgeCatalogCache()
        self.clock = clock

    async def evaluate(self, student_id: str) -> AchievementResult:
        """Award every badge the student now qualifies for and has not yet earned."""
        student = await self.repository.get_student(student_id)
        exams = await self.repository.fetch_completed_exams(student_id)
        stats = compute_stats(exams, student.xp if student else 0)

        catalog = await self.catalog_cache.get(self.repository.fetch_badge_catalog)
        earned_ids = {sb.badge.id for sb in await self.repository.fetch_student_badges(student_id)}

        new_badges: List[Badge] = []
        for badge in catalog:
            if badge.id in earned_ids or not qualifies(badge, stats):
                continue
            if await self.repository.insert_badge_award(student_id, badge.id, self.clock()):
                new_badges.append(badge)
                logger.info(f"Awarded badge {badge.name} to student {student_id}")
            else:
                logger.info(f"Badge {badge.name} already held by student {student_id}")

        all_earned = await self.repository.fetch_student_badges(student_id)
        return AchievementResult(new_badges=new_badges, all_earned_badges=all_earned, stats=stats)
