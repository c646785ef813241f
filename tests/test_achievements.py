from datetime import datetime, timedelta, timezone

from assessment_engine.models.domain import Badge
from assessment_engine.services.achievements import compute_stats, compute_streaks, qualifies

from fakes import BASE_TIME


def days(*offsets):
    return [BASE_TIME + timedelta(days=d) for d in offsets]


def test_streak_of_three_consecutive_days():
    assert compute_streaks(days(0, 1, 2)) == (3, 3)


def test_streak_broken_by_a_gap():
    longest, current = compute_streaks(days(0, 1, 3))
    assert longest == 2
    assert current == 1


def test_streak_counts_distinct_days_only():
    stamps = days(0, 0, 1) + [BASE_TIME + timedelta(days=1, hours=5)]
    assert compute_streaks(stamps) == (2, 2)


def test_streak_uses_utc_calendar_dates():
    late = datetime(2024, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-2)))  # 2 March UTC
    early = datetime(2024, 3, 1, 6, 0, tzinfo=timezone.utc)
    assert compute_streaks([early, late]) == (2, 2)


def test_empty_history_has_no_streak():
    assert compute_streaks([]) == (0, 0)


def test_stats(repo):
    repo.add_exam("s1", "Mathematics", 100, BASE_TIME)
    repo.add_exam("s1", "Mathematics", 60, BASE_TIME + timedelta(days=1))
    repo.add_exam("s1", "Science", 80, BASE_TIME + timedelta(days=3))

    stats = compute_stats(repo.exams, total_xp=250)
    assert stats.total_exams == 3
    assert stats.perfect_scores == 1
    assert stats.best_score == 100
    assert stats.max_subject_exams == 2
    assert stats.max_streak_days == 2
    assert stats.current_streak_days == 1
    assert stats.total_xp == 250


def test_unknown_condition_never_qualifies():
    badge = Badge(id="x", name="Mystery", condition_type="moon_phase", condition_value=1)
    assert not qualifies(badge, compute_stats([], 10_000))


async def test_first_exam_badge_awarded_once(repo, achievements):
    repo.add_exam("s1", "Mathematics", 70, BASE_TIME)

    first = await achievements.evaluate("s1")
    second = await achievements.evaluate("s1")

    assert [b.name for b in first.new_badges] == ["First Steps"]
    assert second.new_badges == []
    assert [sb.badge.id for sb in first.all_earned_badges] == [sb.badge.id for sb in second.all_earned_badges]


async def test_multiple_badges_from_history(repo, achievements):
    for day in range(3):
        repo.add_exam("s1", "Mathematics", 100, BASE_TIME + timedelta(days=day))

    result = await achievements.evaluate("s1")
    names = {b.name for b in result.new_badges}
    assert names == {"First Steps", "Perfectionist", "On Fire", "High Scorer"}
    assert result.stats.max_streak_days == 3


async def test_badge_already_awarded_elsewhere_is_not_new(repo, achievements):
    repo.add_exam("s1", "Mathematics", 70, BASE_TIME)
    # a concurrent evaluation won the insert after this one read the earned list
    original_fetch = repo.fetch_student_badges
    calls = {"n": 0}

    async def stale_fetch(student_id):
        calls["n"] += 1
        if calls["n"] == 1:
            await repo.insert_badge_award(student_id, "b-first", BASE_TIME)
            return []
        return await original_fetch(student_id)

    repo.fetch_student_badges = stale_fetch
    result = await achievements.evaluate("s1")

    assert result.new_badges == []
    assert [sb.badge.id for sb in result.all_earned_badges] == ["b-first"]


async def test_catalog_is_cached_until_ttl_expires(repo, achievements, catalog_timer):
    await achievements.evaluate("s1")
    await achievements.evaluate("s1")
    assert repo.catalog_loads == 1

    catalog_timer.value += 301
    await achievements.evaluate("s1")
    assert repo.catalog_loads == 2
