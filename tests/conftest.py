import random

import pytest

from assessment_engine.models.domain import Badge, QuestionType
from assessment_engine.services.achievements import AchievementEngine, BadgeCatalogCache
from assessment_engine.services.grader import AnswerGrader
from assessment_engine.services.rewards import RewardService
from assessment_engine.services.selector import QuestionSelector
from assessment_engine.services.session import ExamSessionManager

from fakes import FixedClock, FlakyStore, InMemoryRepository, ManualTimer, make_question

BADGES = [
    Badge(id="b-first", name="First Steps", condition_type="first_exam", condition_value=1),
    Badge(id="b-perfect", name="Perfectionist", condition_type="perfect_score", condition_value=1),
    Badge(id="b-five", name="Dedicated", condition_type="exams_completed", condition_value=5),
    Badge(id="b-streak", name="On Fire", condition_type="streak_days", condition_value=3),
    Badge(id="b-master", name="Subject Master", condition_type="subject_mastery", condition_value=10),
    Badge(id="b-high", name="High Scorer", condition_type="score_range", condition_value=90),
    Badge(id="b-xp", name="XP Hunter", condition_type="xp_earned", condition_value=500),
]


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def repo():
    repository = InMemoryRepository()
    repository.add_student("s1", grade="Darjah 3")
    for i in range(30):
        grade = ["Darjah 1", "Darjah 2", "Darjah 3"][i % 3]
        repository.questions.append(make_question(f"q{i:02d}", grade=grade, age_minutes=i))
    for i in range(10):
        repository.questions.append(make_question(
            f"sa{i:02d}", qtype=QuestionType.SHORT_ANSWER, correct="photosynthesis", options=[], age_minutes=i,
        ))
    repository.badges = list(BADGES)
    return repository


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def catalog_timer():
    return ManualTimer()


@pytest.fixture
def achievements(repo, clock, catalog_timer):
    return AchievementEngine(repo, BadgeCatalogCache(ttl=300, timer=catalog_timer), clock=clock)


@pytest.fixture
def rewards(repo, clock):
    return RewardService(repo, clock=clock)


@pytest.fixture
def make_manager(repo, store, clock, achievements, rewards):
    def factory(semantic=None, tick_interval=None, eligibility=None, seed=7):
        rng = random.Random(seed)
        return ExamSessionManager(
            repository=repo,
            store=store,
            selector=QuestionSelector(repo, rng),
            grader=AnswerGrader(semantic, timeout=0.05),
            achievements=achievements,
            rewards=rewards,
            eligibility=eligibility,
            tick_interval=tick_interval,
            rng=rng,
            clock=clock,
        )
    return factory


@pytest.fixture
def manager(make_manager):
    return make_manager()
