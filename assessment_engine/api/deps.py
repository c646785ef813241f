from dataclasses import dataclass
import random
from typing import Optional

from fastapi import Request

from ..core.config import settings
from ..services.achievements import AchievementEngine, BadgeCatalogCache
from ..services.grader import AnswerGrader, SemanticChecker
from ..services.rewards import RewardService
from ..services.selector import QuestionSelector
from ..services.session import EligibilityGate, ExamSessionManager


@dataclass
class Services:
    repository: object
    store: object
    sessions: ExamSessionManager
    achievements: AchievementEngine
    rewards: RewardService


def build_services(
    repository,
    store,
    semantic: Optional[SemanticChecker] = None,
    eligibility: Optional[EligibilityGate] = None,
    tick_interval: Optional[float] = settings.TIMER_TICK_SECONDS,
    rng: Optional[random.Random] = None,
) -> Services:
    """Wire the assessment services around one repository and snapshot store."""
    rng = rng or random.Random()
    achievements = AchievementEngine(repository, BadgeCatalogCache())
    rewards = RewardService(repository)
    sessions = ExamSessionManager(
        repository=repository,
        store=store,
        selector=QuestionSelector(repository, rng),
        grader=AnswerGrader(semantic),
        achievements=achievements,
        rewards=rewards,
        eligibility=eligibility,
        tick_interval=tick_interval,
        rng=rng,
    )
    return Services(
        repository=repository,
        store=store,
        sessions=sessions,
        achievements=achievements,
        rewards=rewards,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_session_manager(request: Request) -> ExamSessionManager:
    return get_services(request).sessions


def get_achievement_engine(request: Request) -> AchievementEngine:
    return get_services(request).achievements


def get_reward_service(request: Request) -> RewardService:
    return get_services(request).rewards
