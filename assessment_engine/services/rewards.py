"""
XP and token rewards.

The calculators are pure functions of an exam outcome; RewardService writes
their results to the token ledger, where (source_type, source_id) keys make
re-application a no-op.
"""
import logging
import math
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ..core.exceptions import InsufficientTokensError, RewardUnavailableError, StudentNotFoundError
from ..models.domain import Badge, RewardBreakdown, RewardClaim, TokenEntry

logger = logging.getLogger(__name__)

XP_PER_CORRECT = 10
PERFECT_XP_BONUS = 100

TOKEN_RULES = {
    "level_up": {
        (1, 2): 10,
        (2, 3): 20,
        (3, 4): 30,
        (4, 5): 50,
    },
    "badge_earned": {
        "first_exam": 5,
        "perfect_score": 15,
        "score_range": 10,
        "exams_completed": 8,
        "streak_days": 12,
        "xp_earned": 20,
        "subject_mastery": 25,
    },
    "exam_score": {
        "multiplier": 0.1,
        "perfect_bonus": 5,
        "streak_bonus": 2,
        "completion_bonus": 3,
    },
    "daily_bonus": 5,
}

# (level, minimum xp), ascending
XP_LEVELS: List[Tuple[int, int]] = [(1, 0), (2, 100), (3, 300), (4, 600), (5, 1000)]


def level_for_xp(xp: int) -> int:
    level = XP_LEVELS[0][0]
    for candidate, threshold in XP_LEVELS:
        if xp >= threshold:
            level = candidate
    return level


def xp_for_exam(correct_count: int, score: int) -> int:
    return XP_PER_CORRECT * correct_count + (PERFECT_XP_BONUS if score == 100 else 0)


def exam_tokens(score: int, streak_active: bool) -> int:
    rules = TOKEN_RULES["exam_score"]
    tokens = math.floor(score * rules["multiplier"]) + rules["completion_bonus"]
    if score == 100:
        tokens += rules["perfect_bonus"]
    if streak_active:
        tokens += rules["streak_bonus"]
    return tokens


def badge_tokens(condition_type: str) -> int:
    return TOKEN_RULES["badge_earned"].get(condition_type, 0)


def level_up_tokens(old_level: int, new_level: int) -> int:
    """Only a single adjacent level transition listed in the rules pays out."""
    return TOKEN_RULES["level_up"].get((old_level, new_level), 0)


def compute_rewards(
    exam_id: str,
    correct_count: int,
    score: int,
    streak_active: bool,
    new_badges: List[Badge],
    xp_before: int,
    xp_after: int,
) -> RewardBreakdown:
    breakdown = RewardBreakdown(xp_delta=xp_for_exam(correct_count, score))

    breakdown.exam_tokens = exam_tokens(score, streak_active)
    breakdown.entries.append(TokenEntry(source_type="exam_score", source_id=exam_id, amount=breakdown.exam_tokens))

    for badge in new_badges:
        amount = badge_tokens(badge.condition_type)
        if amount:
            breakdown.badge_tokens += amount
            breakdown.entries.append(TokenEntry(source_type="badge_earned", source_id=badge.id, amount=amount))

    old_level, new_level = level_for_xp(xp_before), level_for_xp(xp_after)
    breakdown.level_tokens = level_up_tokens(old_level, new_level)
    if breakdown.level_tokens:
        breakdown.entries.append(TokenEntry(
            source_type="level_up",
            source_id=f"{old_level}-{new_level}",
            amount=breakdown.level_tokens,
        ))
    return breakdown


class RewardService:
    def __init__(self, repository, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.repository = repository
        self.clock = clock

    async def apply(self, student_id: str, breakdown: RewardBreakdown) -> int:
        """Append the breakdown's ledger entries; returns the entries newly recorded."""
        inserted = await self.repository.append_token_transactions(student_id, breakdown.entries, self.clock())
        logger.info(
            f"Student {student_id} earned {breakdown.total_tokens} tokens "
            f"({inserted}/{len(breakdown.entries)} new ledger entries)"
        )
        return inserted

    async def token_balance(self, student_id: str) -> int:
        return await self.repository.get_token_balance(student_id)

    async def award_daily_bonus(self, student_id: str, day: Optional[date] = None) -> int:
        """Pay the daily bonus at most once per calendar day; returns tokens awarded."""
        day = day or self.clock().date()
        entry = TokenEntry(source_type="daily_bonus", source_id=day.isoformat(), amount=TOKEN_RULES["daily_bonus"])
        inserted = await self.repository.append_token_transactions(student_id, [entry], self.clock())
        return entry.amount if inserted else 0

    async def claim_reward(self, student_id: str, reward_id: str) -> RewardClaim:
        if await self.repository.get_student(student_id) is None:
            raise StudentNotFoundError(f"Student {student_id} not found")

        reward = await self.repository.get_reward(reward_id)
        if reward is None or not reward.active:
            raise RewardUnavailableError(reward_id)
        if reward.stock is not None and reward.stock <= 0:
            raise RewardUnavailableError(reward_id, f"Reward {reward.name} is out of stock")

        # always a fresh read; spending must never see a cached balance
        balance = await self.repository.get_token_balance(student_id)
        if balance < reward.cost:
            raise InsufficientTokensError(balance, reward.cost)

        claim = RewardClaim(
            student_id=student_id,
            reward_id=reward.id,
            tokens_spent=reward.cost,
            claimed_at=self.clock(),
        )
        claim = await self.repository.insert_reward_claim(claim)
        logger.info(f"Student {student_id} claimed reward {reward.name} for {reward.cost} tokens")
        return claim
