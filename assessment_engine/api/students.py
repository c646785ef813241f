from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..models.domain import Badge, RewardClaim, StudentBadge
from ..services.achievements import AchievementEngine
from ..services.rewards import RewardService, level_for_xp
from .deps import get_achievement_engine, get_reward_service

router = APIRouter()


class StatsOut(BaseModel):
    total_exams: int
    perfect_scores: int
    best_score: int
    total_xp: int
    max_subject_exams: int
    max_streak_days: int
    current_streak_days: int


class AchievementsOut(BaseModel):
    new_badges: List[Badge]
    all_earned_badges: List[StudentBadge]
    stats: StatsOut


class TokenBalance(BaseModel):
    student_id: str
    balance: int
    xp: int
    level: int


class DailyBonus(BaseModel):
    awarded: int
    balance: int


@router.post("/{student_id}/achievements/evaluate", response_model=AchievementsOut)
async def evaluate_achievements(student_id: str, engine: AchievementEngine = Depends(get_achievement_engine)):
    result = await engine.evaluate(student_id)
    return AchievementsOut(
        new_badges=result.new_badges,
        all_earned_badges=result.all_earned_badges,
        stats=StatsOut(**vars(result.stats)),
    )


@router.get("/{student_id}/tokens", response_model=TokenBalance)
async def token_balance(student_id: str, rewards: RewardService = Depends(get_reward_service)):
    student = await rewards.repository.get_student(student_id)
    if student is None:
        raise HTTPException(404, "Student not found")
    balance = await rewards.token_balance(student_id)
    return TokenBalance(student_id=student_id, balance=balance, xp=student.xp, level=level_for_xp(student.xp))


@router.post("/{student_id}/rewards/{reward_id}/claim", response_model=RewardClaim, status_code=201)
async def claim_reward(student_id: str, reward_id: str, rewards: RewardService = Depends(get_reward_service)):
    return await rewards.claim_reward(student_id, reward_id)


@router.post("/{student_id}/daily-bonus", response_model=DailyBonus)
async def daily_bonus(student_id: str, rewards: RewardService = Depends(get_reward_service)):
    if await rewards.repository.get_student(student_id) is None:
        raise HTTPException(404, "Student not found")
    awarded = await rewards.award_daily_bonus(student_id)
    return DailyBonus(awarded=awarded, balance=await rewards.token_balance(student_id))
