"""
Domain types shared by the selector, session manager, grader and reward services.

Values that cross a process boundary (snapshots, API payloads) are pydantic
models; purely in-process service results are dataclasses.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class QuestionType(str, enum.Enum):
    MCQ = "MCQ"
    SHORT_ANSWER = "ShortAnswer"
    SUBJECTIVE = "Subjective"
    MATCHING = "Matching"


class ExamMode(str, enum.Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    FULL = "Full"


class SessionState(str, enum.Enum):
    SETUP = "setup"
    IN_PROGRESS = "in_progress"
    SUBMIT_WARNING = "submit_warning"
    GRADING = "grading"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


# States a student can come back to after an interruption
RESUMABLE_STATES = (SessionState.IN_PROGRESS, SessionState.SUBMIT_WARNING, SessionState.GRADING)


class BadgeCondition(str, enum.Enum):
    FIRST_EXAM = "first_exam"
    EXAMS_COMPLETED = "exams_completed"
    PERFECT_SCORE = "perfect_score"
    STREAK_DAYS = "streak_days"
    XP_EARNED = "xp_earned"
    SUBJECT_MASTERY = "subject_mastery"
    SCORE_RANGE = "score_range"


Answer = Union[str, List[str]]


@dataclass(frozen=True)
class ModeConfig:
    """Question count, time limit and allowed types of an exam mode."""
    question_count: int
    time_limit_seconds: int
    question_types: List[QuestionType]


MODE_CONFIGS: Dict[ExamMode, ModeConfig] = {
    ExamMode.EASY: ModeConfig(10, 15 * 60, [QuestionType.MCQ]),
    ExamMode.MEDIUM: ModeConfig(20, 30 * 60, [QuestionType.MCQ, QuestionType.SHORT_ANSWER]),
    ExamMode.FULL: ModeConfig(
        40,
        60 * 60,
        [QuestionType.MCQ, QuestionType.SHORT_ANSWER, QuestionType.SUBJECTIVE, QuestionType.MATCHING],
    ),
}


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    subject: str
    grade_level: str
    type: QuestionType
    prompt: str
    options: List[str] = Field(default_factory=list)
    correct_answer: str
    explanation: Optional[str] = None
    created_at: datetime

    def public_dict(self) -> dict:
        """Serialize without the canonical answer or explanation."""
        return self.model_dump(mode="json", exclude={"correct_answer", "explanation"})


class Student(BaseModel):
    id: str
    name: str
    school: Optional[str] = None
    grade_level: str
    xp: int = 0
    tokens: int = 0


class GradeResult(BaseModel):
    correct: bool
    method: str
    reason: Optional[str] = None


class MatchingBoard(BaseModel):
    """Left items in canonical order, right items shuffled once per visit."""
    question_id: str
    lefts: List[str]
    rights: List[str]


class Badge(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    condition_type: str
    condition_value: int = 0


class StudentBadge(BaseModel):
    badge: Badge
    earned_at: datetime


class SessionSnapshot(BaseModel):
    session_id: str
    student_id: str
    state: SessionState = SessionState.SETUP
    mode: ExamMode
    subject: str
    grade_level: str
    questions: List[Question] = Field(default_factory=list)
    answers: List[Optional[Answer]] = Field(default_factory=list)
    current_index: int = 0
    time_limit: int = 0
    time_left: int = 0
    matching: Optional[MatchingBoard] = None
    unanswered: List[int] = Field(default_factory=list)
    started_at: Optional[datetime] = None

    # finalize progress, filled step by step so a retry resumes
    verdicts: Optional[List[GradeResult]] = None
    correct_count: Optional[int] = None
    score: Optional[int] = None
    exam_id: Optional[str] = None
    xp_before: Optional[int] = None
    xp_after: Optional[int] = None
    new_badges: Optional[List[Badge]] = None
    streak_active: bool = False
    tokens_awarded: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def time_taken(self) -> int:
        return self.time_limit - self.time_left

    def public_dict(self) -> dict:
        """Serialize for students; canonical answers stay hidden until completion."""
        data = self.model_dump(mode="json", exclude={"questions"})
        if self.state == SessionState.COMPLETED:
            data["questions"] = [q.model_dump(mode="json") for q in self.questions]
        else:
            data["questions"] = [q.public_dict() for q in self.questions]
        return data


class ExamRecord(BaseModel):
    id: Optional[str] = None
    student_id: str
    subject: str
    mode: ExamMode
    questions_count: int
    correct_answers: int
    score: int
    time_taken: int
    question_ids: List[str]
    completed: bool = True
    created_at: datetime


class AttemptRecord(BaseModel):
    question_id: str
    answer: Optional[Answer] = None
    correct: bool
    method: str
    reason: Optional[str] = None


class TokenEntry(BaseModel):
    source_type: str
    source_id: str
    amount: int


class Reward(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    cost: int
    stock: Optional[int] = None  # None means unlimited
    active: bool = True


class RewardClaim(BaseModel):
    id: Optional[str] = None
    student_id: str
    reward_id: str
    tokens_spent: int
    status: str = "pending"
    claimed_at: datetime


@dataclass
class StudentStats:
    total_exams: int = 0
    perfect_scores: int = 0
    best_score: int = 0
    total_xp: int = 0
    max_subject_exams: int = 0
    max_streak_days: int = 0
    current_streak_days: int = 0


@dataclass
class AchievementResult:
    new_badges: List[Badge]
    all_earned_badges: List[StudentBadge]
    stats: StudentStats


@dataclass
class RewardBreakdown:
    xp_delta: int = 0
    exam_tokens: int = 0
    badge_tokens: int = 0
    level_tokens: int = 0
    entries: List[TokenEntry] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.exam_tokens + self.badge_tokens + self.level_tokens
