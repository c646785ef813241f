"""
Persistence boundary for the assessment services.

Services depend only on the AssessmentRepository protocol; the SQLAlchemy
implementation targets PostgreSQL (asyncpg) in production and SQLite
(aiosqlite) in tests.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Set, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..core.exceptions import RewardUnavailableError, StudentNotFoundError
from ..models import orm
from ..models.domain import (
    AttemptRecord, Badge, ExamMode, ExamRecord, Question, QuestionType, Reward, RewardClaim,
    Student, StudentBadge, TokenEntry,
)

logger = logging.getLogger(__name__)


class AssessmentRepository(Protocol):
    async def fetch_candidate_questions(
        self, levels: List[str], subject: str, question_types: List[QuestionType]
    ) -> List[Question]: ...

    async def fetch_answered_questions(self, student_id: str, subject: str) -> Dict[str, datetime]: ...

    async def fetch_answered_question_ids(self, student_id: str, subject: str) -> Set[str]: ...

    async def get_student(self, student_id: str) -> Optional[Student]: ...

    async def persist_exam(self, exam: ExamRecord, attempts: List[AttemptRecord]) -> str: ...

    async def update_student_xp(self, student_id: str, delta: int) -> Tuple[int, int]: ...

    async def fetch_completed_exams(self, student_id: str) -> List[ExamRecord]: ...

    async def fetch_badge_catalog(self) -> List[Badge]: ...

    async def fetch_student_badges(self, student_id: str) -> List[StudentBadge]: ...

    async def insert_badge_award(self, student_id: str, badge_id: str, earned_at: datetime) -> bool: ...

    async def append_token_transactions(
        self, student_id: str, entries: List[TokenEntry], earned_at: datetime
    ) -> int: ...

    async def get_token_balance(self, student_id: str) -> int: ...

    async def get_reward(self, reward_id: str) -> Optional[Reward]: ...

    async def insert_reward_claim(self, claim: RewardClaim) -> RewardClaim: ...


def _aware(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _question(row: orm.Question) -> Question:
    return Question(
        id=row.id,
        subject=row.subject,
        grade_level=row.grade_level,
        type=QuestionType(row.type),
        prompt=row.prompt,
        options=list(row.options or []),
        correct_answer=row.correct_answer,
        explanation=row.explanation,
        created_at=_aware(row.created_at),
    )


def _badge(row: orm.Badge) -> Badge:
    return Badge(
        id=row.id,
        name=row.name,
        description=row.description,
        icon=row.icon,
        condition_type=row.condition_type,
        condition_value=row.condition_value or 0,
    )


def _exam(row: orm.Exam) -> ExamRecord:
    return ExamRecord(
        id=row.id,
        student_id=row.student_id,
        subject=row.subject,
        mode=ExamMode(row.mode),
        questions_count=row.questions_count,
        correct_answers=row.correct_answers,
        score=row.score,
        time_taken=row.time_taken,
        question_ids=list(row.question_ids or []),
        completed=row.completed,
        created_at=_aware(row.created_at),
    )


class SqlAlchemyRepository:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )

    def _insert(self, table):
        dialect = postgresql if self.engine.dialect.name == "postgresql" else sqlite
        return dialect.insert(table)

    # ========== Questions ==========

    async def fetch_candidate_questions(
        self, levels: List[str], subject: str, question_types: List[QuestionType]
    ) -> List[Question]:
        stmt = (
            select(orm.Question)
            .where(
                orm.Question.subject == subject,
                orm.Question.grade_level.in_(levels),
                orm.Question.type.in_([t.value for t in question_types]),
            )
            .order_by(orm.Question.created_at.desc(), orm.Question.id)
        )
        async with self.session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [_question(r) for r in rows]

    async def fetch_answered_questions(self, student_id: str, subject: str) -> Dict[str, datetime]:
        stmt = (
            select(orm.Attempt.question_id, func.max(orm.Exam.created_at))
            .join(orm.Exam, orm.Exam.id == orm.Attempt.exam_id)
            .where(
                orm.Exam.student_id == student_id,
                orm.Exam.subject == subject,
                orm.Exam.completed.is_(True),
            )
            .group_by(orm.Attempt.question_id)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return {question_id: _aware(answered_at) for question_id, answered_at in rows}

    async def fetch_answered_question_ids(self, student_id: str, subject: str) -> Set[str]:
        return set(await self.fetch_answered_questions(student_id, subject))

    # ========== Students & exams ==========

    async def get_student(self, student_id: str) -> Optional[Student]:
        async with self.session_factory() as session:
            row = await session.get(orm.Student, student_id)
        if row is None:
            return None
        return Student(
            id=row.id,
            name=row.name,
            school=row.school,
            grade_level=row.grade_level,
            xp=row.xp or 0,
            tokens=row.tokens or 0,
        )

    async def persist_exam(self, exam: ExamRecord, attempts: List[AttemptRecord]) -> str:
        async with self.session_factory() as session, session.begin():
            if exam.id is not None and await session.get(orm.Exam, exam.id) is not None:
                logger.info(f"Exam {exam.id} already persisted")
                return exam.id
            row = orm.Exam(
                student_id=exam.student_id,
                subject=exam.subject,
                mode=exam.mode.value,
                questions_count=exam.questions_count,
                correct_answers=exam.correct_answers,
                score=exam.score,
                time_taken=exam.time_taken,
                question_ids=list(exam.question_ids),
                completed=exam.completed,
                created_at=exam.created_at,
            )
            if exam.id is not None:
                row.id = exam.id
            session.add(row)
            await session.flush()
            session.add_all([
                orm.Attempt(
                    exam_id=row.id,
                    student_id=exam.student_id,
                    question_id=a.question_id,
                    answer=a.answer,
                    correct=a.correct,
                    method=a.method,
                    reason=a.reason,
                    created_at=exam.created_at,
                )
                for a in attempts
            ])
            exam_id = row.id
        logger.info(f"Persisted exam {exam_id} for student {exam.student_id} (score {exam.score})")
        return exam_id

    async def update_student_xp(self, student_id: str, delta: int) -> Tuple[int, int]:
        async with self.session_factory() as session, session.begin():
            row = await session.get(orm.Student, student_id, with_for_update=True)
            if row is None:
                raise StudentNotFoundError(f"Student {student_id} not found")
            old_xp = row.xp or 0
            row.xp = old_xp + delta
            new_xp = row.xp
        return old_xp, new_xp

    async def fetch_completed_exams(self, student_id: str) -> List[ExamRecord]:
        stmt = (
            select(orm.Exam)
            .where(orm.Exam.student_id == student_id, orm.Exam.completed.is_(True))
            .order_by(orm.Exam.created_at)
        )
        async with self.session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [_exam(r) for r in rows]

    # ========== Badges ==========

    async def fetch_badge_catalog(self) -> List[Badge]:
        async with self.session_factory() as session:
            rows = (await session.scalars(select(orm.Badge).order_by(orm.Badge.created_at, orm.Badge.id))).all()
        return [_badge(r) for r in rows]

    async def fetch_student_badges(self, student_id: str) -> List[StudentBadge]:
        stmt = (
            select(orm.Badge, orm.StudentBadge.earned_at)
            .join(orm.StudentBadge, orm.StudentBadge.badge_id == orm.Badge.id)
            .where(orm.StudentBadge.student_id == student_id)
            .order_by(orm.StudentBadge.earned_at, orm.Badge.id)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [StudentBadge(badge=_badge(badge), earned_at=_aware(earned_at)) for badge, earned_at in rows]

    async def insert_badge_award(self, student_id: str, badge_id: str, earned_at: datetime) -> bool:
        stmt = (
            self._insert(orm.StudentBadge)
            .values(student_id=student_id, badge_id=badge_id, earned_at=earned_at)
            .on_conflict_do_nothing(index_elements=["student_id", "badge_id"])
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount == 1

    # ========== Tokens & rewards ==========

    async def _balance(self, session: AsyncSession, student_id: str) -> int:
        earned = await session.scalar(
            select(func.coalesce(func.sum(orm.TokenTransaction.tokens_earned), 0))
            .where(orm.TokenTransaction.student_id == student_id)
        )
        spent = await session.scalar(
            select(func.coalesce(func.sum(orm.RewardClaim.tokens_spent), 0))
            .where(orm.RewardClaim.student_id == student_id)
        )
        return int(earned or 0) - int(spent or 0)

    async def append_token_transactions(
        self, student_id: str, entries: List[TokenEntry], earned_at: datetime
    ) -> int:
        inserted = 0
        async with self.session_factory() as session, session.begin():
            for entry in entries:
                stmt = (
                    self._insert(orm.TokenTransaction)
                    .values(
                        student_id=student_id,
                        source_type=entry.source_type,
                        source_id=entry.source_id,
                        tokens_earned=entry.amount,
                        earned_at=earned_at,
                    )
                    .on_conflict_do_nothing(index_elements=["student_id", "source_type", "source_id"])
                )
                result = await session.execute(stmt)
                inserted += result.rowcount or 0
            balance = await self._balance(session, student_id)
            await session.execute(
                update(orm.Student).where(orm.Student.id == student_id).values(tokens=balance)
            )
        return inserted

    async def get_token_balance(self, student_id: str) -> int:
        async with self.session_factory() as session:
            return await self._balance(session, student_id)

    async def get_reward(self, reward_id: str) -> Optional[Reward]:
        async with self.session_factory() as session:
            row = await session.get(orm.Reward, reward_id)
        if row is None:
            return None
        return Reward(
            id=row.id,
            name=row.name,
            description=row.description,
            cost=row.cost,
            stock=row.stock,
            active=row.active,
        )

    async def insert_reward_claim(self, claim: RewardClaim) -> RewardClaim:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(orm.Reward)
                .where(
                    orm.Reward.id == claim.reward_id,
                    (orm.Reward.stock.is_(None)) | (orm.Reward.stock > 0),
                )
                .values(stock=orm.Reward.stock - 1)
            )
            if result.rowcount == 0:
                raise RewardUnavailableError(claim.reward_id, f"Reward {claim.reward_id} is out of stock")
            row = orm.RewardClaim(
                student_id=claim.student_id,
                reward_id=claim.reward_id,
                tokens_spent=claim.tokens_spent,
                status=claim.status,
                claimed_at=claim.claimed_at,
            )
            session.add(row)
            await session.flush()
            balance = await self._balance(session, claim.student_id)
            await session.execute(
                update(orm.Student).where(orm.Student.id == claim.student_id).values(tokens=balance)
            )
            claim_id = row.id
        return claim.model_copy(update={"id": claim_id})
