"""
Exam session lifecycle.

`reduce` is a pure transition function over explicit events; every state
change of a session goes through it. ExamSessionManager performs the side
effects around it: selecting questions, persisting snapshots after each
action, running the countdown timer and driving the resumable finalize
pipeline (grade, persist, XP, achievements, tokens).
"""
import asyncio
import contextlib
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Set

from ..core.cache import KeyValueStore, session_key
from ..core.config import settings
from ..core.exceptions import (
    EligibilityError, ExamValidationError, InvalidTransitionError,
    PersistenceError, SessionConflictError, SessionNotFoundError, StudentNotFoundError,
)
from ..models.domain import (
    MODE_CONFIGS, RESUMABLE_STATES, Answer, AttemptRecord, Badge, ExamMode, ExamRecord,
    GradeResult, MatchingBoard, Question, QuestionType, SessionSnapshot, SessionState,
)
from .grader import canonical_pairs
from .rewards import compute_rewards, xp_for_exam
from .selector import allowed_levels

logger = logging.getLogger(__name__)


# ========== Events ==========

@dataclass
class Start:
    questions: List[Question]
    time_limit: int
    started_at: datetime
    matching: Optional[MatchingBoard] = None


@dataclass
class SubmitAnswer:
    index: int
    answer: Answer


@dataclass
class Navigate:
    index: int
    matching: Optional[MatchingBoard] = None


@dataclass
class Tick:
    pass


@dataclass
class Finish:
    force: bool = False


@dataclass
class Review:
    matching: Optional[MatchingBoard] = None


@dataclass
class Graded:
    verdicts: List[GradeResult]


@dataclass
class ExamPersisted:
    exam_id: str


@dataclass
class XpApplied:
    xp_before: int
    xp_after: int


@dataclass
class AchievementsEvaluated:
    new_badges: List[Badge] = field(default_factory=list)
    streak_active: bool = False


@dataclass
class RewardsApplied:
    tokens: int


@dataclass
class GradingFailed:
    error: str


@dataclass
class Complete:
    pass


@dataclass
class Abandon:
    pass


# ========== Reducer ==========

def is_answered(answer: Optional[Answer]) -> bool:
    if answer is None:
        return False
    if isinstance(answer, str):
        return bool(answer.strip())
    return len(answer) > 0


def unanswered_indexes(snapshot: SessionSnapshot) -> List[int]:
    return [i for i, answer in enumerate(snapshot.answers) if not is_answered(answer)]


def score_for(correct: int, total: int) -> int:
    """Percentage rounded half up."""
    if total <= 0:
        return 0
    return (200 * correct + total) // (2 * total)


def _validate_answer(question: Question, answer: Answer) -> Answer:
    if question.type == QuestionType.MATCHING:
        if not isinstance(answer, list) or not all(isinstance(p, str) and ":" in p for p in answer):
            raise ExamValidationError("Matching answers must be a list of 'left:right' pairs")
        return list(answer)
    if not isinstance(answer, str):
        raise ExamValidationError(f"{question.type.value} answers must be text")
    return answer


def _check_index(snapshot: SessionSnapshot, index: int):
    if not 0 <= index < len(snapshot.questions):
        raise ExamValidationError(f"Question index {index} out of range 0..{len(snapshot.questions) - 1}")


def _require(snapshot: SessionSnapshot, event, *states: SessionState):
    if snapshot.state not in states:
        raise InvalidTransitionError(snapshot.state.value, type(event).__name__)


def reduce(snapshot: SessionSnapshot, event) -> SessionSnapshot:
    """Apply one event, returning a new snapshot. Never mutates its input."""
    state = snapshot.state

    if isinstance(event, Start):
        _require(snapshot, event, SessionState.SETUP)
        if not event.questions:
            raise ExamValidationError("An exam needs at least one question")
        return snapshot.model_copy(update={
            "state": SessionState.IN_PROGRESS,
            "questions": list(event.questions),
            "answers": [None] * len(event.questions),
            "current_index": 0,
            "time_limit": event.time_limit,
            "time_left": event.time_limit,
            "started_at": event.started_at,
            "matching": event.matching,
        })

    if isinstance(event, SubmitAnswer):
        _require(snapshot, event, SessionState.IN_PROGRESS)
        _check_index(snapshot, event.index)
        answers = list(snapshot.answers)
        answers[event.index] = _validate_answer(snapshot.questions[event.index], event.answer)
        return snapshot.model_copy(update={"answers": answers})

    if isinstance(event, Navigate):
        _require(snapshot, event, SessionState.IN_PROGRESS)
        _check_index(snapshot, event.index)
        return snapshot.model_copy(update={"current_index": event.index, "matching": event.matching})

    if isinstance(event, Tick):
        _require(snapshot, event, SessionState.IN_PROGRESS, SessionState.SUBMIT_WARNING)
        time_left = max(snapshot.time_left - 1, 0)
        update = {"time_left": time_left}
        if time_left == 0:
            update.update(state=SessionState.GRADING, unanswered=[], matching=None)
        return snapshot.model_copy(update=update)

    if isinstance(event, Finish):
        _require(snapshot, event, SessionState.IN_PROGRESS, SessionState.SUBMIT_WARNING)
        missing = unanswered_indexes(snapshot)
        if missing and not event.force:
            return snapshot.model_copy(update={"state": SessionState.SUBMIT_WARNING, "unanswered": missing})
        return snapshot.model_copy(update={"state": SessionState.GRADING, "unanswered": [], "matching": None})

    if isinstance(event, Review):
        _require(snapshot, event, SessionState.SUBMIT_WARNING)
        missing = snapshot.unanswered or unanswered_indexes(snapshot)
        return snapshot.model_copy(update={
            "state": SessionState.IN_PROGRESS,
            "current_index": missing[0] if missing else snapshot.current_index,
            "unanswered": [],
            "matching": event.matching,
        })

    if isinstance(event, Graded):
        _require(snapshot, event, SessionState.GRADING)
        correct = sum(1 for v in event.verdicts if v.correct)
        return snapshot.model_copy(update={
            "verdicts": list(event.verdicts),
            "correct_count": correct,
            "score": score_for(correct, len(snapshot.questions)),
            "last_error": None,
        })

    if isinstance(event, ExamPersisted):
        _require(snapshot, event, SessionState.GRADING)
        return snapshot.model_copy(update={"exam_id": event.exam_id, "last_error": None})

    if isinstance(event, XpApplied):
        _require(snapshot, event, SessionState.GRADING)
        return snapshot.model_copy(update={
            "xp_before": event.xp_before, "xp_after": event.xp_after, "last_error": None,
        })

    if isinstance(event, AchievementsEvaluated):
        _require(snapshot, event, SessionState.GRADING)
        return snapshot.model_copy(update={
            "new_badges": list(event.new_badges),
            "streak_active": event.streak_active,
            "last_error": None,
        })

    if isinstance(event, RewardsApplied):
        _require(snapshot, event, SessionState.GRADING)
        return snapshot.model_copy(update={"tokens_awarded": event.tokens, "last_error": None})

    if isinstance(event, GradingFailed):
        _require(snapshot, event, SessionState.GRADING)
        return snapshot.model_copy(update={"last_error": event.error})

    if isinstance(event, Complete):
        _require(snapshot, event, SessionState.GRADING)
        if snapshot.tokens_awarded is None:
            raise InvalidTransitionError(state.value, "Complete before rewards were applied")
        return snapshot.model_copy(update={"state": SessionState.COMPLETED, "last_error": None})

    if isinstance(event, Abandon):
        _require(snapshot, event, SessionState.SETUP, *RESUMABLE_STATES)
        return snapshot.model_copy(update={"state": SessionState.ABANDONED, "matching": None})

    raise InvalidTransitionError(state.value, type(event).__name__)


# ========== Manager ==========

class EligibilityGate(Protocol):
    async def may_start(self, student_id: str) -> bool: ...


class AllowAll:
    async def may_start(self, student_id: str) -> bool:
        return True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExamSessionManager:
    def __init__(
        self,
        repository,
        store: KeyValueStore,
        selector,
        grader,
        achievements,
        rewards,
        eligibility: Optional[EligibilityGate] = None,
        tick_interval: Optional[float] = settings.TIMER_TICK_SECONDS,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
        session_ttl: int = settings.SESSION_TTL,
    ):
        self.repository = repository
        self.store = store
        self.selector = selector
        self.grader = grader
        self.achievements = achievements
        self.rewards = rewards
        self.eligibility = eligibility or AllowAll()
        self.tick_interval = tick_interval
        self.rng = rng or random.Random()
        self.clock = clock
        self.session_ttl = session_ttl
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tick_tasks: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # ---------- snapshot storage ----------

    async def _load(self, student_id: str) -> Optional[SessionSnapshot]:
        try:
            raw = await self.store.get(session_key(student_id))
        except Exception as e:
            raise PersistenceError(f"Could not read session of student {student_id}: {e}") from e
        if raw is None:
            return None
        return SessionSnapshot.model_validate(raw)

    async def _save(self, snapshot: SessionSnapshot):
        saved = await self.store.set(
            session_key(snapshot.student_id),
            snapshot.model_dump(mode="json"),
            expire=self.session_ttl,
        )
        if not saved:
            raise PersistenceError(f"Snapshot for session {snapshot.session_id} was not saved")

    async def _discard(self, student_id: str):
        await self.store.delete(session_key(student_id))

    async def _require_session(self, student_id: str) -> SessionSnapshot:
        snapshot = await self._load(student_id)
        if snapshot is None:
            raise SessionNotFoundError(f"No active exam session for student {student_id}")
        return snapshot

    @contextlib.asynccontextmanager
    async def _lock(self, student_id: str):
        """Serialize work per student; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(student_id, asyncio.Lock())
        self._lock_users[student_id] = self._lock_users.get(student_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[student_id] -= 1
            if not self._lock_users[student_id]:
                del self._lock_users[student_id]
                del self._locks[student_id]

    async def _apply(self, snapshot: SessionSnapshot, event) -> SessionSnapshot:
        snapshot = reduce(snapshot, event)
        await self._save(snapshot)
        return snapshot

    def _board(self, question: Question) -> Optional[MatchingBoard]:
        if question.type != QuestionType.MATCHING:
            return None
        pairs = canonical_pairs(question)
        lefts = [p.split(":", 1)[0] for p in pairs]
        rights = [p.split(":", 1)[1] for p in pairs]
        self.rng.shuffle(rights)
        return MatchingBoard(question_id=question.id, lefts=lefts, rights=rights)

    # ---------- timer ----------

    def _arm_timer(self, student_id: str, session_id: str):
        if self.tick_interval is None:
            return
        self._cancel_timer(student_id)
        loop = asyncio.get_running_loop()
        self._timers[student_id] = loop.call_later(self.tick_interval, self._on_timer, student_id, session_id)

    def _cancel_timer(self, student_id: str):
        handle = self._timers.pop(student_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timer(self, student_id: str, session_id: str):
        self._timers.pop(student_id, None)
        task = asyncio.ensure_future(self.tick(student_id, session_id))
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_done)

    def _tick_done(self, task: asyncio.Task):
        self._tick_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Timer tick failed: {task.exception()}")

    async def tick(self, student_id: str, session_id: Optional[str] = None) -> Optional[SessionSnapshot]:
        """Advance the countdown one second; at zero the exam is finalized as it stands."""
        async with self._lock(student_id):
            snapshot = await self._load(student_id)
            if snapshot is None or (session_id is not None and snapshot.session_id != session_id):
                return None
            if snapshot.state not in (SessionState.IN_PROGRESS, SessionState.SUBMIT_WARNING):
                return None
            try:
                snapshot = await self._apply(snapshot, Tick())
            except PersistenceError:
                # the stored countdown is unchanged, so the next tick retries it
                self._arm_timer(student_id, snapshot.session_id)
                raise
            if snapshot.state != SessionState.GRADING:
                self._arm_timer(student_id, snapshot.session_id)
                return snapshot
            logger.info(f"Time expired for session {snapshot.session_id}, submitting")
            try:
                return await self._finalize(snapshot)
            except PersistenceError:
                return await self._load(student_id)

    # ---------- operations ----------

    async def start_session(self, student_id: str, subject: str, mode: ExamMode) -> SessionSnapshot:
        if not await self.eligibility.may_start(student_id):
            raise EligibilityError(f"Student {student_id} may not start an exam")

        async with self._lock(student_id):
            existing = await self._load(student_id)
            if existing is not None and existing.state in RESUMABLE_STATES:
                raise SessionConflictError(
                    f"Student {student_id} already has a session in state {existing.state.value}"
                )

            student = await self.repository.get_student(student_id)
            if student is None:
                raise StudentNotFoundError(f"Student {student_id} not found")

            config = MODE_CONFIGS[mode]
            levels = allowed_levels(student.grade_level)
            questions = await self.selector.select(
                student_id, subject, levels, config.question_types, config.question_count
            )

            snapshot = SessionSnapshot(
                session_id=str(uuid.uuid4()),
                student_id=student_id,
                mode=mode,
                subject=subject,
                grade_level=student.grade_level,
            )
            snapshot = await self._apply(snapshot, Start(
                questions=questions,
                time_limit=config.time_limit_seconds,
                started_at=self.clock(),
                matching=self._board(questions[0]),
            ))
            self._arm_timer(student_id, snapshot.session_id)
            logger.info(
                f"Started {mode.value} {subject} session {snapshot.session_id} "
                f"for student {student_id} ({len(questions)} questions)"
            )
            return snapshot

    async def submit_answer(self, student_id: str, index: int, answer: Answer) -> SessionSnapshot:
        async with self._lock(student_id):
            snapshot = await self._require_session(student_id)
            return await self._apply(snapshot, SubmitAnswer(index=index, answer=answer))

    async def navigate_to(self, student_id: str, index: int) -> SessionSnapshot:
        async with self._lock(student_id):
            snapshot = await self._require_session(student_id)
            _check_index(snapshot, index)
            return await self._apply(snapshot, Navigate(index=index, matching=self._board(snapshot.questions[index])))

    async def review(self, student_id: str) -> SessionSnapshot:
        """Leave the submit warning and jump to the first unanswered question."""
        async with self._lock(student_id):
            snapshot = await self._require_session(student_id)
            missing = snapshot.unanswered or unanswered_indexes(snapshot)
            target = missing[0] if missing else snapshot.current_index
            board = self._board(snapshot.questions[target]) if snapshot.questions else None
            return await self._apply(snapshot, Review(matching=board))

    async def finalize(self, student_id: str, force: bool = False) -> SessionSnapshot:
        """
        Submit the exam.

        Without `force`, unanswered questions move the session to the submit
        warning instead. Calling again on a session left in grading resumes
        the pipeline from the first step that did not complete.
        """
        async with self._lock(student_id):
            snapshot = await self._require_session(student_id)
            if snapshot.state in (SessionState.IN_PROGRESS, SessionState.SUBMIT_WARNING):
                snapshot = await self._apply(snapshot, Finish(force=force))
                if snapshot.state == SessionState.SUBMIT_WARNING:
                    return snapshot
            if snapshot.state != SessionState.GRADING:
                raise InvalidTransitionError(snapshot.state.value, "Finish")
            return await self._finalize(snapshot)

    async def restore_session(self, student_id: str) -> Optional[SessionSnapshot]:
        """Return a resumable session, re-arming its timer; anything else is discarded."""
        async with self._lock(student_id):
            snapshot = await self._load(student_id)
            if snapshot is None:
                return None
            if snapshot.state not in RESUMABLE_STATES:
                await self._discard(student_id)
                return None
            if snapshot.state != SessionState.GRADING and student_id not in self._timers:
                self._arm_timer(student_id, snapshot.session_id)
            return snapshot

    async def abandon(self, student_id: str) -> SessionSnapshot:
        async with self._lock(student_id):
            snapshot = await self._require_session(student_id)
            snapshot = reduce(snapshot, Abandon())
            self._cancel_timer(student_id)
            await self._discard(student_id)
            logger.info(f"Session {snapshot.session_id} abandoned by student {student_id}")
            return snapshot

    # ---------- finalize pipeline ----------

    async def _grade_all(self, snapshot: SessionSnapshot) -> List[GradeResult]:
        results = await asyncio.gather(
            *(self.grader.grade(q, a) for q, a in zip(snapshot.questions, snapshot.answers)),
            return_exceptions=True,
        )
        verdicts = []
        for question, result in zip(snapshot.questions, results):
            if isinstance(result, BaseException):
                logger.warning(f"Grading failed for question {question.id}: {result}")
                result = GradeResult(correct=False, method="error", reason=f"Grading error: {result}")
            verdicts.append(result)
        return verdicts

    def _exam_record(self, snapshot: SessionSnapshot) -> ExamRecord:
        # keyed by session so a retried persist finds the row it already wrote
        return ExamRecord(
            id=snapshot.session_id,
            student_id=snapshot.student_id,
            subject=snapshot.subject,
            mode=snapshot.mode,
            questions_count=len(snapshot.questions),
            correct_answers=snapshot.correct_count,
            score=snapshot.score,
            time_taken=snapshot.time_taken,
            question_ids=[q.id for q in snapshot.questions],
            created_at=self.clock(),
        )

    async def _finalize(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        student_id = snapshot.student_id
        self._cancel_timer(student_id)
        try:
            if snapshot.verdicts is None:
                snapshot = await self._apply(snapshot, Graded(verdicts=await self._grade_all(snapshot)))

            if snapshot.exam_id is None:
                attempts = [
                    AttemptRecord(
                        question_id=q.id, answer=a, correct=v.correct, method=v.method, reason=v.reason
                    )
                    for q, a, v in zip(snapshot.questions, snapshot.answers, snapshot.verdicts)
                ]
                exam_id = await self.repository.persist_exam(self._exam_record(snapshot), attempts)
                snapshot = await self._apply(snapshot, ExamPersisted(exam_id=exam_id))

            if snapshot.xp_after is None:
                delta = xp_for_exam(snapshot.correct_count, snapshot.score)
                xp_before, xp_after = await self.repository.update_student_xp(student_id, delta)
                snapshot = await self._apply(snapshot, XpApplied(xp_before=xp_before, xp_after=xp_after))

            if snapshot.new_badges is None:
                result = await self.achievements.evaluate(student_id)
                snapshot = await self._apply(snapshot, AchievementsEvaluated(
                    new_badges=result.new_badges,
                    streak_active=result.stats.current_streak_days >= 2,
                ))

            if snapshot.tokens_awarded is None:
                breakdown = compute_rewards(
                    snapshot.exam_id,
                    snapshot.correct_count,
                    snapshot.score,
                    snapshot.streak_active,
                    snapshot.new_badges,
                    snapshot.xp_before,
                    snapshot.xp_after,
                )
                await self.rewards.apply(student_id, breakdown)
                snapshot = await self._apply(snapshot, RewardsApplied(tokens=breakdown.total_tokens))
        except Exception as e:
            await self._record_failure(snapshot, e)
            raise PersistenceError(f"Finalizing session {snapshot.session_id} failed: {e}") from e

        snapshot = reduce(snapshot, Complete())
        await self._discard(student_id)
        logger.info(
            f"Session {snapshot.session_id} completed: score {snapshot.score}, "
            f"xp {snapshot.xp_before}->{snapshot.xp_after}, tokens +{snapshot.tokens_awarded}"
        )
        return snapshot

    async def _record_failure(self, snapshot: SessionSnapshot, error: Exception):
        logger.error(f"Finalize failed for session {snapshot.session_id}: {error}", exc_info=True)
        try:
            await self._apply(snapshot, GradingFailed(error=str(error)))
        except PersistenceError as e:
            logger.error(f"Could not record failure for session {snapshot.session_id}: {e}")

    async def shutdown(self):
        """Cancel pending timers; snapshots stay in the store for restore."""
        for student_id in list(self._timers):
            self._cancel_timer(student_id)
        for task in list(self._tick_tasks):
            task.cancel()
