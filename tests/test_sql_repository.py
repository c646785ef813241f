import random
from datetime import timedelta

import pytest
from sqlalchemy.pool import StaticPool

from assessment_engine.api.deps import build_services
from assessment_engine.core.cache import InMemoryStore
from assessment_engine.core.database import build_engine, init_db
from assessment_engine.core.exceptions import RewardUnavailableError
from assessment_engine.models import orm
from assessment_engine.models.domain import (
    AttemptRecord, ExamMode, ExamRecord, QuestionType, RewardClaim, SessionState, TokenEntry,
)
from assessment_engine.services.repository import SqlAlchemyRepository

from fakes import BASE_TIME


@pytest.fixture
async def sql_repo():
    engine = build_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await init_db(engine)
    repository = SqlAlchemyRepository(engine)
    async with repository.session_factory() as session, session.begin():
        session.add(orm.Student(id="s1", name="Aisyah", grade_level="Darjah 2"))
        for i in range(12):
            session.add(orm.Question(
                id=f"q{i:02d}",
                subject="Mathematics",
                grade_level=["Darjah 1", "Darjah 2"][i % 2],
                type="MCQ",
                prompt=f"{i} + 1 = ?",
                options=["A. yes", "B. no"],
                correct_answer="A",
                created_at=BASE_TIME - timedelta(minutes=i),
            ))
        session.add(orm.Question(
            id="senior", subject="Mathematics", grade_level="Darjah 3", type="MCQ",
            prompt="?", options=[], correct_answer="A", created_at=BASE_TIME,
        ))
        session.add(orm.Question(
            id="science", subject="Science", grade_level="Darjah 1", type="MCQ",
            prompt="?", options=[], correct_answer="A", created_at=BASE_TIME,
        ))
        session.add(orm.Badge(
            id="b-first", name="First Steps", condition_type="first_exam", condition_value=1,
            created_at=BASE_TIME,
        ))
        session.add(orm.Reward(id="pen", name="Pen", cost=5, stock=1))
    yield repository
    await engine.dispose()


def exam_record(score=80, subject="Mathematics", question_ids=("q00", "q01")):
    return ExamRecord(
        student_id="s1",
        subject=subject,
        mode=ExamMode.EASY,
        questions_count=len(question_ids),
        correct_answers=1,
        score=score,
        time_taken=120,
        question_ids=list(question_ids),
        created_at=BASE_TIME,
    )


async def test_candidate_questions_are_filtered_and_newest_first(sql_repo):
    questions = await sql_repo.fetch_candidate_questions(["Darjah 1", "Darjah 2"], "Mathematics", [QuestionType.MCQ])

    assert [q.id for q in questions] == [f"q{i:02d}" for i in range(12)]
    assert questions[0].created_at.tzinfo is not None


async def test_persist_exam_feeds_answer_history(sql_repo):
    attempts = [
        AttemptRecord(question_id="q00", answer="A", correct=True, method="exact"),
        AttemptRecord(question_id="q01", answer=None, correct=False, method="validation"),
    ]
    exam_id = await sql_repo.persist_exam(exam_record(), attempts)

    assert exam_id
    answered = await sql_repo.fetch_answered_questions("s1", "Mathematics")
    assert set(answered) == {"q00", "q01"}
    assert answered["q00"] == BASE_TIME
    assert await sql_repo.fetch_answered_question_ids("s1", "Science") == set()

    exams = await sql_repo.fetch_completed_exams("s1")
    assert [e.score for e in exams] == [80]


async def test_update_student_xp(sql_repo):
    assert await sql_repo.update_student_xp("s1", 70) == (0, 70)
    assert await sql_repo.update_student_xp("s1", 30) == (70, 100)
    assert (await sql_repo.get_student("s1")).xp == 100


async def test_badge_award_is_inserted_once(sql_repo):
    assert await sql_repo.insert_badge_award("s1", "b-first", BASE_TIME)
    assert not await sql_repo.insert_badge_award("s1", "b-first", BASE_TIME)

    earned = await sql_repo.fetch_student_badges("s1")
    assert [sb.badge.name for sb in earned] == ["First Steps"]


async def test_token_ledger_is_idempotent_and_claims_spend(sql_repo):
    entries = [
        TokenEntry(source_type="exam_score", source_id="e1", amount=10),
        TokenEntry(source_type="badge_earned", source_id="b-first", amount=5),
    ]
    assert await sql_repo.append_token_transactions("s1", entries, BASE_TIME) == 2
    assert await sql_repo.append_token_transactions("s1", entries, BASE_TIME) == 0
    assert await sql_repo.get_token_balance("s1") == 15
    assert (await sql_repo.get_student("s1")).tokens == 15

    claim = RewardClaim(student_id="s1", reward_id="pen", tokens_spent=5, claimed_at=BASE_TIME)
    stored = await sql_repo.insert_reward_claim(claim)
    assert stored.id
    assert await sql_repo.get_token_balance("s1") == 10
    assert (await sql_repo.get_reward("pen")).stock == 0

    with pytest.raises(RewardUnavailableError):
        await sql_repo.insert_reward_claim(claim)


async def test_full_exam_against_sql_backend(sql_repo):
    services = build_services(sql_repo, InMemoryStore(), tick_interval=None, rng=random.Random(3))
    sessions = services.sessions

    snapshot = await sessions.start_session("s1", "Mathematics", ExamMode.EASY)
    assert {q.grade_level for q in snapshot.questions} <= {"Darjah 1", "Darjah 2"}
    for i in range(len(snapshot.questions)):
        await sessions.submit_answer("s1", i, "A" if i < 7 else "B")

    done = await sessions.finalize("s1")

    assert done.state == SessionState.COMPLETED
    assert done.score == 70
    assert [b.name for b in done.new_badges] == ["First Steps"]
    assert await sql_repo.get_token_balance("s1") == 15
    assert len(await sql_repo.fetch_answered_questions("s1", "Mathematics")) == 10


async def test_persist_exam_with_known_id_is_written_once(sql_repo):
    record = exam_record().model_copy(update={"id": "session-1"})
    attempts = [AttemptRecord(question_id="q00", answer="A", correct=True, method="exact")]

    assert await sql_repo.persist_exam(record, attempts) == "session-1"
    assert await sql_repo.persist_exam(record, attempts) == "session-1"

    assert [e.id for e in await sql_repo.fetch_completed_exams("s1")] == ["session-1"]
