"""
Freshness-biased question selection.

Questions a student has never answered (in a completed exam of the same
subject) are always preferred. When the fresh pool runs short, previously
seen questions fill the remainder, least recently answered first.
"""
import logging
import random
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from ..core.exceptions import InsufficientQuestionsError
from ..models.domain import Question, QuestionType

logger = logging.getLogger(__name__)

# Primary grades draw from their band's earlier years; secondary grades stand alone
GRADE_BANDS: Dict[str, List[str]] = {
    "Darjah 1": ["Darjah 1"],
    "Darjah 2": ["Darjah 1", "Darjah 2"],
    "Darjah 3": ["Darjah 1", "Darjah 2", "Darjah 3"],
    "Darjah 4": ["Darjah 4"],
    "Darjah 5": ["Darjah 4", "Darjah 5"],
    "Darjah 6": ["Darjah 4", "Darjah 5", "Darjah 6"],
    "Tingkatan 1": ["Tingkatan 1"],
    "Tingkatan 2": ["Tingkatan 2"],
    "Tingkatan 3": ["Tingkatan 3"],
    "Tingkatan 4": ["Tingkatan 4"],
    "Tingkatan 5": ["Tingkatan 5"],
}


def allowed_levels(grade: str) -> List[str]:
    """Grade levels a student of `grade` may be examined on."""
    return list(GRADE_BANDS.get(grade, [grade]))


def _least_recent_first(
    seen: List[Question], answered: Dict[str, datetime], rng: random.Random
) -> List[Question]:
    # shuffle then stable sort so equal dates come out in random order
    ordered = list(seen)
    rng.shuffle(ordered)
    ordered.sort(key=lambda q: answered[q.id])
    return ordered


def select_questions(
    pool: Iterable[Question],
    answered: Dict[str, datetime],
    required: int,
    rng: Optional[random.Random] = None,
    levels: Sequence[str] = (),
    subject: str = "",
) -> List[Question]:
    """
    Pick exactly `required` distinct questions from a newest-first pool.

    `answered` maps question ids to the time they were last answered.
    Raises InsufficientQuestionsError when the pool is too small; no
    partial selection is ever returned.
    """
    rng = rng or random.Random()

    unique: List[Question] = []
    ids = set()
    for question in pool:
        if question.id not in ids:
            ids.add(question.id)
            unique.append(question)

    if len(unique) < required:
        raise InsufficientQuestionsError(len(unique), required, list(levels), subject)

    fresh = [q for q in unique if q.id not in answered]
    seen = [q for q in unique if q.id in answered]

    if len(fresh) >= required:
        window = fresh[:min(2 * required, len(fresh))]
        rng.shuffle(window)
        selected = window[:required]
    elif fresh:
        selected = fresh + _least_recent_first(seen, answered, rng)[:required - len(fresh)]
    else:
        selected = list(seen)
        rng.shuffle(selected)
        selected = selected[:required]

    rng.shuffle(selected)
    logger.debug(
        f"Selected {len(selected)} questions ({min(len(fresh), required)} fresh, "
        f"pool {len(unique)})"
    )
    return selected


class QuestionSelector:
    """Loads the candidate pool and answer history, then applies select_questions."""

    def __init__(self, repository, rng: Optional[random.Random] = None):
        self.repository = repository
        self.rng = rng or random.Random()

    async def select(
        self,
        student_id: str,
        subject: str,
        levels: List[str],
        question_types: List[QuestionType],
        required: int,
    ) -> List[Question]:
        pool = await self.repository.fetch_candidate_questions(levels, subject, question_types)
        answered = await self.repository.fetch_answered_questions(student_id, subject)
        return select_questions(pool, answered, required, self.rng, levels, subject)
