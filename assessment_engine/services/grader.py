"""
Answer grading for the four question types.

Free-text answers go through a tiered pipeline: normalized exact match,
edit distance, an external semantic check, and finally a keyword-overlap
heuristic that always produces a verdict.
"""
import asyncio
import json
import logging
import re
from typing import List, Optional, Protocol, Set

from openai import AsyncOpenAI

from ..core.config import settings
from ..core.exceptions import ExternalServiceError
from ..models.domain import Answer, GradeResult, Question, QuestionType

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")
_LETTER = re.compile(r"^[A-Za-z]$")


def normalize(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    text = _PUNCTUATION.sub("", text.strip().lower())
    return _WHITESPACE.sub(" ", text).strip()


def levenshtein(a: str, b: str, limit: Optional[int] = None) -> int:
    """
    Edit distance with unit cost insert, delete and substitute.

    With `limit`, strings whose lengths differ by more than it return that
    difference, a lower bound already past the limit, without the full table.
    """
    gap = abs(len(a) - len(b))
    if limit is not None and gap > limit:
        return gap
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def grade_mcq(question: Question, answer: str) -> GradeResult:
    given = answer.strip()
    canonical = question.correct_answer.strip()
    if given == canonical:
        return GradeResult(correct=True, method="exact")

    if _LETTER.match(canonical):
        prefix = f"{canonical.lower()}."
        for option in question.options:
            if option.strip().lower().startswith(prefix):
                correct = given == option.strip()
                return GradeResult(
                    correct=correct,
                    method="letter",
                    reason=None if correct else f"Expected option {canonical.upper()}",
                )
    return GradeResult(correct=False, method="exact", reason="Answer does not match")


def _pair(raw: str) -> Optional[str]:
    if ":" not in raw:
        return None
    left, right = raw.split(":", 1)
    return f"{left.strip()}:{right.strip()}"


def canonical_pairs(question: Question) -> List[str]:
    """Matching pairs as "left:right" strings, from the answer or the options."""
    pairs = [p for p in (_pair(part) for part in question.correct_answer.split(",")) if p]
    if not pairs:
        pairs = [p for p in (_pair(option) for option in question.options) if p]
    return pairs


def grade_matching(question: Question, answer: List[str]) -> GradeResult:
    expected: Set[str] = set(canonical_pairs(question))
    given: Set[str] = {p for p in (_pair(raw) for raw in answer) if p}
    correct = len(expected) == len(given) and expected <= given
    return GradeResult(
        correct=correct,
        method="matching",
        reason=None if correct else f"{len(expected & given)} of {len(expected)} pairs matched",
    )


def keyword_overlap(
    reference: str,
    candidate: str,
    ratio: float = settings.KEYWORD_OVERLAP_RATIO,
    min_length: int = settings.SIGNIFICANT_WORD_MIN_LENGTH,
) -> GradeResult:
    """Fallback heuristic: share of significant reference words found in the candidate."""
    significant = [w for w in normalize(reference).split(" ") if len(w) >= min_length]
    if not significant:
        return GradeResult(correct=False, method="keyword", reason="No significant words to compare")
    words = set(normalize(candidate).split(" "))
    matched = sum(1 for w in significant if w in words)
    fraction = matched / len(significant)
    return GradeResult(
        correct=fraction >= ratio,
        method="keyword",
        reason=f"{matched}/{len(significant)} keywords matched",
    )


class SemanticChecker(Protocol):
    async def check(self, candidate: str, reference: str) -> GradeResult: ...


class OpenAISemanticChecker:
    """Asks a chat model whether two answers mean the same thing."""

    SYSTEM_PROMPT = (
        "You are grading a school exam. Decide whether the student's answer means "
        "the same as the correct answer. Reply with JSON: "
        '{"verdict": "correct" | "incorrect", "reason": "<short reason>"}'
    )

    def __init__(self, api_key: Optional[str] = None, model: str = settings.OPENAI_MODEL):
        if api_key is None and settings.OPENAI_API_KEY:
            api_key = settings.OPENAI_API_KEY.get_secret_value()
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key) if api_key else None

    async def check(self, candidate: str, reference: str) -> GradeResult:
        if self.client is None:
            raise ExternalServiceError("Semantic check is not configured")
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": f"Correct answer: {reference}\nStudent answer: {candidate}",
                    },
                ],
                max_tokens=settings.OPENAI_MAX_TOKENS,
                temperature=0,
                response_format={"type": "json_object"},
            )
            payload = json.loads(response.choices[0].message.content or "{}")
        except Exception as e:
            raise ExternalServiceError(f"Semantic check failed: {e}") from e

        verdict = str(payload.get("verdict", "")).strip().lower()
        if verdict not in ("correct", "incorrect"):
            raise ExternalServiceError(f"Unexpected verdict: {verdict!r}")
        return GradeResult(correct=verdict == "correct", method="ai", reason=payload.get("reason"))


class AnswerGrader:
    def __init__(
        self,
        semantic: Optional[SemanticChecker] = None,
        fuzzy_threshold: int = settings.FUZZY_THRESHOLD,
        overlap_ratio: float = settings.KEYWORD_OVERLAP_RATIO,
        min_word_length: int = settings.SIGNIFICANT_WORD_MIN_LENGTH,
        timeout: float = settings.SEMANTIC_CHECK_TIMEOUT,
    ):
        self.semantic = semantic
        self.fuzzy_threshold = fuzzy_threshold
        self.overlap_ratio = overlap_ratio
        self.min_word_length = min_word_length
        self.timeout = timeout

    async def grade(self, question: Question, answer: Optional[Answer]) -> GradeResult:
        """Grade one answer; a missing answer is simply incorrect."""
        if answer is None or (isinstance(answer, str) and not answer.strip()) or answer == []:
            return GradeResult(correct=False, method="validation", reason="No answer given")

        if question.type == QuestionType.MATCHING:
            if isinstance(answer, str):
                answer = [part for part in answer.split(",") if part.strip()]
            return grade_matching(question, answer)

        if not isinstance(answer, str):
            return GradeResult(correct=False, method="validation", reason="Expected a text answer")

        if question.type == QuestionType.MCQ:
            return grade_mcq(question, answer)
        return await self.grade_text(answer, question.correct_answer)

    async def grade_text(self, answer: str, reference: str) -> GradeResult:
        given = normalize(answer)
        expected = normalize(reference)
        if given == expected:
            return GradeResult(correct=True, method="exact")

        distance = levenshtein(given, expected, self.fuzzy_threshold)
        if distance <= self.fuzzy_threshold:
            return GradeResult(correct=True, method="fuzzy", reason=f"Edit distance {distance}")

        if self.semantic is not None:
            try:
                return await asyncio.wait_for(
                    self.semantic.check(answer, reference), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Semantic check timed out after {self.timeout}s, using keyword fallback")
            except Exception as e:
                logger.warning(f"Semantic check unavailable ({e}), using keyword fallback")

        return keyword_overlap(reference, answer, self.overlap_ratio, self.min_word_length)
