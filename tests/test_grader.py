import pytest

from assessment_engine.core.exceptions import ExternalServiceError
from assessment_engine.models.domain import QuestionType
from assessment_engine.services.grader import (
    AnswerGrader, OpenAISemanticChecker, canonical_pairs, keyword_overlap, levenshtein, normalize,
)

from fakes import StubSemanticChecker, make_question

OPTIONS = ["A. Kuala Lumpur", "B. Putrajaya", "C. Johor Bahru", "D. Ipoh"]


def test_normalize():
    assert normalize("  The Cell's   Powerhouse! ") == "the cells powerhouse"
    assert normalize("snake_case") == "snakecase"


@pytest.mark.parametrize("a,b,expected", [
    ("", "", 0),
    ("kitten", "sitting", 3),
    ("flaw", "lawn", 2),
    ("abc", "", 3),
])
def test_levenshtein(a, b, expected):
    assert levenshtein(a, b) == expected


def test_levenshtein_stops_early_past_limit():
    assert levenshtein("a" * 5000, "ab", limit=2) == 4998
    assert levenshtein("kitten", "sitting", limit=2) == 3


async def test_mcq_exact_match():
    grader = AnswerGrader()
    question = make_question("m1", correct="B. Putrajaya", options=OPTIONS)
    assert (await grader.grade(question, " B. Putrajaya ")).correct


async def test_mcq_letter_resolves_to_option_text():
    grader = AnswerGrader()
    question = make_question("m1", correct="B", options=OPTIONS)

    result = await grader.grade(question, "B. Putrajaya")
    assert result.correct
    assert result.method == "letter"

    assert not (await grader.grade(question, "A. Kuala Lumpur")).correct


async def test_mcq_bare_option_text_does_not_match_letter():
    grader = AnswerGrader()
    question = make_question("m1", correct="B", options=OPTIONS)

    result = await grader.grade(question, "Putrajaya")
    assert not result.correct
    assert result.reason == "Expected option B"


async def test_mcq_letter_answer_itself_matches():
    grader = AnswerGrader()
    question = make_question("m1", correct="B", options=OPTIONS)
    assert (await grader.grade(question, "B")).correct


def test_canonical_pairs_from_answer_or_options():
    from_answer = make_question("x", qtype=QuestionType.MATCHING, correct="Cat : Meow, Dog:Woof", options=[])
    assert canonical_pairs(from_answer) == ["Cat:Meow", "Dog:Woof"]

    from_options = make_question("y", qtype=QuestionType.MATCHING, correct="", options=["Cat:Meow", "Dog:Woof"])
    assert canonical_pairs(from_options) == ["Cat:Meow", "Dog:Woof"]


async def test_matching_is_order_independent():
    grader = AnswerGrader()
    question = make_question("mt", qtype=QuestionType.MATCHING, correct="Cat:Meow,Dog:Woof,Cow:Moo", options=[])

    assert (await grader.grade(question, ["Cow:Moo", "Cat: Meow", "Dog:Woof"])).correct
    assert not (await grader.grade(question, ["Cow:Woof", "Cat:Meow", "Dog:Moo"])).correct
    assert not (await grader.grade(question, ["Cat:Meow", "Dog:Woof"])).correct


async def test_short_answer_exact_and_fuzzy():
    grader = AnswerGrader()
    question = make_question("s", qtype=QuestionType.SHORT_ANSWER, correct="Photosynthesis", options=[])

    assert (await grader.grade(question, "photosynthesis.")).method == "exact"
    fuzzy = await grader.grade(question, "photosynthesys")
    assert fuzzy.correct and fuzzy.method == "fuzzy"


async def test_semantic_service_receives_raw_strings():
    semantic = StubSemanticChecker(verdict=True)
    grader = AnswerGrader(semantic)
    question = make_question("s", qtype=QuestionType.SUBJECTIVE, correct="Plants make food from light", options=[])

    result = await grader.grade(question, "Green plants produce sugar using sunlight!")
    assert result.correct and result.method == "ai"
    assert semantic.calls == [("Green plants produce sugar using sunlight!", "Plants make food from light")]


async def test_fallback_when_semantic_service_missing():
    grader = AnswerGrader()
    question = make_question(
        "s", qtype=QuestionType.SHORT_ANSWER, correct="mitochondria is the powerhouse of the cell", options=[]
    )
    result = await grader.grade(question, "mitochondria powerhouse cell")
    assert result.correct
    assert result.method == "keyword"


async def test_fallback_when_semantic_service_times_out():
    grader = AnswerGrader(StubSemanticChecker(verdict=False, delay=1.0), timeout=0.01)
    question = make_question(
        "s", qtype=QuestionType.SHORT_ANSWER, correct="mitochondria is the powerhouse of the cell", options=[]
    )
    result = await grader.grade(question, "mitochondria powerhouse cell")
    assert result.correct and result.method == "keyword"


async def test_fallback_when_semantic_service_errors():
    grader = AnswerGrader(StubSemanticChecker(error=ExternalServiceError("boom")))
    question = make_question("s", qtype=QuestionType.SHORT_ANSWER, correct="evaporation of water", options=[])
    result = await grader.grade(question, "melting ice")
    assert not result.correct and result.method == "keyword"


def test_keyword_overlap_without_significant_words_is_incorrect():
    assert not keyword_overlap("a is on", "a is on the").correct


async def test_missing_answer_is_incorrect():
    grader = AnswerGrader()
    question = make_question("s", qtype=QuestionType.SHORT_ANSWER, correct="x", options=[])
    result = await grader.grade(question, "   ")
    assert not result.correct and result.method == "validation"


async def test_openai_checker_without_key_raises_external_error():
    checker = OpenAISemanticChecker(api_key="")
    with pytest.raises(ExternalServiceError):
        await checker.check("a", "b")
