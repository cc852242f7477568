import logging
from typing import Dict, Iterable, List, Optional

from ..exceptions import ResolutionError
from ..schemas import (
    ExtractedAnswer,
    GradedQuestion,
    GradeResult,
    OptionDefinition,
    QuestionDefinition,
    ScoreAggregate,
    SheetExtraction,
    TestDefinition,
)

logger = logging.getLogger(__name__)

UNANSWERED_LABEL = "-"
UNKNOWN_CORRECT_LABEL = "?"


def score_from_counts(correct_count: int, total: int) -> int:
    """Percentage of correct answers, rounded half-up to an integer.

    Integer arithmetic keeps .5 boundaries exact: 1 of 8 is 12.5 and scores 13.
    """
    if total <= 0:
        return 0
    return (correct_count * 200 + total) // (2 * total)


def recompute_aggregate(answers: Iterable[object]) -> ScoreAggregate:
    """Derive score and counts from the complete set of stored answers.

    ``answers`` is any iterable of objects exposing ``is_correct``.
    """
    flags = [bool(getattr(answer, "is_correct", False)) for answer in answers]
    correct_count = sum(1 for flag in flags if flag)
    total = len(flags)
    return ScoreAggregate(
        score=score_from_counts(correct_count, total),
        correct_count=correct_count,
        error_count=total - correct_count,
    )


def find_correct_option(question: QuestionDefinition) -> Optional[OptionDefinition]:
    # First flagged option wins; a question with several flagged options is
    # an authoring bug that grading does not detect.
    for option in question.options:
        if option.is_correct:
            return option
    return None


def find_option_by_key(question: QuestionDefinition, key: Optional[str]) -> Optional[OptionDefinition]:
    if not key:
        return None
    for option in question.options:
        if option.key == key:
            return option
    return None


def _answers_by_number(answers: List[ExtractedAnswer]) -> Dict[int, ExtractedAnswer]:
    by_number: Dict[int, ExtractedAnswer] = {}
    for answer in answers:
        by_number.setdefault(answer.question_number, answer)
    return by_number


def grade_question(question: QuestionDefinition, answer: Optional[ExtractedAnswer]) -> GradedQuestion:
    selected_label = answer.selected_option if answer else None
    selected = find_option_by_key(question, selected_label)
    correct = find_correct_option(question)
    is_correct = selected is not None and correct is not None and selected.id == correct.id
    return GradedQuestion(
        question_id=question.id,
        question_content=question.content,
        selected_option=selected_label or UNANSWERED_LABEL,
        selected_option_id=selected.id if selected else None,
        correct_option=correct.key if correct else UNKNOWN_CORRECT_LABEL,
        correct_option_id=correct.id if correct else None,
        is_correct=is_correct,
    )


def grade_sheet(test: TestDefinition, extraction: SheetExtraction) -> GradeResult:
    by_number = _answers_by_number(extraction.answers)
    graded = [
        grade_question(question, by_number.get(idx + 1))
        for idx, question in enumerate(test.questions)
    ]
    correct_count = sum(1 for row in graded if row.is_correct)
    total_questions = len(test.questions)
    score = score_from_counts(correct_count, total_questions)

    unmatched = [
        row.question_id
        for row in graded
        if row.selected_option != UNANSWERED_LABEL and row.selected_option_id is None
    ]
    if unmatched:
        logger.info("[GRADE] test=%s labels without matching option: %s", test.id, unmatched)
    logger.info(
        "[GRADE] test=%s answers=%d correct=%d/%d score=%d",
        test.id,
        len(extraction.answers),
        correct_count,
        total_questions,
        score,
    )
    return GradeResult(
        test_id=test.id,
        test_title=test.title,
        extraction=extraction,
        graded_questions=graded,
        score=score,
        correct_count=correct_count,
        total_questions=total_questions,
    )


def resolve_test_id(
    extraction: SheetExtraction,
    release_id: Optional[str] = None,
    release_repository=None,
) -> str:
    """Pick the test a sheet is graded against.

    A release id is authoritative: when given, the sheet-embedded id is never
    used, even if the release cannot be resolved.
    """
    if release_id:
        release_id = release_id.strip()
        if not release_id:
            raise ResolutionError("release id is blank")
        if release_repository is None:
            raise ResolutionError(f"release {release_id} cannot be resolved")
        release = release_repository.get_release(release_id)
        if release is None:
            raise ResolutionError(f"release not found: {release_id}")
        test_id = (release.test_id or "").strip()
        if not test_id:
            raise ResolutionError(f"release {release_id} is not bound to a test")
        logger.info("[GRADE] release=%s resolved to test=%s", release_id, test_id)
        return test_id

    test_id = (extraction.test_id or "").strip()
    if not test_id:
        raise ResolutionError()
    return test_id
