import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import InvalidSubmission, PersistenceError, SheetGraderError
from ..models import RESULT_STATUS_GRADED, TestResult
from ..repositories import ReleaseRepository, TestRepository
from ..schemas import GradeResult, SheetExtraction
from .grading_service import find_correct_option, grade_sheet, resolve_test_id

logger = logging.getLogger(__name__)


def grade_extraction(
    db: Session,
    extraction: SheetExtraction,
    release_id: Optional[str] = None,
) -> GradeResult:
    test_id = resolve_test_id(extraction, release_id, ReleaseRepository(db))
    test = TestRepository(db).get_test_details(test_id)
    return grade_sheet(test, extraction)


def analyze_and_grade(
    db: Session,
    analyzer,
    image_bytes: bytes,
    mime_type: str,
    release_id: Optional[str] = None,
) -> GradeResult:
    """Extract a sheet with the vision service and grade it. Writes nothing."""
    extraction = analyzer.analyze_sheet(image_bytes, mime_type)
    return grade_extraction(db, extraction, release_id)


def _stored_rows(test, graded_questions: List[Dict[str, Optional[str]]]) -> List[Dict[str, object]]:
    questions = {question.id: question for question in test.questions}
    selections: Dict[str, Optional[str]] = {}
    for row in graded_questions:
        question_id = row.get("question_id")
        if question_id not in questions:
            raise InvalidSubmission(f"Question {question_id} is not part of test {test.id}")
        if question_id in selections:
            raise InvalidSubmission(f"Question {question_id} was submitted twice")
        selected_option_id = row.get("selected_option_id")
        option_ids = {option.id for option in questions[question_id].options}
        if selected_option_id is not None and selected_option_id not in option_ids:
            raise InvalidSubmission(
                f"Option {selected_option_id} does not belong to question {question_id}"
            )
        selections[question_id] = selected_option_id

    # Every question of the test gets a stored row; missing ones count as unanswered.
    rows: List[Dict[str, object]] = []
    for question in test.questions:
        selected_option_id = selections.get(question.id)
        correct = find_correct_option(question)
        rows.append(
            {
                "question_id": question.id,
                "selected_option_id": selected_option_id,
                "is_correct": selected_option_id is not None
                and correct is not None
                and selected_option_id == correct.id,
            }
        )
    return rows


def save_result(
    db: Session,
    test_id: str,
    graded_questions: List[Dict[str, Optional[str]]],
    student_name: Optional[str] = None,
    student_id: Optional[str] = None,
    student_hash: Optional[str] = None,
    test_release_id: Optional[str] = None,
) -> TestResult:
    """Persist a graded sheet as a TestResult with one stored answer per question.

    Correctness is re-derived from option identity against the canonical test.
    """
    repo = TestRepository(db)
    test = repo.get_test_details(test_id)
    rows = _stored_rows(test, graded_questions)
    fields = {
        "test_id": test.id,
        "test_release_id": test_release_id,
        "student_id": student_id,
        "student_name": (student_name or "").strip() or "Unknown",
        "student_hash": student_hash,
        "status": RESULT_STATUS_GRADED,
    }
    try:
        result = repo.save_result(fields, rows)
        repo.recalculate_score(result.id)
        db.commit()
        db.refresh(result)
    except SheetGraderError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[GRADE] saving result for test=%s failed: %s", test_id, exc)
        raise PersistenceError(f"Saving the graded result failed: {exc}") from exc

    logger.info(
        "[GRADE] saved result=%s test=%s student=%s score=%d",
        result.id,
        test.id,
        student_id or result.student_name,
        result.score,
    )
    return result
