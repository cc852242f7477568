import logging
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .exceptions import InvalidCorrection, ResultNotFound, TestNotFound
from .models import (
    QuestionOption,
    StudentTestAnswer,
    Test,
    TestQuestion,
    TestRelease,
    TestResult,
    TestResultCorrectionLog,
)
from .schemas import (
    CorrectionLogOut,
    OptionDefinition,
    QuestionDefinition,
    ScoreAggregate,
    TestDefinition,
    TestResultOut,
)
from .services.grading_service import recompute_aggregate

logger = logging.getLogger(__name__)


class ReleaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_release(self, release_id: str) -> Optional[TestRelease]:
        return (
            self.db.query(TestRelease)
            .filter(TestRelease.id == release_id, TestRelease.deleted.is_(False))
            .first()
        )


class TestRepository:
    """Persistence for tests, graded results, stored answers and correction logs.

    Write methods only flush; the calling service owns commit and rollback so a
    correction's log, answer and score land in one transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # -- tests -------------------------------------------------------------

    def get_test_details(self, test_id: str) -> TestDefinition:
        test = self.db.query(Test).filter(Test.id == test_id).first()
        if not test:
            raise TestNotFound(f"Test not found: {test_id}")

        questions: List[QuestionDefinition] = []
        for link in test.test_questions:
            question = link.question
            questions.append(
                QuestionDefinition(
                    id=question.id,
                    content=question.content,
                    weight=link.weight,
                    options=[
                        OptionDefinition(
                            id=option.id,
                            key=option.key,
                            content=option.content or "",
                            is_correct=bool(option.is_correct),
                        )
                        for option in question.options
                    ],
                )
            )
        return TestDefinition(id=test.id, title=test.title, questions=questions)

    # -- results -----------------------------------------------------------

    def get_result(self, result_id: str) -> TestResult:
        result = self.db.query(TestResult).filter(TestResult.id == result_id).first()
        if not result:
            raise ResultNotFound(f"Test result not found: {result_id}")
        return result

    def save_result(self, fields: Dict[str, object], answers: List[Dict[str, object]]) -> TestResult:
        result = TestResult(**fields)
        self.db.add(result)
        self.db.flush()
        for answer in answers:
            self.db.add(
                StudentTestAnswer(
                    test_result_id=result.id,
                    question_id=answer["question_id"],
                    selected_option_id=answer.get("selected_option_id"),
                    is_correct=bool(answer.get("is_correct")),
                )
            )
        self.db.flush()
        return result

    def get_student_answers(self, result_id: str) -> List[StudentTestAnswer]:
        return (
            self.db.query(StudentTestAnswer)
            .filter(StudentTestAnswer.test_result_id == result_id)
            .order_by(StudentTestAnswer.id)
            .all()
        )

    def list_results(
        self,
        student_id: Optional[str] = None,
        test_id: Optional[str] = None,
    ) -> List[TestResultOut]:
        log_counts = (
            self.db.query(
                TestResultCorrectionLog.test_result_id.label("result_id"),
                func.count(TestResultCorrectionLog.id).label("total"),
            )
            .group_by(TestResultCorrectionLog.test_result_id)
            .subquery()
        )
        query = (
            self.db.query(TestResult, Test.title, func.coalesce(log_counts.c.total, 0))
            .join(Test, Test.id == TestResult.test_id)
            .outerjoin(log_counts, log_counts.c.result_id == TestResult.id)
        )
        if student_id:
            query = query.filter(TestResult.student_id == student_id)
        if test_id:
            query = query.filter(TestResult.test_id == test_id)
        rows = query.order_by(TestResult.correction_date.desc()).all()
        return [
            self.to_result_out(result, test_title=title, correction_count=count)
            for result, title, count in rows
        ]

    def count_logs(self, result_id: str) -> int:
        return (
            self.db.query(func.count(TestResultCorrectionLog.id))
            .filter(TestResultCorrectionLog.test_result_id == result_id)
            .scalar()
        ) or 0

    def to_result_out(
        self,
        result: TestResult,
        test_title: Optional[str] = None,
        correction_count: Optional[int] = None,
    ) -> TestResultOut:
        out = TestResultOut.model_validate(result)
        out.test_title = test_title if test_title is not None else (result.test.title if result.test else None)
        out.correction_count = (
            correction_count if correction_count is not None else self.count_logs(result.id)
        )
        return out

    # -- correction ledger ---------------------------------------------------

    def _get_option_for_question(self, question_id: str, option_id: str) -> QuestionOption:
        option = self.db.query(QuestionOption).filter(QuestionOption.id == option_id).first()
        if not option:
            raise InvalidCorrection(f"Option not found: {option_id}")
        if option.question_id != question_id:
            raise InvalidCorrection(f"Option {option_id} does not belong to question {question_id}")
        return option

    def _ensure_question_in_test(self, test_id: str, question_id: str) -> None:
        link = (
            self.db.query(TestQuestion)
            .filter(TestQuestion.test_id == test_id, TestQuestion.question_id == question_id)
            .first()
        )
        if not link:
            raise InvalidCorrection(f"Question {question_id} is not part of test {test_id}")

    def update_answer(
        self,
        result_id: str,
        question_id: str,
        new_option_id: str,
        original_option_id: Optional[str],
        reason: str,
        corrected_by: Optional[str] = None,
    ) -> StudentTestAnswer:
        """Append the correction log row and upsert the stored answer."""
        result = self.get_result(result_id)
        self._ensure_question_in_test(result.test_id, question_id)
        option = self._get_option_for_question(question_id, new_option_id)

        existing = (
            self.db.query(StudentTestAnswer)
            .filter(
                StudentTestAnswer.test_result_id == result_id,
                StudentTestAnswer.question_id == question_id,
            )
            .first()
        )
        if original_option_id is None and existing is not None:
            original_option_id = existing.selected_option_id

        self.db.add(
            TestResultCorrectionLog(
                test_result_id=result_id,
                question_id=question_id,
                original_option_id=original_option_id,
                new_option_id=new_option_id,
                reason=reason,
                corrected_by=corrected_by,
            )
        )

        is_correct = bool(option.is_correct)
        if existing:
            existing.selected_option_id = new_option_id
            existing.is_correct = is_correct
            answer = existing
        else:
            answer = StudentTestAnswer(
                test_result_id=result_id,
                question_id=question_id,
                selected_option_id=new_option_id,
                is_correct=is_correct,
            )
            self.db.add(answer)
        self.db.flush()
        logger.info(
            "[CORRECTION] result=%s question=%s %s -> %s correct=%s",
            result_id,
            question_id,
            original_option_id,
            new_option_id,
            is_correct,
        )
        return answer

    def recalculate_score(self, result_id: str) -> ScoreAggregate:
        """Rewrite the result's aggregate from every stored answer."""
        result = self.get_result(result_id)
        aggregate = recompute_aggregate(self.get_student_answers(result_id))
        result.score = aggregate.score
        result.correct_count = aggregate.correct_count
        result.error_count = aggregate.error_count
        self.db.flush()
        logger.info(
            "[CORRECTION] result=%s recalculated score=%d correct=%d errors=%d",
            result_id,
            aggregate.score,
            aggregate.correct_count,
            aggregate.error_count,
        )
        return aggregate

    def get_logs(self, result_id: str) -> List[CorrectionLogOut]:
        self.get_result(result_id)
        logs = (
            self.db.query(TestResultCorrectionLog)
            .filter(TestResultCorrectionLog.test_result_id == result_id)
            .order_by(TestResultCorrectionLog.created_at.desc(), TestResultCorrectionLog.id.desc())
            .all()
        )
        return [
            CorrectionLogOut(
                id=log.id,
                test_result_id=log.test_result_id,
                question_id=log.question_id,
                question_content=log.question.content if log.question else None,
                original_option_id=log.original_option_id,
                original_option_key=log.original_option.key if log.original_option else None,
                new_option_id=log.new_option_id,
                new_option_key=log.new_option.key if log.new_option else None,
                reason=log.reason,
                corrected_by=log.corrected_by,
                created_at=log.created_at,
            )
            for log in logs
        ]
