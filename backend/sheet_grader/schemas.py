from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OptionDefinition(BaseModel):
    """Answer option as the grading engine sees it. Correctness compares ``id``, never ``key``."""

    id: str
    key: str
    content: str = ""
    is_correct: bool = False


class QuestionDefinition(BaseModel):
    id: str
    content: str
    options: List[OptionDefinition] = Field(default_factory=list)
    weight: float = 1.0


class TestDefinition(BaseModel):
    """Canonical test with its questions in sheet order."""

    id: str
    title: str
    questions: List[QuestionDefinition] = Field(default_factory=list)


class ExtractedAnswer(BaseModel):
    question_number: int
    selected_option: Optional[str] = None


class SheetExtraction(BaseModel):
    test_id: str = ""
    student_name: str = ""
    answers: List[ExtractedAnswer] = Field(default_factory=list)


class GradedQuestion(BaseModel):
    question_id: str
    question_content: str
    selected_option: str
    selected_option_id: Optional[str] = None
    correct_option: str
    correct_option_id: Optional[str] = None
    is_correct: bool


class GradeResult(BaseModel):
    test_id: str
    test_title: str
    extraction: SheetExtraction
    graded_questions: List[GradedQuestion]
    score: int
    correct_count: int
    total_questions: int


class ScoreAggregate(BaseModel):
    score: int
    correct_count: int
    error_count: int


class StudentAnswerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    test_result_id: str
    question_id: str
    selected_option_id: Optional[str] = None
    is_correct: bool


class CorrectionLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    test_result_id: str
    question_id: str
    question_content: Optional[str] = None
    original_option_id: Optional[str] = None
    original_option_key: Optional[str] = None
    new_option_id: str
    new_option_key: Optional[str] = None
    reason: str
    corrected_by: Optional[str] = None
    created_at: Optional[datetime] = None


class TestResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    test_id: str
    test_title: Optional[str] = None
    test_release_id: Optional[str] = None
    student_id: Optional[str] = None
    student_name: str
    student_hash: Optional[str] = None
    score: int
    correct_count: int
    error_count: int
    status: str
    correction_date: Optional[datetime] = None
    correction_count: int = 0
