from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from .database import Base
from .exceptions import PersistenceError


RESULT_STATUS_GRADED = "graded"
RESULT_STATUS_CORRECTED = "corrected"


def _new_id() -> str:
    return str(uuid4())


class Test(Base):
    __tablename__ = "tests"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    test_questions = relationship(
        "TestQuestion",
        back_populates="test",
        order_by="TestQuestion.order_index",
    )
    releases = relationship("TestRelease", back_populates="test")
    results = relationship("TestResult", back_populates="test")


class Question(Base):
    __tablename__ = "questions"

    id = Column(String(36), primary_key=True, default=_new_id)
    content = Column(Text, nullable=False)
    subject = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    options = relationship(
        "QuestionOption",
        back_populates="question",
        order_by="QuestionOption.key",
    )


class TestQuestion(Base):
    __tablename__ = "test_questions"
    __table_args__ = (UniqueConstraint("test_id", "question_id"),)

    id = Column(Integer, primary_key=True, index=True)
    test_id = Column(String(36), ForeignKey("tests.id"), nullable=False)
    question_id = Column(String(36), ForeignKey("questions.id"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    weight = Column(Float, nullable=False, default=1.0)

    test = relationship("Test", back_populates="test_questions")
    question = relationship("Question")


class QuestionOption(Base):
    __tablename__ = "question_options"

    id = Column(String(36), primary_key=True, default=_new_id)
    question_id = Column(String(36), ForeignKey("questions.id"), nullable=False)
    key = Column(String(5), nullable=False)
    content = Column(Text, nullable=False, default="")
    is_correct = Column(Boolean, nullable=False, default=False)

    question = relationship("Question", back_populates="options")


class Student(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False)
    student_hash = Column(String(64), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    results = relationship("TestResult", back_populates="student")


class TestRelease(Base):
    __tablename__ = "test_releases"

    id = Column(String(36), primary_key=True, default=_new_id)
    test_id = Column(String(36), ForeignKey("tests.id"), nullable=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=True)
    start_time = Column(DateTime, default=datetime.utcnow)
    end_time = Column(DateTime, nullable=True)
    deleted = Column(Boolean, nullable=False, default=False)

    test = relationship("Test", back_populates="releases")


class TestResult(Base):
    __tablename__ = "test_results"

    id = Column(String(36), primary_key=True, default=_new_id)
    test_id = Column(String(36), ForeignKey("tests.id"), nullable=False)
    test_release_id = Column(String(36), ForeignKey("test_releases.id"), nullable=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=True)
    student_name = Column(String(100), nullable=False, default="Unknown")
    student_hash = Column(String(64), nullable=True)
    score = Column(Integer, nullable=False, default=0)
    correct_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=RESULT_STATUS_GRADED)
    correction_date = Column(DateTime, default=datetime.utcnow)
    version = Column(Integer, nullable=False)

    # Concurrent corrections of the same result fail on flush instead of
    # overwriting each other's recomputed score.
    __mapper_args__ = {"version_id_col": version}

    test = relationship("Test", back_populates="results")
    student = relationship("Student", back_populates="results")
    answers = relationship("StudentTestAnswer", back_populates="result")
    correction_logs = relationship(
        "TestResultCorrectionLog",
        back_populates="result",
        order_by="TestResultCorrectionLog.created_at.desc()",
    )


class StudentTestAnswer(Base):
    __tablename__ = "student_test_answers"
    __table_args__ = (UniqueConstraint("test_result_id", "question_id"),)

    id = Column(Integer, primary_key=True, index=True)
    test_result_id = Column(String(36), ForeignKey("test_results.id"), nullable=False)
    question_id = Column(String(36), ForeignKey("questions.id"), nullable=False)
    selected_option_id = Column(String(36), ForeignKey("question_options.id"), nullable=True)
    is_correct = Column(Boolean, nullable=False, default=False)

    result = relationship("TestResult", back_populates="answers")


class TestResultCorrectionLog(Base):
    __tablename__ = "test_result_correction_logs"

    id = Column(Integer, primary_key=True, index=True)
    test_result_id = Column(String(36), ForeignKey("test_results.id"), nullable=False)
    question_id = Column(String(36), ForeignKey("questions.id"), nullable=False)
    original_option_id = Column(String(36), ForeignKey("question_options.id"), nullable=True)
    new_option_id = Column(String(36), ForeignKey("question_options.id"), nullable=False)
    reason = Column(Text, nullable=False)
    corrected_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    result = relationship("TestResult", back_populates="correction_logs")
    question = relationship("Question")
    original_option = relationship("QuestionOption", foreign_keys=[original_option_id])
    new_option = relationship("QuestionOption", foreign_keys=[new_option_id])


@event.listens_for(TestResultCorrectionLog, "before_update")
def _reject_log_update(mapper, connection, target) -> None:
    raise PersistenceError(f"correction log {target.id} is append-only")


@event.listens_for(TestResultCorrectionLog, "before_delete")
def _reject_log_delete(mapper, connection, target) -> None:
    raise PersistenceError(f"correction log {target.id} is append-only")
