"""
Fixtures for the sheet grader test suite.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("GOOGLE_API_KEY", "")

from typing import Dict, List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sheet_grader import models
from sheet_grader.database import Base, get_db
from sheet_grader.main import app, get_sheet_analyzer
from sheet_grader.schemas import OptionDefinition, QuestionDefinition, SheetExtraction, TestDefinition


class FakeSheetAnalyzer:
    """Stands in for the vision service; returns a canned extraction or raises."""

    def __init__(self):
        self.extraction = SheetExtraction()
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, object]] = []

    def analyze_sheet(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> SheetExtraction:
        self.calls.append({"size": len(image_bytes), "mime_type": mime_type})
        if self.error is not None:
            raise self.error
        return self.extraction


def build_definition(correct_keys: Sequence[str], keys: Sequence[str] = ("A", "B", "C", "D")) -> TestDefinition:
    """In-memory test whose option ids are ``q<n>-<key>``."""
    questions = []
    for idx, correct_key in enumerate(correct_keys):
        question_id = f"q{idx + 1}"
        questions.append(
            QuestionDefinition(
                id=question_id,
                content=f"Question {idx + 1}",
                options=[
                    OptionDefinition(id=f"{question_id}-{key}", key=key, is_correct=key == correct_key)
                    for key in keys
                ],
            )
        )
    return TestDefinition(id="test-1", title="Sample test", questions=questions)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_analyzer():
    return FakeSheetAnalyzer()


@pytest.fixture
def client(session_factory, fake_analyzer):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sheet_analyzer] = lambda: fake_analyzer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_test(db_session):
    """Create a stored test; ``correct_keys[i]`` is the correct label of question i+1."""

    def factory(
        correct_keys: Sequence[str],
        keys: Sequence[str] = ("A", "B", "C", "D"),
        title: str = "Sample test",
    ) -> models.Test:
        test = models.Test(title=title)
        db_session.add(test)
        db_session.flush()
        for idx, correct_key in enumerate(correct_keys):
            question = models.Question(content=f"Question {idx + 1}")
            db_session.add(question)
            db_session.flush()
            for key in keys:
                db_session.add(
                    models.QuestionOption(
                        question_id=question.id,
                        key=key,
                        content=f"Option {key}",
                        is_correct=key == correct_key,
                    )
                )
            db_session.add(models.TestQuestion(test_id=test.id, question_id=question.id, order_index=idx))
        db_session.commit()
        return test

    return factory


def question_ids(db_session, test_id: str) -> List[str]:
    links = (
        db_session.query(models.TestQuestion)
        .filter(models.TestQuestion.test_id == test_id)
        .order_by(models.TestQuestion.order_index)
        .all()
    )
    return [link.question_id for link in links]


def option_id(db_session, question_id: str, key: str) -> str:
    option = (
        db_session.query(models.QuestionOption)
        .filter(models.QuestionOption.question_id == question_id, models.QuestionOption.key == key)
        .one()
    )
    return option.id
