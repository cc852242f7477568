import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from conftest import option_id, question_ids
from sheet_grader import exceptions, models
from sheet_grader.database import Base
from sheet_grader.repositories import TestRepository as ResultRepository
from sheet_grader.services.correction_service import recalculate_score, record_correction
from sheet_grader.services.grading_pipeline import save_result


def _save(db_session, test, picks):
    """Store a result choosing ``picks[i]`` (a label or None) for question i+1."""
    ids = question_ids(db_session, test.id)
    rows = [
        {
            "question_id": qid,
            "selected_option_id": option_id(db_session, qid, key) if key else None,
        }
        for qid, key in zip(ids, picks)
    ]
    return save_result(db_session, test.id, rows, student_name="Ana")


def _log_count(db_session, result_id):
    return (
        db_session.query(models.TestResultCorrectionLog)
        .filter(models.TestResultCorrectionLog.test_result_id == result_id)
        .count()
    )


def test_save_result_stores_one_answer_per_question(db_session, make_test):
    test = make_test(["A", "B", "C", "D"])

    result = _save(db_session, test, ["A", "B", "A", None])

    answers = ResultRepository(db_session).get_student_answers(result.id)
    assert len(answers) == 4
    assert [a.is_correct for a in answers] == [True, True, False, False]
    assert (result.score, result.correct_count, result.error_count) == (50, 2, 2)
    assert result.status == models.RESULT_STATUS_GRADED
    assert result.student_name == "Ana"


def test_save_result_fills_missing_questions_as_unanswered(db_session, make_test):
    test = make_test(["A", "B", "C"])
    first = question_ids(db_session, test.id)[0]

    result = save_result(
        db_session,
        test.id,
        [{"question_id": first, "selected_option_id": option_id(db_session, first, "A")}],
    )

    assert len(ResultRepository(db_session).get_student_answers(result.id)) == 3
    assert (result.score, result.correct_count, result.error_count) == (33, 1, 2)
    assert result.student_name == "Unknown"


def test_save_result_rejects_foreign_question(db_session, make_test):
    test = make_test(["A"])
    other = make_test(["B"], title="Other test")
    foreign = question_ids(db_session, other.id)[0]

    with pytest.raises(exceptions.InvalidSubmission):
        save_result(db_session, test.id, [{"question_id": foreign, "selected_option_id": None}])
    assert db_session.query(models.TestResult).count() == 0


def test_save_result_rejects_option_from_another_question(db_session, make_test):
    test = make_test(["A", "B"])
    first, second = question_ids(db_session, test.id)

    with pytest.raises(exceptions.InvalidSubmission):
        save_result(
            db_session,
            test.id,
            [{"question_id": first, "selected_option_id": option_id(db_session, second, "B")}],
        )


def test_save_result_for_unknown_test(db_session):
    with pytest.raises(exceptions.TestNotFound):
        save_result(db_session, "missing", [])


def test_correction_flips_wrong_answer_and_recomputes(db_session, make_test):
    test = make_test(["A", "B", "C", "D"])
    result = _save(db_session, test, ["A", "B", "A", "A"])
    assert result.score == 50
    third = question_ids(db_session, test.id)[2]
    before = _log_count(db_session, result.id)

    aggregate = record_correction(
        db_session,
        result.id,
        third,
        option_id(db_session, third, "C"),
        reason="Bubble was misread",
        corrected_by="teacher-7",
    )

    db_session.expire_all()
    stored = ResultRepository(db_session).get_result(result.id)
    assert (aggregate.score, aggregate.correct_count, aggregate.error_count) == (75, 3, 1)
    assert (stored.score, stored.correct_count, stored.error_count) == (75, 3, 1)
    assert stored.status == models.RESULT_STATUS_CORRECTED
    assert _log_count(db_session, result.id) == before + 1


def test_correction_log_records_before_and_after(db_session, make_test):
    test = make_test(["A", "B"])
    result = _save(db_session, test, ["B", None])
    first, second = question_ids(db_session, test.id)

    record_correction(db_session, result.id, first, option_id(db_session, first, "A"), reason="Smudge")
    record_correction(db_session, result.id, second, option_id(db_session, second, "B"), reason="")

    logs = ResultRepository(db_session).get_logs(result.id)
    assert len(logs) == 2
    by_question = {log.question_id: log for log in logs}
    assert by_question[first].original_option_key == "B"
    assert by_question[first].new_option_key == "A"
    assert by_question[first].reason == "Smudge"
    assert by_question[second].original_option_id is None
    assert by_question[second].reason == "Manual correction by teacher"


def test_explicit_original_option_is_logged_as_given(db_session, make_test):
    test = make_test(["A"])
    result = _save(db_session, test, ["B"])
    first = question_ids(db_session, test.id)[0]
    sheet_pick = option_id(db_session, first, "C")

    record_correction(
        db_session,
        result.id,
        first,
        option_id(db_session, first, "A"),
        original_option_id=sheet_pick,
        reason="Sheet pick differs from stored value",
    )

    assert ResultRepository(db_session).get_logs(result.id)[0].original_option_id == sheet_pick


def test_correction_inserts_missing_answer_row(db_session, make_test):
    test = make_test(["A", "B"])
    result = _save(db_session, test, ["A", "A"])
    second = question_ids(db_session, test.id)[1]
    db_session.query(models.StudentTestAnswer).filter(
        models.StudentTestAnswer.test_result_id == result.id,
        models.StudentTestAnswer.question_id == second,
    ).delete()
    db_session.commit()

    aggregate = record_correction(db_session, result.id, second, option_id(db_session, second, "B"))

    assert len(ResultRepository(db_session).get_student_answers(result.id)) == 2
    assert (aggregate.score, aggregate.correct_count, aggregate.error_count) == (100, 2, 0)


def test_score_always_matches_stored_answers_after_corrections(db_session, make_test):
    test = make_test(["A", "B", "C"])
    result = _save(db_session, test, [None, None, None])
    ids = question_ids(db_session, test.id)

    for qid, key in [(ids[0], "A"), (ids[1], "C"), (ids[1], "B"), (ids[0], "D")]:
        record_correction(db_session, result.id, qid, option_id(db_session, qid, key))
        db_session.expire_all()
        stored = ResultRepository(db_session).get_result(result.id)
        answers = ResultRepository(db_session).get_student_answers(result.id)
        correct = sum(1 for a in answers if a.is_correct)
        assert stored.correct_count == correct
        assert stored.error_count == len(answers) - correct
        assert stored.score == (correct * 200 + len(answers)) // (2 * len(answers))

    assert _log_count(db_session, result.id) == 4


def test_recalculate_is_idempotent(db_session, make_test):
    test = make_test(["A", "B", "C"])
    result = _save(db_session, test, ["A", "C", "C"])

    first = recalculate_score(db_session, result.id)
    second = recalculate_score(db_session, result.id)

    assert first == second
    assert first.score == 67


def test_recalculate_repairs_drifted_counters(db_session, make_test):
    test = make_test(["A", "B"])
    result = _save(db_session, test, ["A", "B"])
    result.score = 10
    result.correct_count = 0
    db_session.commit()

    aggregate = recalculate_score(db_session, result.id)

    assert (aggregate.score, aggregate.correct_count, aggregate.error_count) == (100, 2, 0)


def test_unknown_result_is_reported(db_session):
    with pytest.raises(exceptions.ResultNotFound):
        record_correction(db_session, "missing", "q", "o")
    with pytest.raises(exceptions.ResultNotFound):
        recalculate_score(db_session, "missing")


def test_option_from_other_question_is_rejected_without_side_effects(db_session, make_test):
    test = make_test(["A", "B"])
    result = _save(db_session, test, ["A", "A"])
    first, second = question_ids(db_session, test.id)

    with pytest.raises(exceptions.InvalidCorrection):
        record_correction(db_session, result.id, first, option_id(db_session, second, "B"))

    assert _log_count(db_session, result.id) == 0
    assert ResultRepository(db_session).get_result(result.id).score == 50


def test_unknown_option_is_rejected(db_session, make_test):
    test = make_test(["A"])
    result = _save(db_session, test, ["A"])
    first = question_ids(db_session, test.id)[0]

    with pytest.raises(exceptions.InvalidCorrection, match="Option not found"):
        record_correction(db_session, result.id, first, "no-such-option")


def test_question_outside_result_test_is_rejected(db_session, make_test):
    test = make_test(["A"])
    other = make_test(["A"], title="Other test")
    result = _save(db_session, test, ["A"])
    foreign = question_ids(db_session, other.id)[0]

    with pytest.raises(exceptions.InvalidCorrection):
        record_correction(db_session, result.id, foreign, option_id(db_session, foreign, "A"))


def test_correction_logs_cannot_be_edited_or_deleted(db_session, make_test):
    test = make_test(["A"])
    result = _save(db_session, test, ["B"])
    first = question_ids(db_session, test.id)[0]
    record_correction(db_session, result.id, first, option_id(db_session, first, "A"), reason="original")
    log = db_session.query(models.TestResultCorrectionLog).one()

    log.reason = "rewritten"
    with pytest.raises(exceptions.PersistenceError):
        db_session.flush()
    db_session.rollback()

    log = db_session.query(models.TestResultCorrectionLog).one()
    db_session.delete(log)
    with pytest.raises(exceptions.PersistenceError):
        db_session.flush()
    db_session.rollback()

    assert db_session.query(models.TestResultCorrectionLog).one().reason == "original"


def test_concurrent_correction_is_rejected(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False)

    with Session() as setup:
        test = models.Test(title="Race")
        question = models.Question(content="Q1")
        setup.add_all([test, question])
        setup.flush()
        right = models.QuestionOption(question_id=question.id, key="A", is_correct=True)
        wrong = models.QuestionOption(question_id=question.id, key="B", is_correct=False)
        setup.add_all([right, wrong, models.TestQuestion(test_id=test.id, question_id=question.id)])
        setup.commit()
        test_id, question_id, right_id, wrong_id = test.id, question.id, right.id, wrong.id

    with Session() as setup:
        result = save_result(setup, test_id, [{"question_id": question_id, "selected_option_id": wrong_id}])
        result_id = result.id

    grader_a = Session()
    grader_b = Session()
    try:
        ResultRepository(grader_a).get_result(result_id)

        record_correction(grader_b, result_id, question_id, right_id, reason="first grader")

        with pytest.raises(exceptions.CorrectionConflict):
            record_correction(grader_a, result_id, question_id, wrong_id, reason="second grader")
    finally:
        grader_a.close()
        grader_b.close()

    with Session() as check:
        stored = check.query(models.TestResult).filter(models.TestResult.id == result_id).one()
        assert stored.score == 100
        assert check.query(models.TestResultCorrectionLog).count() == 1
    engine.dispose()


def _failing_write(*args, **kwargs):
    raise OperationalError("UPDATE test_results", {}, Exception("disk I/O error"))


def test_write_failure_during_correction_rolls_everything_back(db_session, make_test, monkeypatch):
    test = make_test(["A", "B"])
    result = _save(db_session, test, ["B", "B"])
    first = question_ids(db_session, test.id)[0]
    monkeypatch.setattr(ResultRepository, "recalculate_score", _failing_write)

    with pytest.raises(exceptions.CorrectionError) as excinfo:
        record_correction(db_session, result.id, first, option_id(db_session, first, "A"))

    assert excinfo.value.code == "CORRECTION_500_1"
    db_session.expire_all()
    assert _log_count(db_session, result.id) == 0
    answers = ResultRepository(db_session).get_student_answers(result.id)
    assert answers[0].selected_option_id == option_id(db_session, first, "B")
    stored = ResultRepository(db_session).get_result(result.id)
    assert (stored.score, stored.status) == (50, models.RESULT_STATUS_GRADED)


def test_write_failure_during_recalculation_is_a_persistence_error(db_session, make_test, monkeypatch):
    test = make_test(["A", "B"])
    result = _save(db_session, test, ["A", "A"])
    result.score = 10
    db_session.commit()
    monkeypatch.setattr(ResultRepository, "recalculate_score", _failing_write)

    with pytest.raises(exceptions.PersistenceError):
        recalculate_score(db_session, result.id)

    db_session.expire_all()
    assert ResultRepository(db_session).get_result(result.id).score == 10


def test_write_failure_while_saving_persists_nothing(db_session, make_test, monkeypatch):
    test = make_test(["A", "B"])
    monkeypatch.setattr(ResultRepository, "recalculate_score", _failing_write)

    with pytest.raises(exceptions.PersistenceError):
        _save(db_session, test, ["A", "B"])

    assert db_session.query(models.TestResult).count() == 0
    assert db_session.query(models.StudentTestAnswer).count() == 0
