import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import get_settings
from ..exceptions import CorrectionConflict, CorrectionError, PersistenceError, SheetGraderError
from ..models import RESULT_STATUS_CORRECTED
from ..repositories import TestRepository
from ..schemas import ScoreAggregate

logger = logging.getLogger(__name__)


def record_correction(
    db: Session,
    result_id: str,
    question_id: str,
    new_option_id: str,
    original_option_id: Optional[str] = None,
    reason: Optional[str] = None,
    corrected_by: Optional[str] = None,
) -> ScoreAggregate:
    """Override one stored answer and recompute the result's score.

    Log append, answer upsert and recomputation commit together. If any step
    fails nothing is persisted and the previous grade stays valid.
    """
    repo = TestRepository(db)
    reason = (reason or "").strip() or get_settings()["CORRECTION_DEFAULT_REASON"]
    try:
        repo.update_answer(
            result_id,
            question_id,
            new_option_id,
            original_option_id,
            reason=reason,
            corrected_by=corrected_by,
        )
        aggregate = repo.recalculate_score(result_id)
        result = repo.get_result(result_id)
        result.status = RESULT_STATUS_CORRECTED
        result.correction_date = datetime.utcnow()
        db.commit()
    except SheetGraderError:
        db.rollback()
        raise
    except StaleDataError as exc:
        db.rollback()
        logger.warning("[CORRECTION] result=%s lost a concurrent update: %s", result_id, exc)
        raise CorrectionConflict() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[CORRECTION] result=%s failed: %s", result_id, exc)
        raise CorrectionError() from exc
    return aggregate


def recalculate_score(db: Session, result_id: str) -> ScoreAggregate:
    repo = TestRepository(db)
    try:
        aggregate = repo.recalculate_score(result_id)
        db.commit()
    except SheetGraderError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[CORRECTION] recalculation of result=%s failed: %s", result_id, exc)
        raise PersistenceError(f"Score recalculation failed: {exc}") from exc
    return aggregate
