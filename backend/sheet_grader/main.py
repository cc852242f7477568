import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from .config import get_settings
from .database import Base, engine, get_db
from .exceptions import register_exception_handlers
from .repositories import TestRepository
from .schemas import (
    CorrectionLogOut,
    GradeResult,
    ScoreAggregate,
    SheetExtraction,
    StudentAnswerOut,
    TestResultOut,
)
from .services.correction_service import recalculate_score, record_correction
from .services.grading_pipeline import analyze_and_grade, grade_extraction, save_result
from .services.report_service import export_result_pdf, render_result_report_html
from .services.sheet_image import load_sheet_image
from .services.sheet_parser import parse_extraction
from .services.vision_service import GeminiSheetAnalyzer

settings = get_settings()

logging.basicConfig(
    level=settings["LOG_LEVEL"],
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Answer Sheet Grading API")

Base.metadata.create_all(bind=engine)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings["CORS_ORIGINS"].split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


def get_sheet_analyzer() -> GeminiSheetAnalyzer:
    return GeminiSheetAnalyzer()


class ExtractionGradeRequest(BaseModel):
    extraction: dict
    release_id: Optional[str] = None


class GradedSelection(BaseModel):
    question_id: str
    selected_option_id: Optional[str] = None


class SaveResultRequest(BaseModel):
    test_id: str
    graded_questions: List[GradedSelection]
    student_name: Optional[str] = None
    student_id: Optional[str] = None
    student_hash: Optional[str] = None
    test_release_id: Optional[str] = None


class CorrectionRequest(BaseModel):
    question_id: str
    new_option_id: str
    original_option_id: Optional[str] = None
    reason: Optional[str] = None
    corrected_by: Optional[str] = None


class CorrectionResponse(BaseModel):
    result: TestResultOut
    aggregate: ScoreAggregate


@app.get("/health")
def health_check() -> dict:
    return {"status": "ok"}


@app.post("/grade/sheet", response_model=GradeResult)
async def grade_sheet_upload(
    file: UploadFile = File(...),
    release_id: Optional[str] = Form(None),
    db=Depends(get_db),
    analyzer=Depends(get_sheet_analyzer),
) -> GradeResult:
    data = await file.read()
    image_bytes, mime_type = await run_in_threadpool(
        load_sheet_image, file.filename, file.content_type, data
    )
    # Vision call and session are blocking; keep them off the event loop.
    return await run_in_threadpool(analyze_and_grade, db, analyzer, image_bytes, mime_type, release_id)


@app.post("/grade/extraction", response_model=GradeResult)
def grade_extraction_payload(payload: ExtractionGradeRequest, db=Depends(get_db)) -> GradeResult:
    extraction: SheetExtraction = parse_extraction(payload.extraction)
    return grade_extraction(db, extraction, payload.release_id)


@app.post("/results", response_model=TestResultOut)
def create_result(payload: SaveResultRequest, db=Depends(get_db)) -> TestResultOut:
    result = save_result(
        db,
        test_id=payload.test_id,
        graded_questions=[row.model_dump() for row in payload.graded_questions],
        student_name=payload.student_name,
        student_id=payload.student_id,
        student_hash=payload.student_hash,
        test_release_id=payload.test_release_id,
    )
    return TestRepository(db).to_result_out(result)


@app.get("/results", response_model=List[TestResultOut])
def list_results(
    student_id: Optional[str] = None,
    test_id: Optional[str] = None,
    db=Depends(get_db),
) -> List[TestResultOut]:
    return TestRepository(db).list_results(student_id=student_id, test_id=test_id)


@app.get("/results/{result_id}", response_model=TestResultOut)
def get_result(result_id: str, db=Depends(get_db)) -> TestResultOut:
    repo = TestRepository(db)
    return repo.to_result_out(repo.get_result(result_id))


@app.get("/results/{result_id}/answers", response_model=List[StudentAnswerOut])
def get_result_answers(result_id: str, db=Depends(get_db)) -> List[StudentAnswerOut]:
    repo = TestRepository(db)
    repo.get_result(result_id)
    return [StudentAnswerOut.model_validate(answer) for answer in repo.get_student_answers(result_id)]


@app.get("/results/{result_id}/logs", response_model=List[CorrectionLogOut])
def get_result_logs(result_id: str, db=Depends(get_db)) -> List[CorrectionLogOut]:
    return TestRepository(db).get_logs(result_id)


@app.post("/results/{result_id}/corrections", response_model=CorrectionResponse)
def correct_result_answer(
    result_id: str,
    payload: CorrectionRequest,
    db=Depends(get_db),
) -> CorrectionResponse:
    aggregate = record_correction(
        db,
        result_id,
        payload.question_id,
        payload.new_option_id,
        original_option_id=payload.original_option_id,
        reason=payload.reason,
        corrected_by=payload.corrected_by,
    )
    repo = TestRepository(db)
    return CorrectionResponse(result=repo.to_result_out(repo.get_result(result_id)), aggregate=aggregate)


@app.post("/results/{result_id}/recalculate", response_model=ScoreAggregate)
def recalculate_result(result_id: str, db=Depends(get_db)) -> ScoreAggregate:
    return recalculate_score(db, result_id)


@app.get("/results/{result_id}/report.pdf")
def export_result_report(result_id: str, db=Depends(get_db)) -> Response:
    repo = TestRepository(db)
    result = repo.get_result(result_id)
    html = render_result_report_html(
        repo.to_result_out(result),
        repo.get_test_details(result.test_id),
        repo.get_student_answers(result_id),
        repo.get_logs(result_id),
    )
    pdf_bytes = export_result_pdf(html)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="result_{result_id}.pdf"'},
    )
