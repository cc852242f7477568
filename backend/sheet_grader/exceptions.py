from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class SheetGraderError(Exception):
    code = "SERVER_500_0"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_reason = "Unexpected grading error"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    @property
    def detail(self) -> dict:
        return {
            "code": self.code,
            "reason": self.reason,
            "http_status": self.http_status,
        }


"""
- Grading

1. Vision service call failed
2. Test id could not be resolved
3. Resolved test does not exist
4. Unsupported sheet upload
5. Graded rows do not belong to the test
"""
class ExtractionFailure(SheetGraderError):
    code = "GRADING_502_1"
    http_status = status.HTTP_502_BAD_GATEWAY
    default_reason = "Answer sheet extraction failed"


class ResolutionError(SheetGraderError):
    code = "GRADING_422_1"
    http_status = 422
    default_reason = (
        "Test ID not found. Please ensure a test release is selected "
        "or the test ID is detected in the image."
    )


class TestNotFound(SheetGraderError):
    code = "GRADING_404_1"
    http_status = status.HTTP_404_NOT_FOUND
    default_reason = "Test not found"


class UnsupportedSheetFormat(SheetGraderError):
    code = "GRADING_400_1"
    http_status = status.HTTP_400_BAD_REQUEST
    default_reason = "Unsupported sheet file (supported: png, jpg, jpeg, webp, pdf)"


class InvalidSubmission(SheetGraderError):
    code = "GRADING_400_2"
    http_status = status.HTTP_400_BAD_REQUEST
    default_reason = "Graded questions do not match the test"


"""
- Result / Correction

1. Result id does not exist
2. Correction references an option outside the question
3. Correction could not be applied
"""
class ResultNotFound(SheetGraderError):
    code = "RESULT_404_1"
    http_status = status.HTTP_404_NOT_FOUND
    default_reason = "Test result not found"


class InvalidCorrection(SheetGraderError):
    code = "CORRECTION_400_1"
    http_status = status.HTTP_400_BAD_REQUEST
    default_reason = "Invalid correction"


class CorrectionError(SheetGraderError):
    code = "CORRECTION_500_1"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_reason = "Correction was not applied; the stored grade is unchanged"


class CorrectionConflict(CorrectionError):
    code = "CORRECTION_409_1"
    http_status = status.HTTP_409_CONFLICT
    default_reason = "The result was changed by another correction; reload and try again"


"""
- Server
"""
class PersistenceError(SheetGraderError):
    code = "SERVER_500_1"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_reason = "Database write failed"


async def sheet_grader_exception_handler(request: Request, exc: SheetGraderError):
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "success": False,
            "response": None,
            "error": exc.detail,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SheetGraderError, sheet_grader_exception_handler)
