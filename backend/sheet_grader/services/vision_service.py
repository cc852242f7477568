import logging
from typing import Optional

import google.generativeai as genai

from ..config import get_settings
from ..exceptions import ExtractionFailure
from ..schemas import SheetExtraction
from .sheet_parser import parse_extraction

logger = logging.getLogger(__name__)

VISION_SYSTEM_INSTRUCTION = """You are an optical character recognition assistant specialised in reading academic answer sheets.
Your job is to extract the Test ID, the student name and the marked answers from the supplied image.

CRITICAL INSTRUCTIONS:
1. TEST ID: Look for a QR code. It holds a JSON object such as {"t_id": "UUID", "ver": 1}. Extract the "t_id" value. If no QR code is found or readable, look for a printed 36-character UUID string.
2. STUDENT NAME: Read the handwritten text in the "Student Name" box.
3. ANSWERS: Identify the filled bubble for each numbered question. Options are typically A, B, C, D, E.""".strip()

EXTRACTION_PROMPT = """Analyse this answer sheet image and return clean JSON with:
- test_id: the UUID taken from the QR code (JSON key t_id) or printed text.
- student_name: the text found in the student name area.
- answers: an array of objects with question_number (integer) and selected_option (A-E).
Respond with the JSON object only.""".strip()


class GeminiSheetAnalyzer:
    """Vision extraction backed by a Gemini multimodal model."""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.get("GOOGLE_API_KEY", "")
        self.model_name = model_name or settings.get("VISION_MODEL")

    def analyze_sheet(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> SheetExtraction:
        if not self.api_key:
            raise ExtractionFailure("GOOGLE_API_KEY is not configured")
        genai.configure(api_key=self.api_key)

        logger.info("[VISION] model=%s image=%d bytes (%s)", self.model_name, len(image_bytes), mime_type)
        try:
            model = genai.GenerativeModel(
                model_name=self.model_name,
                system_instruction=VISION_SYSTEM_INSTRUCTION,
            )
            response = model.generate_content(
                [{"mime_type": mime_type, "data": image_bytes}, EXTRACTION_PROMPT],
                generation_config={
                    "temperature": 0.0,
                    "response_mime_type": "application/json",
                },
            )
            raw_text = (response.text or "").strip()
        except Exception as exc:  # noqa: BLE001
            logger.error("[VISION] extraction call failed: %s", exc)
            raise ExtractionFailure(f"Answer sheet extraction failed: {exc}") from exc

        if not raw_text:
            raise ExtractionFailure("Empty response from the vision model")

        extraction = parse_extraction(raw_text)
        logger.info(
            "[VISION] test_id=%r answers=%d",
            extraction.test_id,
            len(extraction.answers),
        )
        return extraction
