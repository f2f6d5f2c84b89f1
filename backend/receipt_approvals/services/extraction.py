"""
Receipt field extraction with Gemini on Vertex AI.

The model reads the receipt image and proposes sector, amount and date. The
user verifies everything before submitting, so extraction never fails the
request: any unusable answer degrades to defaults.
"""

import json
import logging
import random
import re
import time
from datetime import date
from typing import Any, Dict, Optional

from google import genai
from google.genai import errors, types
from pydantic import BaseModel

from ..config import get_settings
from .firestore import parse_receipt_date


logger = logging.getLogger(__name__)

VALID_SECTORS = ("comida", "transporte", "otros")
DEFAULT_SECTOR = "otros"

EXTRACTION_PROMPT = """
You are an expert accountant extracting data from expense receipts.

Return the following information as JSON:
{
  "sector": "comida|transporte|otros",
  "importe": 12.34,
  "fecha": "YYYY-MM-DD"
}

- "sector" is the expense category and MUST be one of "comida" (food),
  "transporte" (transport) or "otros" (other). If you cannot tell with
  confidence, use "otros".
- "importe" is the total amount in euros.
- "fecha" is the receipt date. Dates on these receipts are most likely in
  Spanish format (day/month/year); interpret them correctly before
  converting to YYYY-MM-DD.

Return ONLY valid JSON, no markdown formatting.
"""


class ExtractedReceipt(BaseModel):
    sector: str = DEFAULT_SECTOR
    importe: float = 0.0
    usuario: str
    fecha: str


_client: Optional[genai.Client] = None


def _get_client() -> genai.Client:
    global _client
    if _client is None:
        settings = get_settings()
        _client = genai.Client(vertexai=True, project=settings.project_id, location=settings.gemini_location)
    return _client


def parse_amount(value: Any) -> Optional[float]:
    """Parse model amounts such as 12.5, "12,50", "1.234,56 €"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = re.sub(r"[^0-9,.\-]", "", str(value))
    if "," in text and "." in text:
        text = text.replace(".", "").replace(",", ".")
    else:
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def parse_json_response(response_text: str) -> Dict[str, Any]:
    """Best-effort parsing for Gemini JSON responses."""
    text = (response_text or "").strip()
    if not text:
        raise ValueError("Model returned an empty response.")

    # Remove fenced code blocks
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text, flags=re.IGNORECASE)

    text = re.sub(r"<think(?:ing)?>.*?</think(?:ing)?>", "", text, flags=re.DOTALL | re.IGNORECASE).strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ValueError(f"Unable to parse JSON from model response: {response_text}")
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"Unable to parse JSON from model response: {response_text}") from exc

    if not isinstance(parsed, dict):
        raise ValueError("Model response is not a JSON object.")
    return parsed


def sanitize_extraction(raw: Dict[str, Any], usuario: str, today: Optional[date] = None) -> ExtractedReceipt:
    today = today or date.today()
    result = ExtractedReceipt(usuario=usuario, fecha=today.isoformat())

    sector = str(raw.get("sector") or "").strip().lower()
    if sector in VALID_SECTORS:
        result.sector = sector

    amount = parse_amount(raw.get("importe"))
    if amount is not None:
        result.importe = round(amount, 2)

    fecha = parse_receipt_date(raw.get("fecha"))
    if fecha is not None:
        result.fecha = fecha.isoformat()
    return result


TRANSIENT_STATUS_CODES = {429, 500, 503, 504}


def _is_transient(exc: errors.APIError) -> bool:
    return exc.code in TRANSIENT_STATUS_CODES


def call_with_retry(fn, *, max_attempts: int = 4, base_delay: float = 1.0, max_delay: float = 20.0):
    delay = base_delay
    for attempt in range(1, max_attempts):
        try:
            return fn()
        except errors.APIError as exc:
            if not _is_transient(exc):
                raise
            sleep_seconds = min(delay + random.uniform(0, delay * 0.3), max_delay)
            logger.warning(
                "Transient Vertex AI error on attempt %d/%d: %s. Sleeping %.2fs",
                attempt,
                max_attempts,
                exc,
                sleep_seconds,
            )
            time.sleep(sleep_seconds)
            delay = min(delay * 2, max_delay)
    # Final attempt outside loop
    return fn()


def extract_receipt_data(image_bytes: bytes, mime_type: str, usuario: str, client=None) -> ExtractedReceipt:
    """Extract sector, amount and date from a receipt image."""
    client = client or _get_client()
    image_part = types.Part.from_bytes(data=image_bytes, mime_type=mime_type or "image/jpeg")
    try:
        response = call_with_retry(
            lambda: client.models.generate_content(
                model=get_settings().extraction_model,
                contents=[EXTRACTION_PROMPT, image_part],
                config=types.GenerateContentConfig(
                    temperature=0.2,
                    response_mime_type="application/json",
                    max_output_tokens=512,
                    thinking_config=types.ThinkingConfig(thinking_budget=0),
                ),
            )
        )
        raw = parse_json_response(response.text or "")
    except (errors.APIError, ValueError) as exc:
        logger.warning("Receipt extraction failed for %s, using defaults: %s", usuario, exc)
        raw = {}
    return sanitize_extraction(raw, usuario)
