"""Gemini boundary used for receipt extraction and report narratives.

Model output is untrusted text. Callers parse and validate it; this module only
bounds each call by the configured timeout and turns transport problems into
``TransientExternalFailure``.
"""

import json
import logging
from typing import Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from config import get_settings
from errors import TransientExternalFailure
from models import EXPENSE_CATEGORIES


logger = logging.getLogger(__name__)


RECEIPT_PROMPT = f"""
You are a financial assistant for an expense-tracking app.

Extract receipt data.

Rules:
- Currency is INR unless stated
- Date format: YYYY-MM-DD
- Category must be one of: {", ".join(EXPENSE_CATEGORIES)}
- If unsure, use "other-expense"
- Return STRICT JSON only

Schema:
{{
  "amount": number,
  "date": "YYYY-MM-DD",
  "description": "string",
  "merchantName": "string",
  "category": "string"
}}

If not a receipt, return {{}}.
"""

NARRATIVE_PROMPT = """
Analyze this financial data and provide 3 concise, actionable insights.
Focus on spending patterns and practical advice.
Keep it friendly and conversational.

Financial data for {period}:
{data}

Answer in plain text, one insight per line, without markdown.
"""


class GeminiClient:
    def __init__(self, model_name: Optional[str] = None) -> None:
        self.settings = get_settings()
        genai.configure(api_key=self.settings.gemini_api_key)
        self._model = genai.GenerativeModel(
            model_name=model_name or self.settings.gemini_model
        )

    def _generate(self, contents: list) -> str:
        try:
            response = self._model.generate_content(
                contents,
                request_options={"timeout": self.settings.ai_timeout_secs},
            )
        except (google_exceptions.GoogleAPIError, TimeoutError) as exc:
            raise TransientExternalFailure(f"Gemini call failed: {exc}") from exc
        try:
            return response.text or ""
        except ValueError:
            # Blocked or empty candidates carry no text part.
            logger.info("gemini_empty_response")
            return ""

    def extract_receipt(self, image_bytes: bytes, mime_type: str) -> str:
        return self._generate(
            [{"mime_type": mime_type, "data": image_bytes}, RECEIPT_PROMPT]
        )

    def narrate(self, period: str, data: dict[str, object]) -> str:
        prompt = NARRATIVE_PROMPT.format(
            period=period, data=json.dumps(data, indent=2, default=str)
        )
        return self._generate([prompt]).strip()
