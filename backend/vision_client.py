"""
OpenAI Vision Integration for the W-2 Refund Estimator
======================================================
Reads Box 2 and Box 17 off an uploaded W-2.

Uses gpt-4o-mini (vision-capable) for:
- Image W-2s, sent inline as a base64 data URL
- PDF W-2s, whose text layer is extracted locally with pdfplumber

IMPORTANT: The model never computes the refund. It only returns the two
withholding amounts, which are validated before any formula runs.
"""

import base64
import io
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from openai import OpenAI

from refund_calculator import coerce_amount
from refund_constants import DEFAULT_VISION_MODEL, VISION_REQUEST_OPTIONS
from refund_models import ConfigurationError, UpstreamError, ValidationError
from w2_prompts import (
    EXPECTED_FIELDS,
    build_image_messages,
    build_text_messages,
    validate_extraction_response,
)

logger = logging.getLogger(__name__)


@dataclass
class W2Extraction:
    """Box values read from a W-2."""
    federal_withheld: float
    state_withheld: float
    structured: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)
    model: str = DEFAULT_VISION_MODEL
    tokens_used: Optional[int] = None


# Labelled numbers in a free-form reply, e.g. `"box2Federal": "1,234.50"` or `Box 17: $88`
_SALVAGE_PATTERNS = {
    "box2Federal": re.compile(
        r"(?:box2Federal|box\s*2\b[^0-9$]{0,40})\W{0,4}\$?\s*([\d,]+(?:\.\d+)?)",
        re.IGNORECASE,
    ),
    "box17State": re.compile(
        r"(?:box17State|box\s*17\b[^0-9$]{0,40})\W{0,4}\$?\s*([\d,]+(?:\.\d+)?)",
        re.IGNORECASE,
    ),
}


def strip_code_fences(reply: str) -> str:
    """Drop ```json fences the model sometimes wraps around its answer."""
    reply = reply.strip()
    if "```json" in reply:
        reply = reply.split("```json")[1].split("```")[0]
    elif "```" in reply:
        reply = reply.split("```")[1].split("```")[0]
    return reply.strip()


def parse_extraction_reply(reply: str) -> W2Extraction:
    """
    Turn the model's reply into box values.

    A JSON object carrying both fields is a structured extraction. Otherwise the
    labelled numbers are salvaged from the raw text and the extraction is
    marked unstructured, so the caller can use the conservative formula.

    Raises:
        UpstreamError: nothing usable in the reply
    """
    cleaned = strip_code_fences(reply)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"Extraction reply is not valid JSON: {e}")
        data = None

    if data is not None:
        is_valid, issues = validate_extraction_response(data)
        if is_valid:
            return W2Extraction(
                federal_withheld=coerce_amount(data["box2Federal"]),
                state_withheld=coerce_amount(data["box17State"]),
                structured=True,
                raw=data,
            )
        logger.warning(f"Extraction reply failed validation: {issues}")

    salvaged = {}
    for name in EXPECTED_FIELDS:
        match = _SALVAGE_PATTERNS[name].search(cleaned)
        if match:
            salvaged[name] = coerce_amount(match.group(1))

    if not salvaged:
        raise UpstreamError("Failed to parse extracted data")

    return W2Extraction(
        federal_withheld=salvaged.get("box2Federal", 0.0),
        state_withheld=salvaged.get("box17State", 0.0),
        structured=False,
        raw=salvaged,
    )


def extract_pdf_text(content: bytes) -> str:
    """Pull the text layer out of a PDF W-2."""
    import pdfplumber

    with pdfplumber.open(io.BytesIO(content)) as pdf:
        text = ""
        for page in pdf.pages:
            text += page.extract_text() or ""
        return text


class W2VisionClient:
    """
    Vision client for W-2 box extraction.

    The OpenAI client is created lazily so a missing key only fails the
    upload request, not the whole server.
    """

    def __init__(self, api_key: Optional[str] = None, model: str = DEFAULT_VISION_MODEL, client=None):
        self.api_key = api_key
        self.model = model
        self.client = client

    @property
    def is_configured(self) -> bool:
        return self.client is not None or bool(self.api_key)

    def _get_client(self):
        if self.client is None:
            if not self.api_key:
                raise ConfigurationError("Server configuration error: OPENAI_API_KEY not set")
            self.client = OpenAI(api_key=self.api_key)
        return self.client

    def build_messages(self, content: bytes, mime_type: str) -> list:
        if mime_type == "application/pdf":
            try:
                text = extract_pdf_text(content)
            except Exception as e:
                raise ValidationError(f"Could not read PDF: {e}") from e
            if not text.strip():
                raise ValidationError("No readable text found in PDF")
            return build_text_messages(text)

        base64_image = base64.b64encode(content).decode("ascii")
        return build_image_messages(f"data:{mime_type};base64,{base64_image}")

    def extract(self, content: bytes, mime_type: str) -> W2Extraction:
        """
        Read Box 2 and Box 17 from a W-2 file.

        Args:
            content: Raw file bytes
            mime_type: image/jpeg, image/png or application/pdf

        Returns:
            W2Extraction with the two amounts

        Raises:
            ConfigurationError: no API key
            ValidationError: PDF without a text layer
            UpstreamError: API failure or unusable reply
        """
        client = self._get_client()
        messages = self.build_messages(content, mime_type)

        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                **VISION_REQUEST_OPTIONS,
            )
        except Exception as e:
            logger.error(f"OpenAI API error: {e}")
            raise UpstreamError("Failed to extract W-2 data") from e

        content_text = None
        if response.choices:
            content_text = response.choices[0].message.content
        if not content_text:
            raise UpstreamError("Invalid response from AI")

        extraction = parse_extraction_reply(content_text)
        extraction.model = self.model
        usage = getattr(response, "usage", None)
        extraction.tokens_used = usage.total_tokens if usage else None
        return extraction


__all__ = [
    "W2Extraction",
    "W2VisionClient",
    "parse_extraction_reply",
    "strip_code_fences",
    "extract_pdf_text",
]
