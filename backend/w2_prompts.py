"""
W-2 Refund Estimator - Vision Prompts
=====================================
System and user prompts for reading Box 2 and Box 17 off a W-2.

The model only READS the two boxes. All refund math happens in
refund_calculator.py.
"""

from typing import List, Tuple


# =============================================================================
# W-2 BOX EXTRACTION
# =============================================================================

W2_EXTRACTION_SYSTEM_PROMPT = """You are a W-2 form extractor. Extract the values from Box 2 (Federal income tax withheld) and Box 17 (State income tax withheld) from this W-2 form image. Return ONLY a JSON object with these exact fields: { "box2Federal": <number>, "box17State": <number> }. If a value is not found or cannot be read, use 0 for that field. Extract only numeric values, removing any dollar signs or commas."""


W2_EXTRACTION_USER_PROMPT = """Extract Box 2 (Federal income tax withheld) and Box 17 (State income tax withheld) from this W-2 form. Return JSON with box2Federal and box17State as numbers."""


# PDFs cannot go through image input, so their text layer is sent instead
W2_TEXT_EXTRACTION_USER_PROMPT = """Extract Box 2 (Federal income tax withheld) and Box 17 (State income tax withheld) from the following W-2 text. The layout may be flattened; box numbers usually precede their labels. Return JSON with box2Federal and box17State as numbers.

W-2 TEXT:
{document_text}"""


EXPECTED_FIELDS: Tuple[str, str] = ("box2Federal", "box17State")


# =============================================================================
# MESSAGE BUILDERS
# =============================================================================

def build_image_messages(data_url: str) -> List[dict]:
    """Chat messages for an image W-2 sent as a base64 data URL."""
    return [
        {"role": "system", "content": W2_EXTRACTION_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": W2_EXTRACTION_USER_PROMPT},
                {"type": "image_url", "image_url": {"url": data_url}},
            ],
        },
    ]


def build_text_messages(document_text: str) -> List[dict]:
    """Chat messages for a PDF W-2 whose text layer was extracted locally."""
    return [
        {"role": "system", "content": W2_EXTRACTION_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": W2_TEXT_EXTRACTION_USER_PROMPT.format(document_text=document_text),
        },
    ]


# =============================================================================
# PROMPT VALIDATION
# =============================================================================

def validate_extraction_response(response: dict) -> Tuple[bool, List[str]]:
    """
    Validate that an extraction response has the required fields.

    Returns:
        Tuple of (is_valid, list of issues)
    """
    issues = []

    if not isinstance(response, dict):
        return False, ["Response is not a JSON object"]

    for name in EXPECTED_FIELDS:
        if name not in response:
            issues.append(f"Missing {name}")
        elif isinstance(response[name], (dict, list)):
            issues.append(f"{name} is not a scalar value")

    return len(issues) == 0, issues


__all__ = [
    "W2_EXTRACTION_SYSTEM_PROMPT",
    "W2_EXTRACTION_USER_PROMPT",
    "W2_TEXT_EXTRACTION_USER_PROMPT",
    "EXPECTED_FIELDS",
    "build_image_messages",
    "build_text_messages",
    "validate_extraction_response",
]
