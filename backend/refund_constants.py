"""
W-2 Refund Estimator - Constants
================================
Fixed rates, limits and storage keys.

CRITICAL: These are the ONLY source of truth for the refund formulas.
The vision model only reads Box 2 and Box 17 - it never does the math.
"""

from typing import Dict, List, Tuple

# =============================================================================
# REFUND FORMULA RATES
# Format: (federal_liability_rate, state_liability_rate)
# =============================================================================

# Estimated liability as a share of withheld tax (J-1 holders after deductions)
PRIMARY_RATES: Tuple[float, float] = (0.12, 0.04)

# Used only when the model reply could not be read as structured JSON
FALLBACK_RATES: Tuple[float, float] = (0.10, 0.05)

CURRENCY_PLACES = 2


# =============================================================================
# UPLOADS
# =============================================================================

MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10MB

ALLOWED_MIME_TYPES: List[str] = [
    "image/jpeg",
    "image/jpg",
    "image/png",
    "application/pdf",
]

UPLOAD_FIELD_NAME = "w2Image"

DEFAULT_DOCUMENT_NAME = "w2.jpg"
DEFAULT_DOCUMENT_TYPE = "image/jpeg"


# =============================================================================
# CORS
# =============================================================================

# Calculator is embedded at https://www.jai1taxes.com/calculadora
DEFAULT_ALLOWED_ORIGINS: List[str] = [
    "https://www.jai1taxes.com",
    "https://jai1taxes.com",
    "http://localhost:3000",
    "http://localhost:5173",  # Vite dev server
]


# =============================================================================
# VISION MODEL
# =============================================================================

DEFAULT_VISION_MODEL = "gpt-4o-mini"

VISION_REQUEST_OPTIONS: Dict[str, object] = {
    "response_format": {"type": "json_object"},
    "temperature": 0.1,
    "max_tokens": 200,
}


# =============================================================================
# CLIENT-SIDE CACHE KEYS
# =============================================================================

RESULT_KEY = "jai1_calculator_result"
DOCUMENT_KEY = "current_w2"
SESSION_SENTINEL_KEY = "jai1_w2_embed_session"

DEFAULT_CACHE_DIR = "~/.cache/w2-refund-widget"


# =============================================================================
# USER-FACING MESSAGES
# =============================================================================

INVALID_FILE_TYPE_MESSAGE = "Only JPG, PNG, and PDF files are allowed."
GENERIC_UPLOAD_ERROR = "Could not process W2 right now."
INVALID_INPUT_MESSAGE = "Invalid input values"
