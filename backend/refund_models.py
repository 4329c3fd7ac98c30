"""
W-2 Refund Estimator - Data Models
==================================
Pydantic models and value objects shared by the API, the client and the cache.

These models serve as the contract between:
- The FastAPI backend (wire format uses camelCase aliases)
- The estimation client and its session cache
- The Streamlit widget
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from refund_constants import DEFAULT_DOCUMENT_NAME, DEFAULT_DOCUMENT_TYPE


# =============================================================================
# ERRORS
# =============================================================================

class RefundEstimatorError(Exception):
    """Base class for all estimator errors."""


class ValidationError(RefundEstimatorError):
    """Bad file type or bad numeric input. Shown inline, recoverable."""


class NetworkError(RefundEstimatorError):
    """Backend unreachable or returned a non-2xx status."""


class UpstreamError(RefundEstimatorError):
    """The vision model call failed or its reply was unusable."""


class StorageError(RefundEstimatorError):
    """Local cache storage unavailable or full. Never surfaced to the user."""


class ConfigurationError(RefundEstimatorError):
    """A server credential is missing."""


# =============================================================================
# ENUMS
# =============================================================================

class ConfidenceTag(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    AI_EXTRACTED = "ai-extracted"
    MANUAL = "manual"


class EstimationState(str, Enum):
    IDLE = "idle"
    DOCUMENT_SELECTED = "document_selected"
    SUBMITTING = "submitting"
    RESULT_READY = "result_ready"
    FAILED = "failed"


# =============================================================================
# REFUND ESTIMATE
# =============================================================================

class RefundEstimate(BaseModel):
    """
    Refund estimate produced by the backend. Immutable once created.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    federal_withheld: float = Field(alias="box2Federal", ge=0)
    state_withheld: float = Field(alias="box17State", ge=0)
    estimated_refund: float = Field(alias="estimatedRefund", ge=0)
    confidence: ConfidenceTag = Field(alias="ocrConfidence")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CachedResult(RefundEstimate):
    """A RefundEstimate plus the moment it was computed and its source file."""
    computed_at: datetime = Field(
        alias="calculatedAt",
        default_factory=lambda: datetime.now(timezone.utc),
    )
    source_document_name: Optional[str] = Field(default=None, alias="documentName")

    @classmethod
    def from_estimate(
        cls,
        estimate: RefundEstimate,
        source_document_name: Optional[str] = None,
        computed_at: Optional[datetime] = None,
    ) -> "CachedResult":
        data = estimate.model_dump()
        data["source_document_name"] = source_document_name
        if computed_at is not None:
            data["computed_at"] = computed_at
        return cls.model_validate(data)


# =============================================================================
# REQUESTS
# =============================================================================

class CalculateRequest(BaseModel):
    """Manual-entry body for POST /api/calculate."""
    model_config = ConfigDict(populate_by_name=True)

    federal_withheld: float = Field(alias="box2Federal")
    state_withheld: float = Field(alias="box17State")

    @field_validator("federal_withheld", "state_withheld", mode="before")
    @classmethod
    def must_be_finite_non_negative_number(cls, v: Any) -> float:
        # JSON strings and booleans are rejected, not coerced
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("must be a number")
        if not math.isfinite(v) or v < 0:
            raise ValueError("must be a finite, non-negative number")
        return v


# =============================================================================
# CLIENT-SIDE VALUE OBJECTS
# =============================================================================

def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CachedDocument:
    """The last user-supplied W-2 file, kept so a reload does not lose it."""
    raw_bytes: bytes
    file_name: str = DEFAULT_DOCUMENT_NAME
    mime_type: str = DEFAULT_DOCUMENT_TYPE
    last_modified: int = field(default_factory=_now_ms)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


__all__ = [
    "RefundEstimatorError",
    "ValidationError",
    "NetworkError",
    "UpstreamError",
    "StorageError",
    "ConfigurationError",
    "ConfidenceTag",
    "EstimationState",
    "RefundEstimate",
    "CachedResult",
    "CalculateRequest",
    "CachedDocument",
]
