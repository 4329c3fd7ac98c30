"""
W-2 Refund Estimator - Estimation Client
========================================
Drives the widget: validate input -> submit to the backend -> receive the
estimate -> populate the session cache -> render.

Upload flow states:
    idle -> document_selected -> submitting -> result_ready
    submitting -> failed (retry allowed)
    any state -> idle on reset

Every submission gets a ticket. A response that comes back for a ticket that
is no longer current (the user reset or picked another file meanwhile) is
dropped without touching state.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

import requests

from refund_constants import (
    ALLOWED_MIME_TYPES,
    GENERIC_UPLOAD_ERROR,
    INVALID_FILE_TYPE_MESSAGE,
    UPLOAD_FIELD_NAME,
)
from refund_models import (
    CachedDocument,
    CachedResult,
    EstimationState,
    NetworkError,
    RefundEstimate,
    ValidationError,
)
from session_cache import SessionCache

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


def extract_error_message(response: requests.Response, fallback: str = GENERIC_UPLOAD_ERROR) -> str:
    """JSON "error" or "message" field, else the raw body, else a fallback."""
    try:
        payload = response.json()
        if isinstance(payload, dict):
            message = payload.get("error") or payload.get("message")
            if message:
                return str(message)
    except ValueError:
        pass
    text = (response.text or "").strip()
    return text or fallback


def _join(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


@dataclass(frozen=True)
class SubmitTicket:
    request_id: int
    document: CachedDocument


class EstimationClient:
    """Upload flow state machine backed by a SessionCache."""

    def __init__(
        self,
        api_base_url: str,
        cache: SessionCache,
        bearer_token: Optional[str] = None,
        http: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.api_base_url = api_base_url
        self.cache = cache
        self.bearer_token = bearer_token
        self.http = http or requests.Session()
        self.timeout = timeout

        self.state = EstimationState.IDLE
        self.document: Optional[CachedDocument] = None
        self.preview: Optional[bytes] = None
        self.result: Optional[RefundEstimate] = None
        self.error: Optional[str] = None
        self._request_seq = 0

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(self) -> EstimationState:
        """Resume from the cache: a saved result wins over a pending document."""
        cached = self.cache.load_result()
        if cached is not None:
            self.result = cached
            self.state = EstimationState.RESULT_READY
            return self.state

        doc = self.cache.load_document()
        if doc is not None:
            self.document = doc
            self.preview = doc.raw_bytes if doc.is_image else None
            self.state = EstimationState.DOCUMENT_SELECTED
        return self.state

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    @property
    def can_submit(self) -> bool:
        return self.document is not None and self.state != EstimationState.SUBMITTING

    def _release_preview(self) -> None:
        self.preview = None

    def select_document(self, doc: Optional[CachedDocument]) -> EstimationState:
        """
        Pick (or drop, with None) the W-2 to upload.

        Raises:
            ValidationError: unsupported file type; nothing is cached
        """
        # A new pick supersedes any request still in flight
        self._request_seq += 1
        self.result = None
        self.error = None
        self.cache.clear_result()
        self._release_preview()

        if doc is None:
            self.document = None
            self.state = EstimationState.IDLE
            self.cache.clear_document()
            return self.state

        if doc.mime_type not in ALLOWED_MIME_TYPES:
            self.document = None
            self.state = EstimationState.IDLE
            self.error = INVALID_FILE_TYPE_MESSAGE
            raise ValidationError(INVALID_FILE_TYPE_MESSAGE)

        self.document = doc
        if doc.is_image:
            self.preview = doc.raw_bytes
        self.state = EstimationState.DOCUMENT_SELECTED
        self.cache.save_document(doc)
        return self.state

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def begin_submit(self) -> SubmitTicket:
        if not self.can_submit:
            raise ValidationError("Select a W-2 before calculating.")
        self._request_seq += 1
        self.state = EstimationState.SUBMITTING
        self.error = None
        self.result = None
        return SubmitTicket(request_id=self._request_seq, document=self.document)

    def is_current(self, ticket: SubmitTicket) -> bool:
        return ticket.request_id == self._request_seq and self.state == EstimationState.SUBMITTING

    def send(self, ticket: SubmitTicket) -> requests.Response:
        """POST the ticket's document to /api/upload-w2."""
        doc = ticket.document
        headers = {}
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return self.http.post(
            _join(self.api_base_url, "/api/upload-w2"),
            files={UPLOAD_FIELD_NAME: (doc.file_name, doc.raw_bytes, doc.mime_type)},
            headers=headers,
            timeout=self.timeout,
        )

    def complete_submit(self, ticket: SubmitTicket, response: requests.Response) -> EstimationState:
        if not self.is_current(ticket):
            logger.info(f"Dropping stale response for request {ticket.request_id}")
            return self.state

        if not response.ok:
            return self.fail_submit(ticket, extract_error_message(response))

        try:
            estimate = RefundEstimate.model_validate(response.json())
        except ValueError as e:
            logger.warning(f"Unreadable estimate from backend: {e}")
            return self.fail_submit(ticket, GENERIC_UPLOAD_ERROR)

        self.result = estimate
        self.state = EstimationState.RESULT_READY
        self.cache.save_result(CachedResult.from_estimate(
            estimate,
            source_document_name=ticket.document.file_name,
            computed_at=datetime.now(timezone.utc),
        ))
        return self.state

    def fail_submit(self, ticket: SubmitTicket, message: Optional[str] = None) -> EstimationState:
        if not self.is_current(ticket):
            return self.state
        self.error = message or GENERIC_UPLOAD_ERROR
        self.state = EstimationState.FAILED
        return self.state

    def submit(self) -> EstimationState:
        """Run a whole upload round trip."""
        ticket = self.begin_submit()
        try:
            response = self.send(ticket)
        except requests.RequestException as e:
            logger.warning(f"Upload request failed: {e}")
            return self.fail_submit(ticket, str(e) or GENERIC_UPLOAD_ERROR)
        return self.complete_submit(ticket, response)

    # -------------------------------------------------------------------------
    # Reset
    # -------------------------------------------------------------------------

    def reset(self) -> EstimationState:
        self._request_seq += 1
        self.document = None
        self.result = None
        self.error = None
        self._release_preview()
        self.state = EstimationState.IDLE
        self.cache.clear_result()
        self.cache.clear_document()
        return self.state


# =============================================================================
# MANUAL ENTRY
# =============================================================================

def parse_amount(value: Union[str, int, float, None], label: str = "Amount") -> float:
    """
    Parse a typed dollar amount.

    Raises:
        ValidationError: empty, unparseable, negative or non-finite
    """
    if value is None:
        raise ValidationError(f"{label} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number")
    if isinstance(value, str):
        text = value.replace("$", "").replace(",", "").strip()
        if not text:
            raise ValidationError(f"{label} is required")
        try:
            amount = float(text)
        except ValueError:
            raise ValidationError(f"{label} must be a number")
    else:
        amount = float(value)

    if not math.isfinite(amount) or amount < 0:
        raise ValidationError(f"{label} must be a non-negative number")
    return amount


class ManualEstimator:
    """
    Manual-entry flow: two typed amounts, one POST, result kept in memory only.
    """

    def __init__(self, api_base_url: str, http: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT):
        self.api_base_url = api_base_url
        self.http = http or requests.Session()
        self.timeout = timeout
        self.result: Optional[RefundEstimate] = None

    def calculate(self, federal_withheld, state_withheld) -> RefundEstimate:
        federal = parse_amount(federal_withheld, "Box 2 (Federal)")
        state = parse_amount(state_withheld, "Box 17 (State)")

        try:
            response = self.http.post(
                _join(self.api_base_url, "/api/calculate"),
                json={"box2Federal": federal, "box17State": state},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(str(e) or "Could not reach the calculator.") from e

        if not response.ok:
            raise NetworkError(extract_error_message(response, "Could not calculate right now."))

        try:
            self.result = RefundEstimate.model_validate(response.json())
        except ValueError as e:
            raise NetworkError("Could not calculate right now.") from e
        return self.result

    def reset(self) -> None:
        self.result = None
