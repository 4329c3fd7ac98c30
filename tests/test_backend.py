"""
W-2 Refund Estimator - Backend Test Suite
=========================================
Tests for the refund formulas, data models, vision reply parsing and the API.
"""

import logging
import os
import sys
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "backend"))

import vision_client as vision_module
from refund_api import create_app
from refund_calculator import (
    build_estimate,
    calculate_fallback_refund,
    calculate_refund,
    coerce_amount,
    round_currency,
    validate_withholding,
)
from refund_models import (
    CachedResult,
    CalculateRequest,
    ConfidenceTag,
    ConfigurationError,
    RefundEstimate,
    UpstreamError,
    ValidationError,
)
from refund_settings import Settings, parse_origins
from vision_client import W2Extraction, W2VisionClient, parse_extraction_reply, strip_code_fences


# =============================================================================
# REFUND CALCULATOR TESTS
# =============================================================================

class TestRefundCalculator:
    """Test the primary and fallback refund formulas."""

    def test_documented_example(self):
        """1000 federal + 500 state -> 1500 - 120 - 20."""
        assert calculate_refund(1000, 500) == 1360.00

    @pytest.mark.parametrize("federal,state,expected", [
        (0, 0, 0.0),
        (350, 120, 423.20),
        (1234.56, 0, 1086.41),
        (0, 999.99, 959.99),
        (5000, 2500, 6800.00),
    ])
    def test_primary_formula(self, federal, state, expected):
        assert calculate_refund(federal, state) == expected

    @pytest.mark.parametrize("federal,state", [
        (0, 0), (1, 1), (12.34, 56.78), (1e6, 2.5e5), (0.01, 0), (987654.32, 12345.67),
    ])
    def test_primary_formula_matches_definition(self, federal, state):
        """Result equals the closed form, rounded, and is never negative."""
        expected = max(0, (federal + state) - federal * 0.12 - state * 0.04)
        result = calculate_refund(federal, state)
        assert result >= 0
        assert abs(result - expected) <= 0.005 + 1e-9

    def test_fallback_formula_is_distinct(self):
        """Fallback uses 10% / 5% rather than 12% / 4%."""
        assert calculate_fallback_refund(1000, 500) == 1375.00
        assert calculate_fallback_refund(350, 120) == 429.00
        assert calculate_fallback_refund(1000, 500) != calculate_refund(1000, 500)

    def test_overflowing_total_is_rejected(self):
        """Two finite amounts whose sum overflows are invalid input, not a crash."""
        with pytest.raises(ValidationError):
            calculate_refund(1e308, 1e308)
        with pytest.raises(ValidationError):
            build_estimate(1e308, 1e308, ConfidenceTag.MANUAL, fallback=True)

    def test_largest_finite_amount_still_rounds(self):
        assert calculate_refund(1e308, 0) > 0

    def test_round_currency_half_up(self):
        """Half cents round up, unlike Python's round()."""
        assert round_currency(2.675) == 2.68
        assert round_currency(0.125) == 0.13
        assert round_currency(1.004) == 1.0

    def test_round_currency_handles_huge_values(self):
        assert round_currency(1e300) == 1e300

    @pytest.mark.parametrize("federal,state", [
        (-1, 0),
        (0, -0.01),
        (float("nan"), 0),
        (0, float("inf")),
        ("100", 0),
        (True, 0),
        (None, 0),
    ])
    def test_validate_withholding_rejects_bad_values(self, federal, state):
        with pytest.raises(ValidationError):
            validate_withholding(federal, state)

    def test_validate_withholding_returns_floats(self):
        assert validate_withholding(10, 2.5) == (10.0, 2.5)

    @pytest.mark.parametrize("raw,expected", [
        (1200, 1200.0),
        (45.5, 45.5),
        ("$1,234.50", 1234.5),
        ("350", 350.0),
        ("  88.10 ", 88.1),
        ("n/a", 0.0),
        ("", 0.0),
        (None, 0.0),
        (True, 0.0),
    ])
    def test_coerce_amount(self, raw, expected):
        assert coerce_amount(raw) == expected

    def test_build_estimate(self):
        estimate = build_estimate(1000, 500, ConfidenceTag.MANUAL)
        assert isinstance(estimate, RefundEstimate)
        assert estimate.estimated_refund == 1360.00
        assert estimate.confidence == ConfidenceTag.MANUAL

    def test_build_estimate_fallback(self):
        estimate = build_estimate(1000, 500, ConfidenceTag.LOW, fallback=True)
        assert estimate.estimated_refund == 1375.00


# =============================================================================
# DATA MODEL TESTS
# =============================================================================

class TestDataModels:
    """Test Pydantic data models."""

    def test_estimate_wire_format_uses_aliases(self):
        estimate = RefundEstimate(
            federal_withheld=1000,
            state_withheld=500,
            estimated_refund=1360,
            confidence=ConfidenceTag.AI_EXTRACTED,
        )
        assert estimate.to_wire() == {
            "box2Federal": 1000.0,
            "box17State": 500.0,
            "estimatedRefund": 1360.0,
            "ocrConfidence": "ai-extracted",
        }

    def test_estimate_parses_wire_format(self):
        estimate = RefundEstimate.model_validate({
            "box2Federal": 10,
            "box17State": 5,
            "estimatedRefund": 13.6,
            "ocrConfidence": "manual",
        })
        assert estimate.federal_withheld == 10
        assert estimate.confidence == ConfidenceTag.MANUAL

    def test_estimate_is_immutable(self):
        estimate = build_estimate(1, 1, ConfidenceTag.MANUAL)
        with pytest.raises(PydanticValidationError):
            estimate.estimated_refund = 99

    def test_estimate_rejects_negative_amounts(self):
        with pytest.raises(PydanticValidationError):
            RefundEstimate(
                federal_withheld=-1,
                state_withheld=0,
                estimated_refund=0,
                confidence=ConfidenceTag.MANUAL,
            )

    def test_estimate_rejects_unknown_confidence(self):
        with pytest.raises(PydanticValidationError):
            RefundEstimate.model_validate({
                "box2Federal": 1, "box17State": 1, "estimatedRefund": 1, "ocrConfidence": "certain",
            })

    def test_cached_result_carries_source_and_timestamp(self):
        estimate = build_estimate(1000, 500, ConfidenceTag.AI_EXTRACTED)
        cached = CachedResult.from_estimate(estimate, source_document_name="w2.png")
        wire = cached.model_dump(mode="json", by_alias=True)

        assert wire["documentName"] == "w2.png"
        assert "calculatedAt" in wire
        assert cached.estimated_refund == estimate.estimated_refund

    @pytest.mark.parametrize("body", [
        {"box2Federal": "1000", "box17State": 500},
        {"box2Federal": True, "box17State": 500},
        {"box2Federal": -5, "box17State": 500},
        {"box2Federal": float("inf"), "box17State": 500},
        {"box2Federal": 1000},
    ])
    def test_calculate_request_validation(self, body):
        with pytest.raises(PydanticValidationError):
            CalculateRequest.model_validate(body)


# =============================================================================
# SETTINGS TESTS
# =============================================================================

class TestSettings:

    def test_parse_origins(self):
        assert parse_origins(" https://a.example , ,https://b.example") == [
            "https://a.example",
            "https://b.example",
        ]
        assert parse_origins(None) == []

    def test_extra_origins_from_env(self, monkeypatch):
        from refund_settings import load_settings

        monkeypatch.setenv("ALLOWED_ORIGINS", "https://app.example.com, https://staging.example.com")
        settings = load_settings()
        assert "https://www.jai1taxes.com" in settings.allowed_origins
        assert "https://staging.example.com" in settings.allowed_origins

    def test_openai_key_prefers_streamlit_secrets(self, monkeypatch):
        import streamlit as st
        from refund_settings import load_settings

        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        monkeypatch.setattr(st, "secrets", {"OPENAI_API_KEY": "sk-from-secrets"})
        assert load_settings().openai_api_key == "sk-from-secrets"

        monkeypatch.setattr(st, "secrets", {})
        assert load_settings().openai_api_key == "sk-from-env"

    @pytest.mark.parametrize("raw,expected", [
        ("1", True), ("true", True), ("YES", True), ("on", True),
        ("0", False), ("false", False), ("no", False), ("", False),
    ])
    def test_debug_flag_parsing(self, monkeypatch, raw, expected):
        from refund_settings import load_settings

        monkeypatch.setenv("DEBUG", raw)
        assert load_settings().debug is expected


# =============================================================================
# VISION REPLY PARSING TESTS
# =============================================================================

def _fake_openai(content=None, error=None):
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        if error:
            raise error
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(total_tokens=42),
        )

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


class TestVisionClient:
    """Test model reply parsing and the request the client sends."""

    def test_structured_reply(self):
        extraction = parse_extraction_reply('{"box2Federal": 1000, "box17State": "500"}')
        assert extraction.structured
        assert extraction.federal_withheld == 1000
        assert extraction.state_withheld == 500

    def test_fenced_reply(self):
        reply = '```json\n{"box2Federal": "$1,234.50", "box17State": 0}\n```'
        assert strip_code_fences(reply).startswith("{")
        extraction = parse_extraction_reply(reply)
        assert extraction.structured
        assert extraction.federal_withheld == 1234.5

    def test_unstructured_reply_is_salvaged(self):
        extraction = parse_extraction_reply("Box 2: $350.00 and Box 17 (State income tax withheld): 120")
        assert not extraction.structured
        assert extraction.federal_withheld == 350
        assert extraction.state_withheld == 120

    def test_json_missing_field_is_salvaged(self):
        extraction = parse_extraction_reply('{"box2Federal": 800}')
        assert not extraction.structured
        assert extraction.federal_withheld == 800
        assert extraction.state_withheld == 0

    def test_unusable_reply_raises(self):
        with pytest.raises(UpstreamError):
            parse_extraction_reply("I could not read this document.")

    def test_missing_key_raises_configuration_error(self):
        client = W2VisionClient(api_key=None)
        assert not client.is_configured
        with pytest.raises(ConfigurationError):
            client.extract(b"img", "image/png")

    def test_image_sent_as_data_url(self):
        fake, calls = _fake_openai('{"box2Federal": 10, "box17State": 2}')
        client = W2VisionClient(client=fake)

        extraction = client.extract(b"\x89PNG", "image/png")

        assert extraction.federal_withheld == 10
        assert extraction.tokens_used == 42
        request = calls[0]
        assert request["model"] == "gpt-4o-mini"
        assert request["temperature"] == 0.1
        assert request["max_tokens"] == 200
        assert request["response_format"] == {"type": "json_object"}
        image_part = request["messages"][1]["content"][1]
        assert image_part["image_url"]["url"].startswith("data:image/png;base64,")

    def test_pdf_sent_as_text(self, monkeypatch):
        monkeypatch.setattr(vision_module, "extract_pdf_text", lambda content: "2 Federal income tax withheld 350.00")
        fake, calls = _fake_openai('{"box2Federal": 350, "box17State": 0}')
        client = W2VisionClient(client=fake)

        client.extract(b"%PDF-1.4", "application/pdf")

        user_message = calls[0]["messages"][1]["content"]
        assert isinstance(user_message, str)
        assert "350.00" in user_message

    def test_pdf_without_text_is_validation_error(self, monkeypatch):
        monkeypatch.setattr(vision_module, "extract_pdf_text", lambda content: "   ")
        fake, _ = _fake_openai("{}")
        with pytest.raises(ValidationError):
            W2VisionClient(client=fake).extract(b"%PDF-1.4", "application/pdf")

    def test_api_failure_raises_upstream_error(self):
        fake, _ = _fake_openai(error=RuntimeError("rate limited"))
        with pytest.raises(UpstreamError):
            W2VisionClient(client=fake).extract(b"img", "image/jpeg")

    def test_empty_reply_raises_upstream_error(self):
        fake, _ = _fake_openai(content="")
        with pytest.raises(UpstreamError):
            W2VisionClient(client=fake).extract(b"img", "image/jpeg")


# =============================================================================
# API TESTS
# =============================================================================

class FakeVisionClient:
    """Stands in for W2VisionClient; returns a canned extraction or raises."""

    def __init__(self, extraction=None, error=None):
        self.extraction = extraction
        self.error = error
        self.calls = []

    @property
    def is_configured(self):
        return True

    def extract(self, content, mime_type):
        self.calls.append((content, mime_type))
        if self.error:
            raise self.error
        return self.extraction


def _png(name="w2.png", content=b"\x89PNG fake", mime="image/png"):
    return {"w2Image": (name, content, mime)}


class TestAPI:
    """Test the HTTP surface with FastAPI's TestClient."""

    @pytest.fixture
    def vision(self):
        return FakeVisionClient(W2Extraction(federal_withheld=1000, state_withheld=500))

    @pytest.fixture
    def client(self, vision):
        return TestClient(create_app(settings=Settings(), vision_client=vision))

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}

    def test_root_lists_endpoints(self, client):
        body = client.get("/").json()
        assert body["status"] == "ok"
        assert body["endpoints"]["uploadW2"]["field"] == "w2Image"

    def test_calculate(self, client):
        r = client.post("/api/calculate", json={"box2Federal": 1000, "box17State": 500})
        assert r.status_code == 200
        assert r.json() == {
            "box2Federal": 1000.0,
            "box17State": 500.0,
            "estimatedRefund": 1360.0,
            "ocrConfidence": "manual",
        }

    @pytest.mark.parametrize("body", [
        {"box2Federal": "1000", "box17State": 500},
        {"box2Federal": -1, "box17State": 500},
        {"box2Federal": 1000},
        {},
    ])
    def test_calculate_rejects_invalid_input(self, client, body):
        r = client.post("/api/calculate", json=body)
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid input values"}

    def test_calculate_rejects_non_finite(self, client):
        r = client.post(
            "/api/calculate",
            content=b'{"box2Federal": NaN, "box17State": 1}',
            headers={"Content-Type": "application/json"},
        )
        assert r.status_code == 400

    def test_calculate_rejects_overflowing_total(self, client):
        r = client.post("/api/calculate", json={"box2Federal": 1e308, "box17State": 1e308})
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid input values"}

    def test_upload(self, client, vision):
        r = client.post("/api/upload-w2", files=_png())
        assert r.status_code == 200
        assert r.json() == {
            "box2Federal": 1000.0,
            "box17State": 500.0,
            "estimatedRefund": 1360.0,
            "ocrConfidence": "ai-extracted",
        }
        assert vision.calls == [(b"\x89PNG fake", "image/png")]

    def test_upload_logs_model_and_token_usage(self, caplog):
        vision = FakeVisionClient(W2Extraction(
            federal_withheld=1000, state_withheld=500, model="gpt-4o-mini", tokens_used=42,
        ))
        client = TestClient(create_app(settings=Settings(), vision_client=vision))
        caplog.set_level(logging.INFO, logger="refund_api")

        assert client.post("/api/upload-w2", files=_png()).status_code == 200
        assert "with gpt-4o-mini (42 tokens)" in caplog.text

    def test_upload_unstructured_uses_fallback(self):
        vision = FakeVisionClient(W2Extraction(federal_withheld=1000, state_withheld=500, structured=False))
        client = TestClient(create_app(settings=Settings(), vision_client=vision))

        body = client.post("/api/upload-w2", files=_png()).json()
        assert body["estimatedRefund"] == 1375.0
        assert body["ocrConfidence"] == "low"

    def test_upload_accepts_pdf(self, client, vision):
        r = client.post("/api/upload-w2", files=_png("w2.pdf", b"%PDF-1.4", "application/pdf"))
        assert r.status_code == 200
        assert vision.calls[0][1] == "application/pdf"

    def test_upload_without_file(self, client):
        r = client.post("/api/upload-w2", files={"other": ("a.txt", b"x", "text/plain")})
        assert r.status_code == 400
        assert r.json() == {"error": "No image file provided"}

    def test_upload_rejects_unsupported_type(self, client, vision):
        r = client.post("/api/upload-w2", files=_png("notes.txt", b"hello", "text/plain"))
        assert r.status_code == 400
        assert "Only JPG, PNG, and PDF" in r.json()["error"]
        assert vision.calls == []

    def test_upload_too_large(self, vision):
        client = TestClient(create_app(settings=Settings(max_upload_bytes=4), vision_client=vision))
        r = client.post("/api/upload-w2", files=_png(content=b"12345"))
        assert r.status_code == 413

    def test_upload_invalid_extracted_values(self):
        vision = FakeVisionClient(W2Extraction(
            federal_withheld=-50, state_withheld=10, raw={"box2Federal": -50, "box17State": 10},
        ))
        client = TestClient(create_app(settings=Settings(), vision_client=vision))

        r = client.post("/api/upload-w2", files=_png())
        assert r.status_code == 400
        assert r.json()["error"] == "Invalid values extracted from W-2"
        assert r.json()["extracted"] == {"box2Federal": -50, "box17State": 10}

    def test_upload_upstream_failure(self):
        vision = FakeVisionClient(error=UpstreamError("Failed to extract W-2 data"))
        client = TestClient(create_app(settings=Settings(), vision_client=vision))

        r = client.post("/api/upload-w2", files=_png())
        assert r.status_code == 500
        assert r.json() == {"error": "Failed to extract W-2 data"}

    def test_upload_missing_credential(self):
        client = TestClient(create_app(settings=Settings(), vision_client=W2VisionClient(api_key=None)))

        r = client.post("/api/upload-w2", files=_png())
        assert r.status_code == 500
        assert r.json() == {"error": "Server configuration error"}

    def test_upload_bearer_token_required_when_configured(self, vision):
        client = TestClient(create_app(settings=Settings(api_bearer_token="s3cret"), vision_client=vision))

        assert client.post("/api/upload-w2", files=_png()).status_code == 401
        r = client.post("/api/upload-w2", files=_png(), headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200

    def test_cors_allowed_origin(self, client):
        r = client.get("/health", headers={"Origin": "https://www.jai1taxes.com"})
        assert r.headers["access-control-allow-origin"] == "https://www.jai1taxes.com"
        assert r.headers["access-control-allow-credentials"] == "true"

    def test_cors_unknown_origin(self, client):
        r = client.get("/health", headers={"Origin": "https://evil.example"})
        assert "access-control-allow-origin" not in r.headers

    def test_cors_preflight(self, client):
        r = client.options(
            "/api/calculate",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert r.status_code == 200
        assert r.headers["access-control-allow-origin"] == "http://localhost:5173"
