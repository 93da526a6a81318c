import httpx
import pytest
from conftest import FakeGeminiClient
from google.genai import errors as genai_errors

from config import Settings
from errors import ExtractionTransportError, TransportErrorKind
from extractor import GeminiExtractor, ModelSelector, ModelVariant, build_extraction_prompt
from schema import DerivedInfo, StatementRecord, Transaction

STATEMENT_TEXT = "===PAGE 1===\n12-03-2024 SWIGGY 450.00"


def api_error(code):
    return genai_errors.APIError(code, {"error": {"code": code, "message": "boom", "status": "ERROR"}})


def make_extractor(settings, outcomes, selector=None):
    client = FakeGeminiClient(outcomes)
    extractor = GeminiExtractor(settings, client=client, selector=selector or ModelSelector())
    return extractor, client.models


def test_text_extraction_uses_lite_model(settings):
    extractor, models = make_extractor(settings, ['{"transactions": []}'])

    assert extractor.extract_text(STATEMENT_TEXT) == '{"transactions": []}'
    assert models.calls == ["lite-model"]
    assert STATEMENT_TEXT in models.contents[0][0]


def test_rate_limit_switches_model_and_retries_once(settings):
    extractor, models = make_extractor(settings, [api_error(429), "{}"])

    assert extractor.extract_text(STATEMENT_TEXT) == "{}"
    assert models.calls == ["lite-model", "primary-model"]
    assert extractor.selector.swapped


def test_switch_persists_for_later_requests(settings):
    extractor, models = make_extractor(settings, [api_error(429), "{}", "{}"])

    extractor.extract_text(STATEMENT_TEXT)
    extractor.extract_text(STATEMENT_TEXT)

    assert models.calls == ["lite-model", "primary-model", "primary-model"]


def test_second_rate_limit_is_surfaced(settings):
    extractor, models = make_extractor(settings, [api_error(429), api_error(429)])

    with pytest.raises(ExtractionTransportError) as excinfo:
        extractor.extract_text(STATEMENT_TEXT)

    assert excinfo.value.kind is TransportErrorKind.RATE_LIMITED
    assert models.calls == ["lite-model", "primary-model"]
    assert not extractor.selector.swapped


@pytest.mark.parametrize("error, kind", [
    (api_error(500), TransportErrorKind.UPSTREAM),
    (api_error(400), TransportErrorKind.INVALID_REQUEST),
    (httpx.ConnectError("connection refused"), TransportErrorKind.UPSTREAM),
])
def test_other_failures_are_not_retried(settings, error, kind):
    extractor, models = make_extractor(settings, [error])

    with pytest.raises(ExtractionTransportError) as excinfo:
        extractor.extract_text(STATEMENT_TEXT)

    assert excinfo.value.kind is kind
    assert len(models.calls) == 1


def test_empty_response_body_is_a_decode_failure(settings):
    extractor, _ = make_extractor(settings, ["  "])

    with pytest.raises(ExtractionTransportError) as excinfo:
        extractor.extract_text(STATEMENT_TEXT)

    assert excinfo.value.kind is TransportErrorKind.DECODE


def test_missing_api_key():
    extractor = GeminiExtractor(Settings(GEMINI_API_KEY=None), selector=ModelSelector())

    with pytest.raises(ExtractionTransportError) as excinfo:
        extractor.extract_text(STATEMENT_TEXT)

    assert excinfo.value.kind is TransportErrorKind.INVALID_REQUEST


def test_empty_text_and_oversized_requests_are_rejected(settings):
    extractor, models = make_extractor(settings, [])
    with pytest.raises(ExtractionTransportError):
        extractor.extract_text("   ")

    small = settings.model_copy(update={"MAX_REQUEST_KB": 1})
    extractor, models = make_extractor(small, [])
    with pytest.raises(ExtractionTransportError) as excinfo:
        extractor.extract_text("x" * 2048)

    assert excinfo.value.status_code == 413
    assert models.calls == []


def test_forced_variant(settings):
    selector = ModelSelector()
    selector.force(ModelVariant.PRIMARY)
    extractor, models = make_extractor(settings, ["{}"], selector)

    extractor.extract_text(STATEMENT_TEXT)

    assert models.calls == ["primary-model"]


def test_document_extraction_uploads_bytes_to_primary_model(settings):
    extractor, models = make_extractor(settings, ["{}"])

    extractor.extract_document(b"%PDF-1.4 data", "application/pdf")

    part, prompt = models.contents[0]
    assert models.calls == ["primary-model"]
    assert part.inline_data.mime_type == "application/pdf"
    assert "Never merge rows" in prompt


def test_narrative_summarizes_spend_by_category(settings):
    extractor, models = make_extractor(settings, ["  You spent most on food.  "])
    record = StatementRecord(transactions=[
        Transaction(date="2024-03-12", description="SWIGGY", amount="450.00", type="debit",
                    derived=DerivedInfo(category="Food & Dining")),
        Transaction(date="2024-03-15", description="REFUND", amount="100.00", type="credit"),
    ])

    assert extractor.generate_narrative(record) == "You spent most on food."
    prompt = models.contents[0][0]
    assert "- Food & Dining: 450.00" in prompt
    assert "Total credits: 100.00" in prompt
    assert models.calls == ["lite-model"]


def test_prompt_carries_rules_and_text():
    prompt = build_extraction_prompt(instructions="Use GBP.", document_text="===PAGE 1===\nrow")

    assert "SBI Card" in prompt
    assert "Never merge rows" in prompt
    assert "SWIGGY" in prompt
    assert prompt.endswith("===PAGE 1===\nrow")
    assert "Use GBP." in prompt
