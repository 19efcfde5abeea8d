"""
Extraction collaborator tests: response parsing, coercion, download errors.

No model is ever called: the OpenAI client is replaced by a stub object and
downloads go through httpx.MockTransport.
"""

from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest

from doc_verifier.document_types import load_document_types
from doc_verifier.exceptions import (
    DocumentDownloadError,
    ExtractionError,
    MalformedResponseError,
    TransientExtractionError,
)
from doc_verifier.extractor_llm import (
    DocumentExtractor,
    build_extraction_prompt,
    coerce_extraction,
    detect_media_type,
    parse_ai_response,
)
from doc_verifier.models import ImageQuality, RequestStatus
from doc_verifier.rules import score_document

DOC_URL = "https://files.example.com/pan.jpg"

MODEL_JSON = (
    '{"document_type_match": true, "status": "verified", "confidence": 88, '
    '"risk_score": 0.1, "extracted_data": {"name": "Rahul Sharma", "pan_number": "ABCDE1234F"}}'
)


def _client(status: int = 200, content: bytes = b"\xff\xd8fake-jpeg", headers=None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=content, headers=headers or {"content-type": "image/jpeg"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class StubOpenAI:
    """Mimics client.chat.completions.create and records the messages it got."""

    def __init__(self, content: str | None):
        self.content = content
        self.messages: list = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.messages = kwargs["messages"]
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


# ═══════════════════════════════════════════════════════════════════════
# RESPONSE PARSING
# ═══════════════════════════════════════════════════════════════════════


class TestParseAiResponse:
    def test_plain_json(self):
        assert parse_ai_response('{"status": "verified"}') == {"status": "verified"}

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"confidence": 90}\n```\nThanks'
        assert parse_ai_response(text) == {"confidence": 90}

    def test_json_embedded_in_prose(self):
        text = 'The result is {"confidence": 75, "issues": []} as requested.'
        assert parse_ai_response(text)["confidence"] == 75

    def test_no_json_at_all(self):
        with pytest.raises(MalformedResponseError):
            parse_ai_response("I could not read this document, sorry.")

    def test_top_level_list_is_rejected(self):
        with pytest.raises(MalformedResponseError):
            parse_ai_response("[1, 2, 3]")

    def test_empty_response(self):
        with pytest.raises(MalformedResponseError, match="Empty"):
            parse_ai_response("   ")


class TestCoerceExtraction:
    def test_defaults_for_missing_fields(self):
        result = coerce_extraction({})
        assert result.status == RequestStatus.VERIFIED
        assert result.confidence == 0
        assert result.risk_score == 0
        assert result.document_type_match is True
        assert result.extracted_data == {}

    def test_unknown_status_becomes_verified(self):
        assert coerce_extraction({"status": "maybe"}).status == RequestStatus.VERIFIED
        assert coerce_extraction({"status": "REJECTED"}).status == RequestStatus.REJECTED

    def test_numeric_strings_are_parsed(self):
        result = coerce_extraction({"confidence": "85%", "risk_score": "0.3"})
        assert result.confidence == 85
        assert result.risk_score == 0.3

    def test_garbage_numbers_become_zero(self):
        result = coerce_extraction({"confidence": "high", "risk_score": None})
        assert result.confidence == 0
        assert result.risk_score == 0

    def test_nan_and_infinity_become_zero(self):
        # json.loads accepts bare NaN / Infinity
        data = parse_ai_response('{"confidence": NaN, "risk_score": Infinity}')
        result = coerce_extraction(data)
        assert result.confidence == 0
        assert result.risk_score == 0
        assert coerce_extraction({"confidence": "inf", "risk_score": "-nan"}).confidence == 0

    def test_nan_confidence_cannot_score_as_verified(self):
        data = parse_ai_response(
            '{"status": "verified", "confidence": NaN, "risk_score": 0.05, '
            '"extracted_data": {"name": "Rahul Sharma", "dob": "1990-05-14", '
            '"pan_number": "ABCDE1234F"}}'
        )
        result = coerce_extraction(data)
        pan = next(c for c in load_document_types() if c.code == "pan")
        verdict = score_document("pan", result.extracted_data, result, pan)
        assert verdict.status == RequestStatus.REJECTED
        assert verdict.confidence == 0

    def test_numeric_metadata_echo_is_kept_as_text(self):
        data = parse_ai_response(
            '{"confidence": 90, "metadata_match": {'
            '"age": {"matches": true, "extracted": 30, "expected": 30}, '
            '"pincode": {"matches": false, "extracted": 411001, "expected": "411002"}, '
            '"name": {"matches": true, "extracted": null, "expected": "Asha"}}}'
        )
        result = coerce_extraction(data)
        assert result.metadata_match["age"].extracted == "30"
        assert result.metadata_match["age"].expected == "30"
        assert result.metadata_match["age"].matches is True
        assert result.metadata_match["pincode"].extracted == "411001"
        assert result.metadata_match["pincode"].matches is False
        assert result.metadata_match["name"].extracted is None

    def test_nested_extracted_values_are_flattened_to_json(self):
        result = coerce_extraction({"extracted_data": {"address": {"city": "Pune"}, "age": 34}})
        assert result.extracted_data == {"address": '{"city": "Pune"}', "age": 34}

    def test_unknown_image_quality_is_dropped(self):
        result = coerce_extraction({"authenticity_checks": {"image_quality": "blurry"}})
        assert result.authenticity_checks.image_quality is None
        result = coerce_extraction({"authenticity_checks": {"image_quality": "Poor"}})
        assert result.authenticity_checks.image_quality == ImageQuality.POOR

    def test_only_explicit_false_is_a_type_mismatch(self):
        assert coerce_extraction({"document_type_match": None}).document_type_match is True
        assert coerce_extraction({"document_type_match": False}).document_type_match is False

    def test_wrong_shape_raises_malformed(self):
        with pytest.raises(MalformedResponseError):
            coerce_extraction({"is_genuine": {"nested": True}})


class TestMediaType:
    def test_header_wins(self):
        assert detect_media_type("application/pdf; charset=binary", DOC_URL) == "application/pdf"

    def test_extension_fallback(self):
        assert detect_media_type(None, "https://x.example.com/scan.PNG?sig=1") == "image/png"

    def test_default_is_jpeg(self):
        assert detect_media_type("application/octet-stream", "https://x.example.com/blob") == "image/jpeg"


class TestPrompt:
    def test_prompt_lists_fields_metadata_and_rules(self):
        prompt = build_extraction_prompt(
            "pan", ["name", "pan_number"], {"pan_number": "^[A-Z]{5}"}, {"name": "Rahul"}
        )
        assert "Analyze this pan document" in prompt
        assert "- pan_number" in prompt
        assert "- name: Rahul" in prompt
        assert "must match pattern ^[A-Z]{5}" in prompt

    def test_prompt_without_required_fields(self):
        assert "Any visible text fields" in build_extraction_prompt("other", [], {}, {})


# ═══════════════════════════════════════════════════════════════════════
# DOWNLOAD & EXTRACT
# ═══════════════════════════════════════════════════════════════════════


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_returns_bytes_and_type(self):
        async with _client() as http:
            body, content_type = await DocumentExtractor(http).download(DOC_URL)
        assert body == b"\xff\xd8fake-jpeg"
        assert content_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_client_error_is_final(self):
        async with _client(status=404) as http:
            with pytest.raises(DocumentDownloadError, match="404"):
                await DocumentExtractor(http).download(DOC_URL)

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        async with _client(status=503) as http:
            with pytest.raises(TransientExtractionError):
                await DocumentExtractor(http).download(DOC_URL)

    @pytest.mark.asyncio
    async def test_oversize_download_is_final(self):
        async with _client(content=b"x" * 2048) as http:
            with pytest.raises(DocumentDownloadError, match="exceeds"):
                await DocumentExtractor(http, max_download_bytes=1024).download(DOC_URL)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(TransientExtractionError):
                await DocumentExtractor(http).download(DOC_URL)


class TestExtract:
    @pytest.mark.asyncio
    async def test_extract_end_to_end(self):
        stub = StubOpenAI(MODEL_JSON)
        async with _client() as http:
            result = await DocumentExtractor(http, stub).extract(
                DOC_URL, "pan", ["name", "pan_number"], {}, {"name": "Rahul Sharma"}
            )
        assert result.confidence == 88
        assert result.extracted_data["pan_number"] == "ABCDE1234F"
        image_part = stub.messages[1]["content"][0]
        assert image_part["type"] == "image_url"
        assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_pdf_is_sent_as_file_part(self):
        stub = StubOpenAI(MODEL_JSON)
        async with _client(content=b"%PDF-1.7", headers={"content-type": "application/pdf"}) as http:
            await DocumentExtractor(http, stub).extract(
                "https://files.example.com/statement.pdf", "bank_statement", [], {}, {}
            )
        assert stub.messages[1]["content"][0]["type"] == "file"

    @pytest.mark.asyncio
    async def test_empty_model_content_is_malformed(self):
        async with _client() as http:
            with pytest.raises(MalformedResponseError):
                await DocumentExtractor(http, StubOpenAI("")).extract(DOC_URL, "pan", [], {}, {})

    @pytest.mark.asyncio
    async def test_missing_client_fails(self):
        async with _client() as http:
            with pytest.raises(ExtractionError, match="OPENAI_API_KEY"):
                await DocumentExtractor(http, None).extract(DOC_URL, "pan", [], {}, {})
