"""
Document extraction via an OpenAI vision model.

The model is used as a "smart reader": it reads the document image or PDF,
pulls out the fields we ask for and reports what it thinks about
authenticity. BUT we never trust it blindly. Every field it returns is
re-checked by the deterministic validators and re-scored by the rule engine.

Design:
  - The document is downloaded with httpx (size-capped, streamed).
  - The OpenAI client is synchronous; calls run in a worker thread.
  - Failures are classified so the job queue knows what to retry:
        network / 5xx / rate limit   → TransientExtractionError (retried)
        4xx / oversize download      → DocumentDownloadError    (final)
        unparseable model output     → MalformedResponseError   (final)
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
import re
from typing import Any, Optional, Protocol

import httpx
import openai
from openai import OpenAI
from pydantic import ValidationError

from .exceptions import (
    DocumentDownloadError,
    ExtractionError,
    MalformedResponseError,
    TransientExtractionError,
)
from .models import ExtractionResult, ImageQuality, RequestStatus

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
MAX_DOWNLOAD_BYTES = 20 * 1024 * 1024
USER_AGENT = "DocumentVerificationService/1.0"


class Extractor(Protocol):
    """What the pipeline needs from an extraction collaborator."""

    async def extract(
        self,
        file_url: str,
        document_type: str,
        required_fields: list[str],
        validation_rules: dict[str, str],
        metadata: dict[str, Any],
    ) -> ExtractionResult: ...


# ─── Prompts ─────────────────────────────────────────────────────────

SYSTEM_PROMPT = """\
You are an expert document verification AI. Your job is to:
1. Analyze the provided document image/PDF
2. Confirm it is the type of document the client claims it is
3. Extract all relevant structured data EXACTLY as printed
4. Check for signs of tampering or fraud
5. Provide a confidence score and risk assessment

Do NOT correct errors on the document. Do NOT invent values for fields
that are not visible. You MUST respond in valid JSON only. No markdown.
"""

_RESPONSE_SHAPE = """\
Return ONLY a JSON object with this exact structure:
{
  "document_type_match": true/false,
  "detected_document_type": "what the document actually is",
  "expected_document_type": "what the client claimed",
  "document_type_mismatch_reason": "why it does not match, or null",
  "status": "verified" or "rejected",
  "confidence": <number between 0 and 100>,
  "risk_score": <number between 0 and 1, where 0 is lowest risk>,
  "extracted_data": {<field_name>: <extracted_value>, ...},
  "issues": [<issues found, empty array if none>],
  "fraud_indicators": [<fraud indicators, empty array if clean>],
  "metadata_match": {<field>: {"matches": true/false, "extracted": "value", "expected": "value"}},
  "is_genuine": true/false,
  "authenticity_checks": {
    "tampering_detected": true/false,
    "has_security_features": true/false,
    "font_consistency": true/false,
    "layout_matches_official": true/false,
    "photo_integrity": true/false,
    "is_original_document": true/false,
    "image_quality": "good" | "fair" | "poor" | "suspicious"
  },
  "data_consistency": {
    "dates_valid": true/false,
    "id_format_valid": true/false,
    "logical_checks_passed": true/false,
    "details": "short explanation"
  },
  "remarks": "Brief summary of the verification result"
}"""


def build_extraction_prompt(
    document_type: str,
    required_fields: list[str],
    validation_rules: dict[str, str],
    metadata: dict[str, Any],
) -> str:
    lines = [
        f"Analyze this {document_type} document and extract the following information.",
        "",
        "Required fields:",
    ]
    if required_fields:
        lines.extend(f"- {name}" for name in required_fields)
    else:
        lines.append("- Any visible text fields, names, dates, ID numbers")

    if metadata:
        lines += ["", "Metadata provided by client for cross-verification:"]
        lines.extend(f"- {k}: {v}" for k, v in metadata.items())
        lines += ["", "Compare the extracted data against the metadata above and note any mismatches."]

    if validation_rules:
        lines += ["", "Validation rules to check:"]
        lines.extend(f"- {k}: must match pattern {v}" for k, v in validation_rules.items())

    lines += ["", _RESPONSE_SHAPE]
    return "\n".join(lines)


# ─── Media Type Detection ────────────────────────────────────────────

_EXTENSION_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
}


def detect_media_type(content_type: Optional[str], url: str) -> str:
    """Content-Type header first, then the URL extension, then assume JPEG."""
    if content_type:
        ct = content_type.lower()
        if "pdf" in ct:
            return "application/pdf"
        if "png" in ct:
            return "image/png"
        if "gif" in ct:
            return "image/gif"
        if "webp" in ct:
            return "image/webp"
        if "jpeg" in ct or "jpg" in ct:
            return "image/jpeg"
    ext = url.rsplit(".", 1)[-1].split("?", 1)[0].lower()
    return _EXTENSION_TYPES.get(ext, "image/jpeg")


# ─── Extractor ───────────────────────────────────────────────────────


class DocumentExtractor:
    """Download a document and ask the vision model to read it.

    Usage:
        extractor = DocumentExtractor(http_client, OpenAI(api_key=...))
        result = await extractor.extract(url, "pan", ["name"], {}, {})
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        openai_client: Optional[OpenAI] = None,
        *,
        model: str = DEFAULT_MODEL,
        max_download_bytes: int = MAX_DOWNLOAD_BYTES,
        download_timeout: float = 30.0,
    ):
        self.http = http_client
        self.openai = openai_client
        self.model = model
        self.max_download_bytes = max_download_bytes
        self.download_timeout = download_timeout

    async def extract(
        self,
        file_url: str,
        document_type: str,
        required_fields: list[str],
        validation_rules: dict[str, str],
        metadata: dict[str, Any],
    ) -> ExtractionResult:
        if self.openai is None:
            raise ExtractionError(
                "OpenAI client not initialized. Set OPENAI_API_KEY environment variable."
            )

        body, content_type = await self.download(file_url)
        media_type = detect_media_type(content_type, file_url)
        prompt = build_extraction_prompt(document_type, required_fields, validation_rules, metadata)

        text = await asyncio.to_thread(
            self._complete,
            self.openai,
            base64.b64encode(body).decode("ascii"),
            media_type,
            prompt,
        )
        data = parse_ai_response(text)
        logger.info("Extraction succeeded for %s (%s)", document_type, media_type)
        return coerce_extraction(data)

    async def download(self, file_url: str) -> tuple[bytes, Optional[str]]:
        """Fetch the document, refusing anything over the size cap."""
        try:
            async with self.http.stream(
                "GET",
                file_url,
                headers={"User-Agent": USER_AGENT},
                timeout=self.download_timeout,
                follow_redirects=True,
            ) as response:
                if response.status_code >= 500:
                    raise TransientExtractionError(
                        f"Document host returned {response.status_code}",
                        {"url": file_url, "status": response.status_code},
                    )
                if response.status_code >= 400:
                    raise DocumentDownloadError(
                        f"Document download failed with HTTP {response.status_code}",
                        {"url": file_url, "status": response.status_code},
                    )

                chunks: list[bytes] = []
                size = 0
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > self.max_download_bytes:
                        raise DocumentDownloadError(
                            f"Document exceeds {self.max_download_bytes} bytes",
                            {"url": file_url},
                        )
                    chunks.append(chunk)
                return b"".join(chunks), response.headers.get("content-type")
        except httpx.TransportError as e:
            raise TransientExtractionError(
                f"Document download failed: {e}", {"url": file_url}
            ) from e

    def _complete(self, client: OpenAI, b64: str, media_type: str, prompt: str) -> str:
        if media_type == "application/pdf":
            part: dict[str, Any] = {
                "type": "file",
                "file": {
                    "filename": "document.pdf",
                    "file_data": f"data:application/pdf;base64,{b64}",
                },
            }
        else:
            part = {
                "type": "image_url",
                "image_url": {"url": f"data:{media_type};base64,{b64}", "detail": "high"},
            }

        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": [part, {"type": "text", "text": prompt}]},
                ],
                max_tokens=4096,
                temperature=0.1,
            )
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise TransientExtractionError(f"AI service unavailable: {e}") from e
        except openai.APIError as e:
            raise ExtractionError(f"AI service rejected the request: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise MalformedResponseError("AI service returned empty content")
        return content


# ─── Response Parsing ────────────────────────────────────────────────

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_ai_response(text: Optional[str]) -> dict[str, Any]:
    """Pull a JSON object out of model output.

    Tries, in order: the whole text, a fenced code block, the outermost
    ``{...}`` span.

    Raises:
        MalformedResponseError: if none of those yield a JSON object.
    """
    if not text or not text.strip():
        raise MalformedResponseError("Empty response from AI")

    candidates = [text]
    fenced = _FENCED.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    obj = _OBJECT.search(text)
    if obj:
        candidates.append(obj.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise MalformedResponseError(
        "Failed to parse AI response as JSON", {"preview": text[:200]}
    )


def coerce_extraction(data: dict[str, Any]) -> ExtractionResult:
    """Fill defaults and squash loose model output into an ExtractionResult."""
    cleaned = dict(data)

    status = str(data.get("status") or "").lower()
    cleaned["status"] = (
        RequestStatus(status)
        if status in (RequestStatus.VERIFIED.value, RequestStatus.REJECTED.value)
        else RequestStatus.VERIFIED
    )
    cleaned["confidence"] = _safe_float(data.get("confidence"))
    cleaned["risk_score"] = _safe_float(data.get("risk_score"))
    cleaned["document_type_match"] = data.get("document_type_match") is not False

    extracted = data.get("extracted_data") or {}
    cleaned["extracted_data"] = (
        {str(k): _scalar(v) for k, v in extracted.items()} if isinstance(extracted, dict) else {}
    )
    cleaned["issues"] = _str_list(data.get("issues"))
    cleaned["fraud_indicators"] = _str_list(data.get("fraud_indicators"))

    matches = data.get("metadata_match") or {}
    cleaned["metadata_match"] = (
        {str(k): _metadata_match(v) for k, v in matches.items() if isinstance(v, dict)}
        if isinstance(matches, dict)
        else {}
    )

    checks = data.get("authenticity_checks")
    if isinstance(checks, dict):
        checks = dict(checks)
        quality = str(checks.get("image_quality") or "").lower()
        checks["image_quality"] = quality if quality in {q.value for q in ImageQuality} else None
        cleaned["authenticity_checks"] = checks
    else:
        cleaned.pop("authenticity_checks", None)

    if not isinstance(data.get("data_consistency"), dict):
        cleaned.pop("data_consistency", None)
    cleaned["remarks"] = str(data.get("remarks") or "")

    try:
        return ExtractionResult.model_validate(cleaned)
    except ValidationError as e:
        raise MalformedResponseError(
            f"AI response has unexpected shape: {e.error_count()} error(s)",
            {"errors": e.errors(include_url=False)},
        ) from e


# ─── Safe Type Converters ────────────────────────────────────────────


def _safe_float(value: object) -> float:
    """Convert model output to float. Returns 0.0 on failure, NaN or infinity."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(str(value).strip().rstrip("%"))
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _metadata_match(entry: dict[str, Any]) -> dict[str, Any]:
    """Echoed metadata values may come back as numbers; the model stores text."""
    cleaned = dict(entry)
    for key in ("extracted", "expected"):
        value = cleaned.get(key)
        if value is not None and not isinstance(value, str):
            cleaned[key] = json.dumps(value) if isinstance(value, (dict, list)) else str(value)
    return cleaned


def _scalar(value: object) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value)


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]
