"""Pytest configuration: project root importable, no real AI or network calls."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Optional, Union
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio

sys.path.insert(0, str(Path(__file__).parent))

from doc_verifier.document_types import load_document_types  # noqa: E402
from doc_verifier.models import ExtractionResult  # noqa: E402
from doc_verifier.store import SQLiteStore  # noqa: E402


@pytest.fixture(autouse=True)
def _no_llm_calls(monkeypatch):
    """Prevent real OpenAI clients from being built."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with patch("doc_verifier.service.OpenAI", side_effect=RuntimeError("OpenAI disabled in tests")):
        yield


# ─── Store ───────────────────────────────────────────────────────────


@pytest.fixture
def store():
    db = SQLiteStore(":memory:")
    yield db
    db.close()


@pytest_asyncio.fixture
async def seeded_store(store):
    await store.seed_document_types(load_document_types())
    return store


# ─── Fake Extraction Collaborator ────────────────────────────────────


Outcome = Union[ExtractionResult, BaseException]


class FakeExtractor:
    """Returns (or raises) scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: Outcome):
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def extract(self, file_url, document_type, required_fields, validation_rules, metadata):
        self.calls.append(
            {
                "file_url": file_url,
                "document_type": document_type,
                "required_fields": required_fields,
                "validation_rules": validation_rules,
                "metadata": metadata,
            }
        )
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def fake_extractor() -> Callable[..., FakeExtractor]:
    return FakeExtractor


# ─── Webhook Receiver ────────────────────────────────────────────────


class WebhookReceiver:
    """httpx.MockTransport endpoint that records every request it gets."""

    def __init__(self, status_code: int = 200, body: str = "ok"):
        self.status_code = status_code
        self.body = body
        self.error: Optional[Exception] = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def webhook_receiver() -> WebhookReceiver:
    return WebhookReceiver()
