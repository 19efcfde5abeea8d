"""
Document Verifier: FastAPI Server
==================================

Thin HTTP surface over the verification service. Callers identify
themselves with an X-Owner-Id header; authentication, API keys and rate
limiting belong to whatever sits in front of this app.

Endpoints:
    POST /v1/verify                 Submit one document (202)
    GET  /v1/status/{ref}           Lifecycle status only
    GET  /v1/result/{ref}           Full verdict once processing is done
    POST /v1/reprocess/{ref}        Re-run a finished request (202)
    POST /v1/bulk                   Submit up to 50 documents as one job (202)
    GET  /v1/bulk/{bulk_id}         Bulk job progress
    POST /v1/webhooks               Register a signed webhook endpoint (201)
    GET  /health                    Health check / queue status

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from doc_verifier import __version__
from doc_verifier.config import Settings, load_settings
from doc_verifier.exceptions import (
    InvalidStateTransition,
    InvalidSubmissionError,
    RequestNotFoundError,
    VerificationError,
)
from doc_verifier.models import (
    DEFAULT_WEBHOOK_EVENTS,
    BulkStatus,
    RequestStatus,
    VerificationRequest,
    WebhookEvent,
)
from doc_verifier.service import VerificationService

ServiceFactory = Callable[[Settings], VerificationService]

_STATUS_CODES: dict[type[VerificationError], int] = {
    RequestNotFoundError: 404,
    InvalidStateTransition: 409,
    InvalidSubmissionError: 400,
}


# ─── Request / Response Schemas ─────────────────────────────────────


class VerifyRequest(BaseModel):
    """Request body for POST /v1/verify."""

    document_type: str = Field(..., min_length=1, json_schema_extra={"example": "pan"})
    file_url: str = Field(
        ..., min_length=1, json_schema_extra={"example": "https://files.example.com/pan.jpg"}
    )
    reference_id: Optional[str] = Field(None, description="Caller's own reference")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Values the document should agree with",
        json_schema_extra={"example": {"name": "Rahul Sharma"}},
    )


class SubmitResponse(BaseModel):
    system_reference_id: str
    client_reference_id: Optional[str] = None
    status: RequestStatus
    message: str


class StatusResponse(BaseModel):
    system_reference_id: str
    client_reference_id: Optional[str] = None
    document_type: str
    status: RequestStatus
    created_at: datetime
    processed_at: Optional[datetime] = None


class ResultResponse(BaseModel):
    system_reference_id: str
    client_reference_id: Optional[str] = None
    document_type: str
    status: RequestStatus
    message: Optional[str] = None
    confidence: Optional[float] = None
    risk_score: Optional[float] = None
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    issues: list[str] = Field(default_factory=list)
    wrong_document: bool = False
    detected_document_type: Optional[str] = None
    expected_document_type: Optional[str] = None
    is_genuine: Optional[bool] = None
    authenticity_checks: dict[str, Any] = Field(default_factory=dict)
    fraud_indicators: list[str] = Field(default_factory=list)
    data_consistency: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    processed_at: Optional[datetime] = None


class BulkDocument(BaseModel):
    document_type: str
    file_url: str
    reference_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkRequest(BaseModel):
    documents: list[BulkDocument] = Field(..., min_length=1)
    callback_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkResponse(BaseModel):
    bulk_id: str
    status: BulkStatus
    total_documents: int
    completed: int
    verified: int
    rejected: int
    failed: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    requests: list[str] = Field(default_factory=list)


class WebhookCreate(BaseModel):
    url: str = Field(..., min_length=1)
    events: list[WebhookEvent] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_EVENTS))


class WebhookOut(BaseModel):
    id: int
    url: str
    secret: str = Field(description="Shown once; use it to verify X-Webhook-Signature")
    events: list[WebhookEvent]
    is_active: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    queue: dict[str, Any]


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_service(request: Request) -> VerificationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return service


def _build_result(req: VerificationRequest) -> ResultResponse:
    """Convert a stored request into the public result schema."""
    base: dict[str, Any] = {
        "system_reference_id": req.system_reference_id,
        "client_reference_id": req.client_reference_id,
        "document_type": req.document_type,
        "status": req.status,
        "created_at": req.created_at,
        "processed_at": req.processed_at,
    }
    if not req.status.is_terminal:
        return ResultResponse(**base, message="Document is still being processed. Check back later.")

    raw = req.raw_response or {}
    wrong_document = bool(raw.get("wrong_document"))
    return ResultResponse(
        **base,
        confidence=req.confidence,
        risk_score=req.risk_score,
        extracted_data=req.extracted_data,
        issues=req.issues,
        wrong_document=wrong_document,
        detected_document_type=raw.get("detected_document_type") if wrong_document else None,
        expected_document_type=(
            raw.get("expected_document_type") or req.document_type if wrong_document else None
        ),
        is_genuine=raw.get("is_genuine") is not False if raw else None,
        authenticity_checks=raw.get("authenticity_checks") or {},
        fraud_indicators=raw.get("fraud_indicators") or [],
        data_consistency=raw.get("data_consistency") or {},
    )


# ─── App Factory ─────────────────────────────────────────────────────


def create_app(service_factory: ServiceFactory = VerificationService.from_settings) -> FastAPI:
    """Build the FastAPI app; the service is created in the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = load_settings()
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        service = service_factory(settings)
        await service.start()
        app.state.service = service
        yield
        app.state.service = None
        await service.stop()

    app = FastAPI(
        title="Document Verifier API",
        description=(
            "Asynchronous document verification. AI extraction, deterministic "
            "validation, rule-based scoring and signed webhook notifications."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(VerificationError)
    async def _verification_error(request: Request, exc: VerificationError) -> JSONResponse:
        status = next(
            (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
        )
        return JSONResponse(
            status_code=status,
            content={"error": exc.code, "message": str(exc), "details": exc.details},
        )

    # ─── Endpoints ───────────────────────────────────────────────────

    @app.post("/v1/verify", status_code=202, tags=["Verification"])
    async def submit_document(
        body: VerifyRequest, request: Request, owner: str = Header(..., alias="X-Owner-Id")
    ) -> SubmitResponse:
        """Accept a document for verification. The verdict arrives later."""
        service = _get_service(request)
        created = await service.submit(
            owner, body.document_type, body.file_url, body.metadata, body.reference_id
        )
        return SubmitResponse(
            system_reference_id=created.system_reference_id,
            client_reference_id=created.client_reference_id,
            status=created.status,
            message="Document accepted for verification",
        )

    @app.get("/v1/status/{reference}", tags=["Verification"])
    async def get_status(
        reference: str, request: Request, owner: str = Header(..., alias="X-Owner-Id")
    ) -> StatusResponse:
        req = await _get_service(request).get_request(owner, reference)
        return StatusResponse.model_validate(req, from_attributes=True)

    @app.get("/v1/result/{reference}", tags=["Verification"])
    async def get_result(
        reference: str, request: Request, owner: str = Header(..., alias="X-Owner-Id")
    ) -> ResultResponse:
        req = await _get_service(request).get_request(owner, reference)
        return _build_result(req)

    @app.post("/v1/reprocess/{reference}", status_code=202, tags=["Verification"])
    async def reprocess(
        reference: str, request: Request, owner: str = Header(..., alias="X-Owner-Id")
    ) -> SubmitResponse:
        """Clear the previous verdict and queue the document again (409 while in flight)."""
        req = await _get_service(request).reprocess(owner, reference)
        return SubmitResponse(
            system_reference_id=req.system_reference_id,
            client_reference_id=req.client_reference_id,
            status=req.status,
            message="Document queued for reprocessing",
        )

    @app.post("/v1/bulk", status_code=202, tags=["Bulk"])
    async def submit_bulk(
        body: BulkRequest, request: Request, owner: str = Header(..., alias="X-Owner-Id")
    ) -> BulkResponse:
        service = _get_service(request)
        job = await service.submit_bulk(
            owner,
            [d.model_dump() for d in body.documents],
            body.callback_url,
            body.metadata,
        )
        refs = await service.store.bulk_item_references(job.id)
        return BulkResponse(**job.model_dump(), requests=refs)

    @app.get("/v1/bulk/{bulk_id}", tags=["Bulk"])
    async def get_bulk(
        bulk_id: str, request: Request, owner: str = Header(..., alias="X-Owner-Id")
    ) -> BulkResponse:
        service = _get_service(request)
        job = await service.get_bulk_job(owner, bulk_id)
        refs = await service.store.bulk_item_references(job.id)
        return BulkResponse(**job.model_dump(), requests=refs)

    @app.post("/v1/webhooks", status_code=201, tags=["Webhooks"])
    async def create_webhook(
        body: WebhookCreate, request: Request, owner: str = Header(..., alias="X-Owner-Id")
    ) -> WebhookOut:
        hook = await _get_service(request).register_webhook(owner, body.url, body.events)
        return WebhookOut.model_validate(hook, from_attributes=True)

    @app.get("/health", tags=["System"])
    async def health_check(request: Request) -> HealthResponse:
        service = _get_service(request)
        return HealthResponse(status="healthy", version=__version__, queue=service.queue.status())

    return app


app = create_app()
