"""
Pydantic models for verification data: strict typing at every boundary.

The collaborator's JSON is coerced into these models before any scoring
happens. Extracted fields stay a free-form ordered mapping because the
schema changes per document type; everything around them is typed.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

FieldValue = Union[str, int, float, bool, None]
ExtractedData = dict[str, FieldValue]


# ─── Enumerations ───────────────────────────────────────────────────


class RequestStatus(str, Enum):
    """Lifecycle of a VerificationRequest: accepted → processing → terminal."""

    ACCEPTED = "accepted"
    PROCESSING = "processing"
    VERIFIED = "verified"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.VERIFIED, RequestStatus.REJECTED, RequestStatus.FAILED)


class BulkStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class WebhookEvent(str, Enum):
    DOCUMENT_VERIFIED = "document.verified"
    DOCUMENT_REJECTED = "document.rejected"
    DOCUMENT_FAILED = "document.failed"
    BULK_COMPLETED = "bulk.completed"


DEFAULT_WEBHOOK_EVENTS: list[WebhookEvent] = [
    WebhookEvent.DOCUMENT_VERIFIED,
    WebhookEvent.DOCUMENT_REJECTED,
    WebhookEvent.DOCUMENT_FAILED,
]


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class ImageQuality(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    SUSPICIOUS = "suspicious"


class AuditAction(str, Enum):
    """Outcome categories written to the audit log after each run."""

    PROCESSED = "document.processed"
    WRONG_TYPE = "document.wrong_type"
    FRAUD_SUSPECTED = "document.fraud_suspected"
    TAMPERING_SUSPECTED = "document.tampering_suspected"
    VALIDATION_FAILED = "document.validation_failed"
    FAILED = "document.failed"
    SUBMITTED = "verification.submitted"
    REPROCESSED = "verification.reprocessed"


# ─── Collaborator Response ──────────────────────────────────────────


class AuthenticityChecks(BaseModel):
    """Structured authenticity signals reported by the extraction collaborator.

    ``None`` means "not assessed" and never triggers a penalty.
    """

    tampering_detected: Optional[bool] = None
    has_security_features: Optional[bool] = None
    font_consistency: Optional[bool] = None
    layout_matches_official: Optional[bool] = None
    photo_integrity: Optional[bool] = None
    is_original_document: Optional[bool] = None
    image_quality: Optional[ImageQuality] = None


class DataConsistency(BaseModel):
    """Consistency flags; the deterministic validator's summary is merged in here."""

    dates_valid: Optional[bool] = None
    id_format_valid: Optional[bool] = None
    logical_checks_passed: Optional[bool] = None
    data_consistent: Optional[bool] = None
    details: Optional[str] = None


class MetadataMatch(BaseModel):
    matches: Optional[bool] = None
    extracted: Optional[str] = None
    expected: Optional[str] = None


class ExtractionResult(BaseModel):
    """What the extraction collaborator returns for one document."""

    document_type_match: bool = True
    detected_document_type: Optional[str] = None
    expected_document_type: Optional[str] = None
    document_type_mismatch_reason: Optional[str] = None
    status: RequestStatus = RequestStatus.VERIFIED
    confidence: float = 0.0
    risk_score: float = 0.0
    extracted_data: ExtractedData = Field(default_factory=dict)
    issues: list[str] = Field(default_factory=list)
    fraud_indicators: list[str] = Field(default_factory=list)
    metadata_match: dict[str, MetadataMatch] = Field(default_factory=dict)
    is_genuine: Optional[bool] = None
    authenticity_checks: AuthenticityChecks = Field(default_factory=AuthenticityChecks)
    data_consistency: DataConsistency = Field(default_factory=DataConsistency)
    remarks: str = ""


# ─── Deterministic Validation Output ────────────────────────────────


class CheckResult(BaseModel):
    """Outcome of one of the four validator checks."""

    valid: bool
    issues: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class ValidationSummary(BaseModel):
    dates_valid: bool
    id_format_valid: bool
    logical_checks_passed: bool
    data_consistent: bool
    total_checks: int = 4
    checks_passed: int
    details: str


class ValidationOutcome(BaseModel):
    """Aggregated validator output. Issues are advisory; the rule engine decides."""

    passed: bool
    issues: list[str] = Field(default_factory=list)
    results: dict[str, CheckResult] = Field(default_factory=dict)
    failed_checks: list[str] = Field(default_factory=list)
    summary: Optional[ValidationSummary] = None


# ─── Rule Engine Output ─────────────────────────────────────────────


class RuleResult(BaseModel):
    """Final verdict produced by the rule engine."""

    status: RequestStatus
    confidence: float
    risk_score: float
    issues: list[str] = Field(default_factory=list)
    validation_results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    fraud_indicators: list[str] = Field(default_factory=list)
    wrong_document: bool = False
    detected_document_type: Optional[str] = None
    expected_document_type: Optional[str] = None


# ─── Persistent Entities ────────────────────────────────────────────


class DocumentTypeConfig(BaseModel):
    """Per-document-type configuration. ``owner=None`` marks a global definition."""

    code: str
    name: str = ""
    owner: Optional[str] = None
    required_fields: list[str] = Field(default_factory=list)
    validation_rules: dict[str, str] = Field(default_factory=dict)
    allowed_formats: list[str] = Field(default_factory=lambda: ["jpg", "png", "pdf"])
    max_size_mb: int = 5


class VerificationRequest(BaseModel):
    id: int
    system_reference_id: str
    client_reference_id: Optional[str] = None
    owner: str
    document_type: str
    file_url: str
    metadata: ExtractedData = Field(default_factory=dict)
    status: RequestStatus = RequestStatus.ACCEPTED
    confidence: Optional[float] = None
    risk_score: Optional[float] = None
    extracted_data: ExtractedData = Field(default_factory=dict)
    issues: list[str] = Field(default_factory=list)
    raw_response: Optional[dict[str, Any]] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class BulkJob(BaseModel):
    """Aggregate over many requests. Counts and status are always derived."""

    id: int
    bulk_id: str
    owner: str
    total_documents: int
    completed: int = 0
    verified: int = 0
    rejected: int = 0
    failed: int = 0
    status: BulkStatus = BulkStatus.QUEUED
    callback_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    completed_at: Optional[datetime] = None


class Webhook(BaseModel):
    id: int
    owner: str
    url: str
    secret: str
    events: list[WebhookEvent] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_EVENTS))
    is_active: bool = True
    failure_count: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: datetime


class WebhookDelivery(BaseModel):
    """Append-only log entry for a single delivery attempt."""

    id: int
    webhook_id: int
    verification_request_id: Optional[int] = None
    event: WebhookEvent
    payload: dict[str, Any]
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    status: DeliveryStatus
    created_at: datetime


class AuditRecord(BaseModel):
    owner: Optional[str] = None
    action: AuditAction
    resource_type: str = "verification_request"
    resource_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
