"""
Durable store backed by SQLite.

One connection is shared by the whole process and guarded by a lock;
every public method is a coroutine that runs its SQL on a worker thread
so the event loop never blocks on disk.

Invariants enforced here rather than by callers:
  - a request is claimed for processing only if it is still 'accepted'
  - a request is re-armed for reprocessing only from a terminal state
  - webhook deliveries and audit records are append-only
"""

from __future__ import annotations

import asyncio
import json
import secrets
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .exceptions import StorageError
from .models import (
    DEFAULT_WEBHOOK_EVENTS,
    AuditAction,
    AuditRecord,
    BulkJob,
    BulkStatus,
    DeliveryStatus,
    DocumentTypeConfig,
    RequestStatus,
    VerificationRequest,
    Webhook,
    WebhookDelivery,
    WebhookEvent,
)

# ─── Schema ──────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS document_types (
    code TEXT NOT NULL,
    owner TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL,
    required_fields TEXT NOT NULL,
    validation_rules TEXT NOT NULL,
    allowed_formats TEXT NOT NULL,
    max_size_mb INTEGER NOT NULL,
    PRIMARY KEY (code, owner)
);

CREATE TABLE IF NOT EXISTS verification_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    system_reference_id TEXT NOT NULL UNIQUE,
    client_reference_id TEXT,
    owner TEXT NOT NULL,
    document_type TEXT NOT NULL,
    file_url TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'accepted',
    confidence REAL,
    risk_score REAL,
    extracted_data TEXT NOT NULL DEFAULT '{}',
    issues TEXT NOT NULL DEFAULT '[]',
    raw_response TEXT,
    created_at TEXT NOT NULL,
    processed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_vr_status ON verification_requests(status, created_at);

CREATE TABLE IF NOT EXISTS bulk_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bulk_id TEXT NOT NULL UNIQUE,
    owner TEXT NOT NULL,
    total_documents INTEGER NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    verified INTEGER NOT NULL DEFAULT 0,
    rejected INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'queued',
    callback_url TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS bulk_job_items (
    bulk_job_id INTEGER NOT NULL REFERENCES bulk_jobs(id),
    verification_request_id INTEGER NOT NULL REFERENCES verification_requests(id),
    PRIMARY KEY (bulk_job_id, verification_request_id)
);

CREATE TABLE IF NOT EXISTS webhooks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    url TEXT NOT NULL,
    secret TEXT NOT NULL,
    events TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_triggered_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS webhook_deliveries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    webhook_id INTEGER NOT NULL REFERENCES webhooks(id),
    verification_request_id INTEGER,
    event TEXT NOT NULL,
    payload TEXT NOT NULL,
    response_status INTEGER,
    response_body TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT,
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
"""

# Columns update_request() is allowed to touch
_REQUEST_FIELDS = frozenset({
    "confidence", "risk_score", "extracted_data", "issues", "raw_response", "processed_at",
})
_JSON_REQUEST_FIELDS = frozenset({"extracted_data", "issues", "raw_response"})


# ─── Identifiers ─────────────────────────────────────────────────────


def _base36(n: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    out = ""
    while n:
        n, rem = divmod(n, 36)
        out = digits[rem] + out
    return out or "0"


def generate_reference(prefix: str) -> str:
    """'DOC' or 'BULK' + base36 millisecond timestamp + 8 random hex chars."""
    return f"{prefix}{_base36(int(time.time() * 1000))}{secrets.token_hex(4).upper()}"


def generate_secret() -> str:
    return "whsec_" + secrets.token_hex(24)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ─── Store ───────────────────────────────────────────────────────────


class SQLiteStore:
    """Persistence for requests, document types, bulk jobs, webhooks and audit.

    Usage:
        store = SQLiteStore(":memory:")
        req = await store.create_request("acme", "pan", "https://...")
    """

    def __init__(self, db_path: str = "doc_verifier.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ─── Low-level helpers ───────────────────────────────────────────

    def _execute_sync(self, sql: str, params: Iterable[Any]) -> sqlite3.Cursor:
        with self._lock, self._conn:
            return self._conn.execute(sql, tuple(params))

    def _fetch_sync(self, sql: str, params: Iterable[Any]) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    async def _execute(self, sql: str, *params: Any) -> sqlite3.Cursor:
        return await asyncio.to_thread(self._execute_sync, sql, params)

    async def _fetch_all(self, sql: str, *params: Any) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._fetch_sync, sql, params)

    async def _fetch_one(self, sql: str, *params: Any) -> Optional[sqlite3.Row]:
        rows = await self._fetch_all(sql, *params)
        return rows[0] if rows else None

    # ─── Verification Requests ───────────────────────────────────────

    async def create_request(
        self,
        owner: str,
        document_type: str,
        file_url: str,
        metadata: Optional[dict[str, Any]] = None,
        client_reference_id: Optional[str] = None,
    ) -> VerificationRequest:
        cur = await self._execute(
            "INSERT INTO verification_requests "
            "(system_reference_id, client_reference_id, owner, document_type, file_url, "
            "metadata, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            generate_reference("DOC"),
            client_reference_id,
            owner,
            document_type,
            file_url,
            json.dumps(metadata or {}),
            RequestStatus.ACCEPTED.value,
            _ts(_now()),
        )
        created = await self.get_request(cur.lastrowid)
        if created is None:
            raise StorageError("Verification request was not persisted", {"owner": owner})
        return created

    async def get_request(self, request_id: int) -> Optional[VerificationRequest]:
        row = await self._fetch_one("SELECT * FROM verification_requests WHERE id = ?", request_id)
        return _row_to_request(row) if row else None

    async def find_by_reference(
        self, system_reference_id: str, owner: Optional[str] = None
    ) -> Optional[VerificationRequest]:
        if owner is None:
            row = await self._fetch_one(
                "SELECT * FROM verification_requests WHERE system_reference_id = ?",
                system_reference_id,
            )
        else:
            row = await self._fetch_one(
                "SELECT * FROM verification_requests WHERE system_reference_id = ? AND owner = ?",
                system_reference_id,
                owner,
            )
        return _row_to_request(row) if row else None

    async def claim_request(self, request_id: int) -> bool:
        """accepted → processing. False if another worker got there first."""
        cur = await self._execute(
            "UPDATE verification_requests SET status = ? WHERE id = ? AND status = ?",
            RequestStatus.PROCESSING.value,
            request_id,
            RequestStatus.ACCEPTED.value,
        )
        return cur.rowcount == 1

    async def update_status(
        self, request_id: int, status: RequestStatus, **fields: Any
    ) -> None:
        """Set status plus any of the scoring columns in one statement."""
        unknown = set(fields) - _REQUEST_FIELDS
        if unknown:
            raise ValueError(f"Unknown request fields: {sorted(unknown)}")

        assignments = ["status = ?"]
        values: list[Any] = [status.value]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            if name in _JSON_REQUEST_FIELDS:
                values.append(None if value is None else json.dumps(value))
            elif name == "processed_at":
                values.append(_ts(value))
            else:
                values.append(value)
        values.append(request_id)
        await self._execute(
            f"UPDATE verification_requests SET {', '.join(assignments)} WHERE id = ?", *values
        )

    async def reset_for_reprocess(self, request_id: int) -> bool:
        """Clear scoring fields and return a terminal request to 'accepted'."""
        terminal = [s.value for s in RequestStatus if s.is_terminal]
        cur = await self._execute(
            "UPDATE verification_requests SET status = ?, confidence = NULL, risk_score = NULL, "
            "extracted_data = '{}', issues = '[]', raw_response = NULL, processed_at = NULL "
            f"WHERE id = ? AND status IN ({', '.join('?' * len(terminal))})",
            RequestStatus.ACCEPTED.value,
            request_id,
            *terminal,
        )
        return cur.rowcount == 1

    async def list_pending(self, limit: int) -> list[VerificationRequest]:
        rows = await self._fetch_all(
            "SELECT * FROM verification_requests WHERE status = ? "
            "ORDER BY created_at, id LIMIT ?",
            RequestStatus.ACCEPTED.value,
            limit,
        )
        return [_row_to_request(r) for r in rows]

    async def count_by_status(self, status: RequestStatus) -> int:
        row = await self._fetch_one(
            "SELECT COUNT(*) AS n FROM verification_requests WHERE status = ?", status.value
        )
        return int(row["n"]) if row else 0

    # ─── Document Types ──────────────────────────────────────────────

    async def save_document_type(self, config: DocumentTypeConfig) -> None:
        await self._execute(
            "INSERT OR REPLACE INTO document_types "
            "(code, owner, name, required_fields, validation_rules, allowed_formats, max_size_mb) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            config.code,
            config.owner or "",
            config.name,
            json.dumps(config.required_fields),
            json.dumps(config.validation_rules),
            json.dumps(config.allowed_formats),
            config.max_size_mb,
        )

    async def seed_document_types(self, configs: Iterable[DocumentTypeConfig]) -> int:
        count = 0
        for config in configs:
            await self.save_document_type(config.model_copy(update={"owner": None}))
            count += 1
        return count

    async def find_document_type(
        self, code: str, owner: Optional[str] = None
    ) -> Optional[DocumentTypeConfig]:
        """Owner-scoped definition first, then the global one."""
        row = await self._fetch_one(
            "SELECT * FROM document_types WHERE code = ? AND owner IN (?, '') "
            "ORDER BY owner = '' LIMIT 1",
            code,
            owner or "",
        )
        if row is None:
            return None
        return DocumentTypeConfig(
            code=row["code"],
            name=row["name"],
            owner=row["owner"] or None,
            required_fields=json.loads(row["required_fields"]),
            validation_rules=json.loads(row["validation_rules"]),
            allowed_formats=json.loads(row["allowed_formats"]),
            max_size_mb=row["max_size_mb"],
        )

    # ─── Bulk Jobs ───────────────────────────────────────────────────

    async def create_bulk_job(
        self,
        owner: str,
        total_documents: int,
        callback_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> BulkJob:
        cur = await self._execute(
            "INSERT INTO bulk_jobs (bulk_id, owner, total_documents, status, callback_url, "
            "metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            generate_reference("BULK"),
            owner,
            total_documents,
            BulkStatus.QUEUED.value,
            callback_url,
            json.dumps(metadata or {}),
            _ts(_now()),
        )
        job = await self.get_bulk_job(cur.lastrowid)
        if job is None:
            raise StorageError("Bulk job was not persisted", {"owner": owner})
        return job

    async def add_bulk_item(self, bulk_job_id: int, request_id: int) -> None:
        await self._execute(
            "INSERT OR IGNORE INTO bulk_job_items (bulk_job_id, verification_request_id) "
            "VALUES (?, ?)",
            bulk_job_id,
            request_id,
        )

    async def get_bulk_job(self, bulk_job_id: int) -> Optional[BulkJob]:
        row = await self._fetch_one("SELECT * FROM bulk_jobs WHERE id = ?", bulk_job_id)
        return _row_to_bulk(row) if row else None

    async def find_bulk_job(self, bulk_id: str, owner: Optional[str] = None) -> Optional[BulkJob]:
        row = await self._fetch_one("SELECT * FROM bulk_jobs WHERE bulk_id = ?", bulk_id)
        if row is None or (owner is not None and row["owner"] != owner):
            return None
        return _row_to_bulk(row)

    async def bulk_job_for_request(self, request_id: int) -> Optional[BulkJob]:
        row = await self._fetch_one(
            "SELECT b.* FROM bulk_jobs b JOIN bulk_job_items i ON i.bulk_job_id = b.id "
            "WHERE i.verification_request_id = ? LIMIT 1",
            request_id,
        )
        return _row_to_bulk(row) if row else None

    async def bulk_item_statuses(self, bulk_job_id: int) -> list[RequestStatus]:
        rows = await self._fetch_all(
            "SELECT r.status FROM verification_requests r "
            "JOIN bulk_job_items i ON i.verification_request_id = r.id "
            "WHERE i.bulk_job_id = ? ORDER BY r.id",
            bulk_job_id,
        )
        return [RequestStatus(r["status"]) for r in rows]

    async def bulk_item_references(self, bulk_job_id: int) -> list[str]:
        rows = await self._fetch_all(
            "SELECT r.system_reference_id FROM verification_requests r "
            "JOIN bulk_job_items i ON i.verification_request_id = r.id "
            "WHERE i.bulk_job_id = ? ORDER BY r.id",
            bulk_job_id,
        )
        return [r["system_reference_id"] for r in rows]

    async def update_bulk_progress(
        self,
        bulk_job_id: int,
        *,
        completed: int,
        verified: int,
        rejected: int,
        failed: int,
        status: BulkStatus,
    ) -> None:
        finished = status not in (BulkStatus.QUEUED, BulkStatus.PROCESSING)
        await self._execute(
            "UPDATE bulk_jobs SET completed = ?, verified = ?, rejected = ?, failed = ?, "
            "status = ?, completed_at = ? WHERE id = ?",
            completed,
            verified,
            rejected,
            failed,
            status.value,
            _ts(_now()) if finished else None,
            bulk_job_id,
        )

    # ─── Audit Log ───────────────────────────────────────────────────

    async def log_audit(self, record: AuditRecord) -> None:
        await self._execute(
            "INSERT INTO audit_log (owner, action, resource_type, resource_id, details, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            record.owner,
            record.action.value,
            record.resource_type,
            record.resource_id,
            json.dumps(record.details, default=str),
            _ts(record.created_at or _now()),
        )

    async def list_audit(self, resource_id: Optional[str] = None) -> list[AuditRecord]:
        if resource_id is None:
            rows = await self._fetch_all("SELECT * FROM audit_log ORDER BY id")
        else:
            rows = await self._fetch_all(
                "SELECT * FROM audit_log WHERE resource_id = ? ORDER BY id", resource_id
            )
        return [
            AuditRecord(
                owner=r["owner"],
                action=AuditAction(r["action"]),
                resource_type=r["resource_type"],
                resource_id=r["resource_id"],
                details=json.loads(r["details"]),
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]

    # ─── Webhooks ────────────────────────────────────────────────────

    async def create_webhook(
        self, owner: str, url: str, events: Optional[list[WebhookEvent]] = None
    ) -> Webhook:
        cur = await self._execute(
            "INSERT INTO webhooks (owner, url, secret, events, created_at) VALUES (?, ?, ?, ?, ?)",
            owner,
            url,
            generate_secret(),
            json.dumps([e.value for e in (events or DEFAULT_WEBHOOK_EVENTS)]),
            _ts(_now()),
        )
        hook = await self.get_webhook(cur.lastrowid)
        if hook is None:
            raise StorageError("Webhook was not persisted", {"owner": owner})
        return hook

    async def get_webhook(self, webhook_id: int) -> Optional[Webhook]:
        row = await self._fetch_one("SELECT * FROM webhooks WHERE id = ?", webhook_id)
        return _row_to_webhook(row) if row else None

    async def list_webhooks(self, owner: str) -> list[Webhook]:
        rows = await self._fetch_all("SELECT * FROM webhooks WHERE owner = ? ORDER BY id", owner)
        return [_row_to_webhook(r) for r in rows]

    async def update_webhook(
        self,
        webhook_id: int,
        owner: str,
        *,
        url: Optional[str] = None,
        events: Optional[list[WebhookEvent]] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[Webhook]:
        hook = await self.get_webhook(webhook_id)
        if hook is None or hook.owner != owner:
            return None
        await self._execute(
            "UPDATE webhooks SET url = ?, events = ?, is_active = ? WHERE id = ?",
            url if url is not None else hook.url,
            json.dumps([e.value for e in (events if events is not None else hook.events)]),
            int(is_active if is_active is not None else hook.is_active),
            webhook_id,
        )
        return await self.get_webhook(webhook_id)

    async def deactivate_webhook(self, webhook_id: int, owner: str) -> bool:
        return await self.update_webhook(webhook_id, owner, is_active=False) is not None

    async def active_webhooks(
        self, owner: str, event: WebhookEvent, failure_limit: int
    ) -> list[Webhook]:
        """Active, subscribed to ``event``, and under the failure limit."""
        rows = await self._fetch_all(
            "SELECT * FROM webhooks WHERE owner = ? AND is_active = 1 AND failure_count < ? "
            "ORDER BY id",
            owner,
            failure_limit,
        )
        hooks = [_row_to_webhook(r) for r in rows]
        return [h for h in hooks if event in h.events]

    async def record_delivery(
        self,
        webhook_id: int,
        event: WebhookEvent,
        payload: dict[str, Any],
        status: DeliveryStatus,
        *,
        verification_request_id: Optional[int] = None,
        response_status: Optional[int] = None,
        response_body: Optional[str] = None,
    ) -> None:
        now = _ts(_now())
        await self._execute(
            "INSERT INTO webhook_deliveries (webhook_id, verification_request_id, event, payload, "
            "response_status, response_body, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            webhook_id,
            verification_request_id,
            event.value,
            json.dumps(payload),
            response_status,
            response_body,
            status.value,
            now,
        )
        await self._execute("UPDATE webhooks SET last_triggered_at = ? WHERE id = ?", now, webhook_id)

    async def increment_failure_count(self, webhook_id: int) -> None:
        await self._execute(
            "UPDATE webhooks SET failure_count = failure_count + 1 WHERE id = ?", webhook_id
        )

    async def reset_failure_count(self, webhook_id: int) -> None:
        await self._execute("UPDATE webhooks SET failure_count = 0 WHERE id = ?", webhook_id)

    async def list_deliveries(self, webhook_id: int, limit: int = 50) -> list[WebhookDelivery]:
        rows = await self._fetch_all(
            "SELECT * FROM webhook_deliveries WHERE webhook_id = ? ORDER BY id DESC LIMIT ?",
            webhook_id,
            limit,
        )
        return [
            WebhookDelivery(
                id=r["id"],
                webhook_id=r["webhook_id"],
                verification_request_id=r["verification_request_id"],
                event=WebhookEvent(r["event"]),
                payload=json.loads(r["payload"]),
                response_status=r["response_status"],
                response_body=r["response_body"],
                status=DeliveryStatus(r["status"]),
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]


# ─── Row Mappers ─────────────────────────────────────────────────────


def _row_to_request(row: sqlite3.Row) -> VerificationRequest:
    return VerificationRequest(
        id=row["id"],
        system_reference_id=row["system_reference_id"],
        client_reference_id=row["client_reference_id"],
        owner=row["owner"],
        document_type=row["document_type"],
        file_url=row["file_url"],
        metadata=json.loads(row["metadata"]),
        status=RequestStatus(row["status"]),
        confidence=row["confidence"],
        risk_score=row["risk_score"],
        extracted_data=json.loads(row["extracted_data"]),
        issues=json.loads(row["issues"]),
        raw_response=json.loads(row["raw_response"]) if row["raw_response"] else None,
        created_at=_dt(row["created_at"]),
        processed_at=_dt(row["processed_at"]),
    )


def _row_to_bulk(row: sqlite3.Row) -> BulkJob:
    return BulkJob(
        id=row["id"],
        bulk_id=row["bulk_id"],
        owner=row["owner"],
        total_documents=row["total_documents"],
        completed=row["completed"],
        verified=row["verified"],
        rejected=row["rejected"],
        failed=row["failed"],
        status=BulkStatus(row["status"]),
        callback_url=row["callback_url"],
        metadata=json.loads(row["metadata"]),
        created_at=_dt(row["created_at"]),
        completed_at=_dt(row["completed_at"]),
    )


def _row_to_webhook(row: sqlite3.Row) -> Webhook:
    return Webhook(
        id=row["id"],
        owner=row["owner"],
        url=row["url"],
        secret=row["secret"],
        events=[WebhookEvent(e) for e in json.loads(row["events"])],
        is_active=bool(row["is_active"]),
        failure_count=row["failure_count"],
        last_triggered_at=_dt(row["last_triggered_at"]),
        created_at=_dt(row["created_at"]),
    )
