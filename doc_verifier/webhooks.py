"""
Webhook dispatcher: signed verdict notifications.

Each matching subscription gets its own POST; one endpoint failing never
affects another. Every attempt is written to the delivery log. There is
no re-delivery: a failed attempt bumps the subscription's failure_count,
and subscriptions at or over the failure limit stop receiving events
until something outside this process resets them.

Receivers authenticate us by recomputing:
    hex(HMAC-SHA256(secret, raw_request_body))
and comparing it with the X-Webhook-Signature header.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .models import BulkJob, DeliveryStatus, VerificationRequest, Webhook, WebhookEvent
from .store import SQLiteStore

logger = logging.getLogger(__name__)

USER_AGENT = "DocumentVerificationPlatform/1.0"
MAX_RESPONSE_BODY = 1000


def sign_payload(body: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact bytes that go on the wire."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def serialize_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Payload Builders ────────────────────────────────────────────────


def document_payload(
    event: WebhookEvent, request: VerificationRequest, **extra: Any
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": event.value,
        "reference_id": request.system_reference_id,
        "client_reference_id": request.client_reference_id,
        "document_type": request.document_type,
        "status": request.status.value,
        "confidence": request.confidence,
        "risk_score": request.risk_score,
        "timestamp": _timestamp(),
    }
    payload.update(extra)
    return payload


def bulk_payload(job: BulkJob) -> dict[str, Any]:
    return {
        "event": WebhookEvent.BULK_COMPLETED.value,
        "bulk_id": job.bulk_id,
        "status": job.status.value,
        "total": job.total_documents,
        "completed": job.completed,
        "verified": job.verified,
        "rejected": job.rejected,
        "failed": job.failed,
        "timestamp": _timestamp(),
    }


# ─── Dispatcher ──────────────────────────────────────────────────────


class WebhookDispatcher:
    """Fan a single event out to every subscribed endpoint of one owner."""

    def __init__(
        self,
        store: SQLiteStore,
        client: httpx.AsyncClient,
        *,
        failure_limit: int = 10,
        timeout: float = 10.0,
    ):
        self.store = store
        self.client = client
        self.failure_limit = failure_limit
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    async def trigger(
        self,
        owner: str,
        event: WebhookEvent,
        payload: dict[str, Any],
        *,
        request_id: Optional[int] = None,
    ) -> int:
        """Deliver to all matching subscriptions. Returns how many were attempted."""
        hooks = await self.store.active_webhooks(owner, event, self.failure_limit)
        if not hooks:
            return 0

        body = serialize_payload(payload)
        outcomes = await asyncio.gather(
            *(self._deliver(hook, event, payload, body, request_id) for hook in hooks),
            return_exceptions=True,
        )
        for hook, outcome in zip(hooks, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Webhook %s bookkeeping failed: %s", hook.id, outcome)
        return len(hooks)

    def fire(
        self,
        owner: str,
        event: WebhookEvent,
        payload: dict[str, Any],
        *,
        request_id: Optional[int] = None,
    ) -> asyncio.Task:
        """Schedule trigger() without waiting for it; errors are logged, never raised."""
        task = asyncio.create_task(self.trigger(owner, event, payload, request_id=request_id))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def join(self) -> None:
        """Wait for every in-flight fire() to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Webhook dispatch failed: %s", task.exception())

    async def _deliver(
        self,
        hook: Webhook,
        event: WebhookEvent,
        payload: dict[str, Any],
        body: bytes,
        request_id: Optional[int],
    ) -> DeliveryStatus:
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, hook.secret),
            "X-Webhook-Event": event.value,
            "X-Webhook-Timestamp": _timestamp(),
            "User-Agent": USER_AGENT,
        }

        try:
            response = await self.client.post(
                hook.url, content=body, headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.warning("Webhook %s → %s failed: %s", hook.id, hook.url, e)
            await self.store.record_delivery(
                hook.id,
                event,
                payload,
                DeliveryStatus.FAILED,
                verification_request_id=request_id,
                response_body=(str(e) or type(e).__name__)[:MAX_RESPONSE_BODY],
            )
            await self.store.increment_failure_count(hook.id)
            return DeliveryStatus.FAILED

        ok = 200 <= response.status_code < 300
        status = DeliveryStatus.DELIVERED if ok else DeliveryStatus.FAILED
        await self.store.record_delivery(
            hook.id,
            event,
            payload,
            status,
            verification_request_id=request_id,
            response_status=response.status_code,
            response_body=response.text[:MAX_RESPONSE_BODY],
        )
        if ok:
            await self.store.reset_failure_count(hook.id)
        else:
            await self.store.increment_failure_count(hook.id)
        logger.info("Webhook %s %s → HTTP %d", hook.id, event.value, response.status_code)
        return status
