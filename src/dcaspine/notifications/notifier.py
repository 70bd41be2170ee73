"""Execution notifications.

Manifesto:
    Owners want to hear when a purchase went through, when a plan finished,
    and when something keeps failing. None of that may interfere with the
    financial write: notifiers are called after commit, from a side-effect
    worker, and a delivery failure is only ever logged.

Architecture:
    ::

        Notifier (Protocol)
        ├── LogNotifier            structlog line per event
        └── EmailEndpointNotifier  POST {url}/api/send-email (httpx, bearer key)
                                   no URL configured → logs the would-be email

Event kinds:
    executed   one successful purchase, plan still running
    completed  final purchase, plan is COMPLETED
    failed     pricing or ledger failure, slot will be retried
    paused     retry budget exhausted, plan moved to PAUSED

Tags:
    dcaspine, notifications, email, httpx, fire-and-forget

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

import httpx

from dcaspine.core.logging import get_logger

logger = get_logger(__name__)


class EventKind(str, Enum):
    EXECUTED = "executed"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


@dataclass
class ExecutionEvent:
    """Structured details of one execution outcome."""

    kind: EventKind
    plan_id: str
    owner_id: str
    execution_number: int
    total_executions: int
    interval: str
    amount_in: int
    amount_out: Decimal | None = None
    price: Decimal | None = None
    tx_hash: str | None = None
    error: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "plan_id": self.plan_id,
            "owner_id": self.owner_id,
            "execution_number": self.execution_number,
            "total_executions": self.total_executions,
            "interval": self.interval,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out) if self.amount_out is not None else None,
            "price": str(self.price) if self.price is not None else None,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "occurred_at": self.occurred_at.isoformat(),
        }


class Notifier(Protocol):
    """Delivers one event. May raise; callers contain the failure."""

    def notify(self, event: ExecutionEvent) -> None:
        ...


class LogNotifier:
    """Writes each event to the log. Default when no email service is set."""

    def notify(self, event: ExecutionEvent) -> None:
        logger.info("execution_notification", **event.to_dict())


_SUBJECTS = {
    EventKind.EXECUTED: "Your DCA purchase #{n} went through",
    EventKind.COMPLETED: "Your DCA plan is complete",
    EventKind.FAILED: "DCA purchase #{n} could not be executed",
    EventKind.PAUSED: "Your DCA plan has been paused",
}


class EmailEndpointNotifier:
    """Sends events to the email endpoint service.

    Successful purchases use the ``btc-accumulated`` template with
    ``executionDetails``; every other kind is sent as a ``custom`` email
    whose ``templateName`` is the event kind.

    ``resolve_recipient`` maps an owner id to an address. Events whose owner
    resolves to nothing are skipped.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        api_key: str = "",
        timeout: float = 15.0,
        resolve_recipient: Callable[[str], str | None] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.resolve_recipient = resolve_recipient or (lambda owner_id: owner_id)
        self._client = client

    def build_payload(self, event: ExecutionEvent, to: str) -> dict[str, Any]:
        subject = _SUBJECTS[event.kind].format(n=event.execution_number)
        if event.kind in (EventKind.EXECUTED, EventKind.COMPLETED):
            payload: dict[str, Any] = {
                "type": "btc-accumulated" if event.kind is EventKind.EXECUTED else "custom",
                "to": to,
                "name": "there",
                "subject": subject,
                "executionDetails": {
                    "amountIn": str(event.amount_in),
                    "amountOut": str(event.amount_out),
                    "price": str(event.price),
                    "executionNumber": event.execution_number,
                    "totalExecutions": event.total_executions,
                    "planInterval": event.interval,
                    "txHash": event.tx_hash,
                },
            }
            if event.kind is EventKind.COMPLETED:
                payload["templateName"] = event.kind.value
            return payload

        return {
            "type": "custom",
            "to": to,
            "name": "there",
            "subject": subject,
            "templateName": event.kind.value,
            "variables": {
                "planId": event.plan_id,
                "executionNumber": str(event.execution_number),
                "error": event.error or "",
            },
        }

    def notify(self, event: ExecutionEvent) -> None:
        to = self.resolve_recipient(event.owner_id)
        if not to:
            logger.debug("notification_skipped_no_recipient", plan_id=event.plan_id)
            return

        payload = self.build_payload(event, to)
        if not self.base_url:
            logger.info("email_not_sent_no_endpoint", **payload)
            return

        url = f"{self.base_url}/api/send-email"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if self._client is not None:
            response = self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload, headers=headers)
        response.raise_for_status()

        body = response.json()
        if not body.get("success"):
            raise RuntimeError(f"Email endpoint rejected message: {body.get('error')}")
        logger.info("email_sent", plan_id=event.plan_id, kind=event.kind.value, to=to)
