import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx

from render_orchestrator.domain.models import utcnow
from render_orchestrator.domain.states import JobStatus

logger = logging.getLogger(__name__)

_TITLES = {
    JobStatus.PROCESSING: "Video Export Started",
    JobStatus.COMPLETED: "Video Export Completed",
    JobStatus.FAILED: "Video Export Failed",
}

@dataclass
class Notification:
    job_id: str
    status: str
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": "export_status",
            "jobId": self.job_id,
            "status": self.status,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

def build_notification(payload: dict[str, Any]) -> Notification:
    """Turns an outbox payload ({jobId, status, outputLocation?, errorDetail?}) into a user notification."""
    status = payload.get("status", "")
    title = _TITLES.get(status, "Video Export Update")

    if status == JobStatus.PROCESSING:
        message = "Your video export has started processing. We'll notify you when it's ready."
    elif status == JobStatus.COMPLETED:
        message = "Your video has been exported successfully and is ready for download."
    elif status == JobStatus.FAILED:
        errors = payload.get("errorDetail") or []
        reason = "; ".join(e.get("message", "") for e in errors if e.get("message")) or "Unknown error occurred"
        message = f"Video export failed: {reason}"
    else:
        message = "Your video export status has been updated."

    return Notification(
        job_id=payload.get("jobId", ""),
        status=status,
        title=title,
        message=message,
        data={k: v for k, v in payload.items() if k in ("outputLocation", "errorDetail")},
    )

class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None: ...

class LoggingNotificationSink:
    """Default sink: notifications only show up in the log."""

    async def send(self, notification: Notification) -> None:
        logger.info("Notification sent: %s", notification.as_dict())

class WebhookNotificationSink:
    """POSTs notifications as JSON, HMAC-signed when a secret is configured."""

    SIGNATURE_HEADER = "X-Notification-Signature"

    def __init__(self, url: str, secret: Optional[str] = None, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.secret = secret
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _serialize_body(self, data: dict[str, Any]) -> bytes:
        return json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")

    def _build_headers(self, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            signature = hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()
            headers[self.SIGNATURE_HEADER] = signature
        return headers

    async def send(self, notification: Notification) -> None:
        body = self._serialize_body(notification.as_dict())
        resp = await self.client.post(self.url, content=body, headers=self._build_headers(body))
        resp.raise_for_status()

    async def close(self):
        await self.client.aclose()
