import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

class CallbackClient:
    """
    Used by a render worker to report back to the orchestrator.

    The continuation token handed to the worker with the render request must
    be echoed verbatim; bodies are signed with the shared webhook secret.
    Every method returns True once the callback was accepted by the
    orchestrator (including stale ones, which are acknowledged without
    effect) and False on delivery failure, so the worker can retry.
    """

    def __init__(
        self,
        base_url: str,
        secret: Optional[str] = None,
        algorithm: str = "sha256",
        signature_header: str = "X-Render-Signature",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.algorithm = algorithm
        self.signature_header = signature_header
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @staticmethod
    def _serialize_body(json_body: Dict[str, Any]) -> bytes:
        # Stable encoding keeps signatures deterministic and payloads compact.
        return json.dumps(json_body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def sign(self, body: bytes) -> str:
        if not self.secret:
            raise ValueError("secret is required to sign callbacks")
        return hmac.new(self.secret.encode("utf-8"), body, getattr(hashlib, self.algorithm)).hexdigest()

    def _build_headers(self, body: bytes) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[self.signature_header] = self.sign(body)
        return headers

    async def _post(self, path: str, json_body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        content = self._serialize_body(json_body)
        try:
            resp = await self.client.post(path, content=content, headers=self._build_headers(content))
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log_fn = logger.info if status_code in (400, 401, 403) else logger.warning
            log_fn("Callback to %s rejected: status=%s", path, status_code)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Callback to %s failed: %s", path, e)
            return None

    async def succeed(self, continuation_token: str, output_location: str, worker_handle: Optional[str] = None) -> bool:
        return await self._post("/api/v1/webhooks/render", {
            "type": "success",
            "continuationToken": continuation_token,
            "outputLocation": output_location,
            "workerHandle": worker_handle,
        }) is not None

    async def fail(self, continuation_token: str, errors: List[str], worker_handle: Optional[str] = None) -> bool:
        return await self._post("/api/v1/webhooks/render", {
            "type": "error",
            "continuationToken": continuation_token,
            "errorDetail": [{"message": e} for e in errors],
            "workerHandle": worker_handle,
        }) is not None

    async def timed_out(self, continuation_token: str, message: str, worker_handle: Optional[str] = None) -> bool:
        return await self._post("/api/v1/webhooks/render", {
            "type": "timeout",
            "continuationToken": continuation_token,
            "errorDetail": [{"message": message}],
            "workerHandle": worker_handle,
        }) is not None

    async def heartbeat(self, continuation_token: str, progress: Optional[float] = None) -> bool:
        body: Dict[str, Any] = {"continuationToken": continuation_token}
        if progress is not None:
            body["progress"] = progress
        return await self._post("/api/v1/webhooks/render/heartbeat", body) is not None

    async def close(self):
        await self.client.aclose()
