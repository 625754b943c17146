import logging
from typing import Any, Optional, Protocol

import httpx

from render_orchestrator.domain.errors import (
    WorkerRejectedError, WorkerThrottledError, WorkerUnavailableError,
)
from render_orchestrator.domain.models import RenderProgress, WorkerHandle

logger = logging.getLogger(__name__)

class RenderWorker(Protocol):
    async def start_render(
        self,
        job_id: str,
        worker_parameters: dict[str, Any],
        continuation_token: str
    ) -> WorkerHandle: ...

    async def get_render_progress(self, handle: WorkerHandle) -> RenderProgress: ...

class RenderWorkerClient:
    """
    HTTP client for the external render backend.

    The continuation token travels as opaque webhook metadata; the worker
    echoes it back in its completion callback.
    """

    def __init__(
        self,
        base_url: str,
        webhook_url: str,
        default_composition_id: str = "MainComposition",
        default_codec: str = "h264",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.webhook_url = webhook_url
        self.default_composition_id = default_composition_id
        self.default_codec = default_codec
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def build_render_request(self, job_id: str, worker_parameters: dict[str, Any], continuation_token: str) -> dict[str, Any]:
        return {
            "compositionId": worker_parameters.get("compositionId") or self.default_composition_id,
            "inputProps": worker_parameters.get("inputProps", {}),
            "codec": worker_parameters.get("codec") or self.default_codec,
            "outName": f"export-{job_id}.mp4",
            "webhook": {
                "url": self.webhook_url,
                "customData": {"continuationToken": continuation_token, "jobId": job_id},
            },
        }

    async def start_render(self, job_id: str, worker_parameters: dict[str, Any], continuation_token: str) -> WorkerHandle:
        body = self.build_render_request(job_id, worker_parameters, continuation_token)
        try:
            resp = await self.client.post("/renders", json=body)
        except httpx.TransportError as e:
            raise WorkerUnavailableError(f"Render worker unreachable: {e}") from e

        _raise_for_status(resp)

        try:
            data = resp.json()
            handle = WorkerHandle(render_id=str(data["renderId"]), bucket_name=data.get("bucketName"))
        except (ValueError, KeyError, TypeError) as e:
            raise WorkerRejectedError(f"Malformed render worker response: {e}") from e

        logger.info("Render started for job %s: renderId=%s bucket=%s", job_id, handle.render_id, handle.bucket_name)
        return handle

    async def get_render_progress(self, handle: WorkerHandle) -> RenderProgress:
        params = {"bucketName": handle.bucket_name} if handle.bucket_name else None
        try:
            resp = await self.client.get(f"/renders/{handle.render_id}", params=params)
        except httpx.TransportError as e:
            raise WorkerUnavailableError(f"Render worker unreachable: {e}") from e

        _raise_for_status(resp)

        try:
            data = resp.json()
            return RenderProgress(
                done=bool(data.get("done")),
                failed=bool(data.get("fatalErrorEncountered")),
                progress=_as_percent(data.get("overallProgress")),
                output_location=data.get("outputFile"),
                errors=[e if isinstance(e, dict) else {"message": str(e)} for e in data.get("errors") or []],
            )
        except (ValueError, AttributeError) as e:
            raise WorkerRejectedError(f"Malformed render progress response: {e}") from e

    async def close(self):
        await self.client.aclose()

def _raise_for_status(resp: httpx.Response):
    if resp.status_code == 429:
        raise WorkerThrottledError(f"Render worker throttled the request: {resp.text[:200]}")
    if resp.status_code >= 500:
        raise WorkerUnavailableError(f"Render worker error {resp.status_code}: {resp.text[:200]}")
    if resp.status_code >= 400:
        raise WorkerRejectedError(f"Render worker rejected the request ({resp.status_code}): {resp.text[:200]}")

def _as_percent(value) -> Optional[float]:
    # The worker reports 0..1
    if value is None:
        return None
    return round(float(value) * 100, 2)
