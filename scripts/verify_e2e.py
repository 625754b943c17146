#!/usr/bin/env python3
"""
End-to-end smoke check against a running orchestrator wired to
scripts/fake_render_worker.py (RENDER_WORKER_URL=http://localhost:9000).
"""
import asyncio
import os
import sys

import httpx

API_URL = os.getenv("ORCHESTRATOR_URL", "http://localhost:8000")
API_KEY = os.getenv("API_SECRET_KEY")

async def wait_for(client: httpx.AsyncClient, job_id: str, statuses: set[str], attempts: int = 60) -> dict:
    for _ in range(attempts):
        job = (await client.get(f"/api/v1/jobs/{job_id}")).json()
        if job["status"] in statuses:
            return job
        await asyncio.sleep(1)
    raise TimeoutError(f"Job {job_id} stuck in {job['status']}")

async def verify() -> bool:
    headers = {"X-API-Key": API_KEY} if API_KEY else {}
    async with httpx.AsyncClient(base_url=API_URL, headers=headers, timeout=30.0) as client:
        print("Waiting for API to be ready...")
        for _ in range(30):
            try:
                if (await client.get("/health")).status_code == 200:
                    break
            except httpx.TransportError:
                pass
            await asyncio.sleep(1)
        else:
            print("API failed to become ready.")
            return False

        ok = True
        for composition, expected in (("MainComposition", "completed"), ("FailComposition", "failed")):
            resp = await client.post("/api/v1/jobs", json={
                "resourceKey": f"e2e-{composition}",
                "workerParameters": {"compositionId": composition, "inputProps": {"title": "e2e"}},
            })
            if resp.status_code != 202:
                print(f"Failed to create job: {resp.status_code} {resp.text}")
                return False
            job_id = resp.json()["jobId"]
            print(f"Job {job_id} submitted ({composition})")

            job = await wait_for(client, job_id, {"completed", "failed", "canceled"})
            execution = (await client.get(f"/api/v1/jobs/{job_id}/execution")).json()
            print(f"  status={job['status']} state={execution['state']} output={job.get('outputLocation')}")
            if job["status"] != expected:
                print(f"FAILURE: expected {expected}")
                ok = False

        print("SUCCESS" if ok else "FAILURE")
        return ok

if __name__ == "__main__":
    sys.exit(0 if asyncio.run(verify()) else 1)
