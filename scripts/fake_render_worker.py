#!/usr/bin/env python3
"""
Stand-in render backend for local runs.

Accepts render requests, pretends to work for a few seconds while sending
heartbeats, then reports back through the worker SDK. Compositions named
"FailComposition" fail instead.

    uvicorn scripts.fake_render_worker:app --port 9000
"""
import asyncio
import logging
import os
from typing import Any
from uuid import uuid4

from fastapi import FastAPI

from worker_sdk import CallbackClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("fake_render_worker")

ORCHESTRATOR_URL = os.getenv("ORCHESTRATOR_URL", "http://localhost:8000")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET")
RENDER_SECONDS = float(os.getenv("FAKE_RENDER_SECONDS", "3"))

app = FastAPI(title="Fake Render Worker")
renders: dict[str, dict[str, Any]] = {}
_tasks: set[asyncio.Task] = set()

async def _render(render_id: str, request: dict[str, Any]):
    token = request["webhook"]["customData"]["continuationToken"]
    callbacks = CallbackClient(ORCHESTRATOR_URL, secret=WEBHOOK_SECRET)
    steps = 4
    try:
        for step in range(1, steps + 1):
            await asyncio.sleep(RENDER_SECONDS / steps)
            renders[render_id]["overallProgress"] = step / steps
            await callbacks.heartbeat(token, progress=100 * step / steps)

        if request.get("compositionId") == "FailComposition":
            renders[render_id].update(done=True, fatalErrorEncountered=True, errors=[{"message": "Composition failed"}])
            await callbacks.fail(token, ["Composition failed"], worker_handle=render_id)
        else:
            output = f"s3://fake-renders/{request['outName']}"
            renders[render_id].update(done=True, outputFile=output)
            await callbacks.succeed(token, output, worker_handle=render_id)
    finally:
        await callbacks.close()

@app.post("/renders")
async def start_render(request: dict[str, Any]):
    render_id = str(uuid4())
    renders[render_id] = {"done": False, "overallProgress": 0, "fatalErrorEncountered": False, "errors": []}
    task = asyncio.create_task(_render(render_id, request))
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    logger.info("Render %s started for %s", render_id, request.get("outName"))
    return {"renderId": render_id, "bucketName": "fake-renders"}

@app.get("/renders/{render_id}")
async def get_render(render_id: str):
    return renders.get(render_id) or {"done": False, "overallProgress": 0}
