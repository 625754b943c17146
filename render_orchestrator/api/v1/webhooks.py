import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, TypeAdapter, ValidationError

from render_orchestrator.api.deps import DbSession, ClientsDep
from render_orchestrator.auth.security import verify_webhook_signature
from render_orchestrator.domain.messages import CompletionCallback, HeartbeatCallback
from render_orchestrator.services.webhook import resolve_callback, record_heartbeat
from render_orchestrator.api.v1.metrics import CALLBACKS_TOTAL

logger = logging.getLogger(__name__)

router = APIRouter()

_callback_adapter = TypeAdapter(CompletionCallback)

class CallbackAck(BaseModel):
    received: bool = True
    resumed: bool

class HeartbeatAck(BaseModel):
    received: bool = True
    accepted: bool
    heartbeat_deadline: Optional[str] = None

@router.post("/render", response_model=CallbackAck)
async def render_callback(session: DbSession, clients: ClientsDep, body: bytes = Depends(verify_webhook_signature)):
    try:
        callback = _callback_adapter.validate_json(body)
    except ValidationError as e:
        CALLBACKS_TOTAL.labels(type="unknown", result="rejected").inc()
        logger.warning("Rejected malformed callback: %s", e.errors(include_url=False, include_input=False))
        raise HTTPException(status_code=400, detail="Malformed callback")

    resumed = await resolve_callback(session, clients.definition, callback)
    if resumed:
        await session.commit()
        CALLBACKS_TOTAL.labels(type=callback.type, result="resumed").inc()
    else:
        await session.rollback()
        CALLBACKS_TOTAL.labels(type=callback.type, result="stale").inc()

    return CallbackAck(resumed=resumed)

@router.post("/render/heartbeat", response_model=HeartbeatAck)
async def render_heartbeat(session: DbSession, clients: ClientsDep, body: bytes = Depends(verify_webhook_signature)):
    try:
        heartbeat = HeartbeatCallback.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Rejected malformed heartbeat: %s", e.errors(include_url=False, include_input=False))
        raise HTTPException(status_code=400, detail="Malformed heartbeat")

    accepted, deadline = await record_heartbeat(session, clients.definition, heartbeat)
    if accepted:
        await session.commit()
    else:
        await session.rollback()
    return HeartbeatAck(accepted=accepted, heartbeat_deadline=deadline)
