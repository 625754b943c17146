from fastapi import APIRouter

from render_orchestrator.api.deps import DbSession, ClientsDep
from render_orchestrator.commands.expire_executions import expire_executions

router = APIRouter()

@router.get("/workflow-definition")
async def get_workflow_definition(clients: ClientsDep):
    definition = clients.definition
    return {
        "digest": definition.digest,
        "definition": definition.model_dump(by_alias=True, exclude_none=True),
    }

@router.post("/sweep")
async def trigger_sweep(session: DbSession, clients: ClientsDep):
    count = await expire_executions(session, clients.definition)
    await session.commit()
    return {"timed_out_count": count}
