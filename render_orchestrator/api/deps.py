from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.container import Clients

def get_clients(request: Request) -> Clients:
    return request.app.state.clients

async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with get_clients(request).database.session() as session:
        yield session

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
ClientsDep = Annotated[Clients, Depends(get_clients)]
