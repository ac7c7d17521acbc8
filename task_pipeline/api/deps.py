from dataclasses import dataclass
from typing import Annotated, AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.pipeline import Pipeline

def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline

PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]

async def get_db_session(pipeline: PipelineDep) -> AsyncGenerator[AsyncSession, None]:
    async with pipeline.session_factory() as session:
        yield session

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

@dataclass(frozen=True)
class CurrentUser:
    id: UUID
    is_admin: bool = False

async def get_current_user(
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
) -> CurrentUser:
    """
    Identity set by the authenticating gateway in front of this service.
    Requests that did not pass through it carry no X-User-ID.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-ID header")
    return CurrentUser(id=user_id, is_admin=(x_user_role or "").lower() == "admin")

UserDep = Annotated[CurrentUser, Depends(get_current_user)]

async def require_admin(user: UserDep) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator role required")
    return user

AdminDep = Annotated[CurrentUser, Depends(require_admin)]
