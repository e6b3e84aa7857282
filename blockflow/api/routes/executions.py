"""Execution API endpoints.

Read execution history and cancel pending or running executions.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from blockflow.api.deps import CurrentUser, ExecutionServiceDep
from blockflow.models.execution import ExecutionRead, ExecutionStatus
from blockflow.services.execution_service import (
    ExecutionAccessDeniedError,
    ExecutionNotFoundError,
    ExecutionServiceError,
)

logger = structlog.get_logger()

router = APIRouter()


@router.get("", response_model=list[ExecutionRead])
async def list_executions(
    user: CurrentUser,
    service: ExecutionServiceDep,
    app_id: Annotated[int | None, Query(alias="appId")] = None,
    workflow_id: Annotated[str | None, Query(alias="workflowId")] = None,
    status_filter: Annotated[ExecutionStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[ExecutionRead]:
    """List user's executions, newest first.

    Args:
        user: Current authenticated user
        service: Execution service
        app_id: Filter by app
        workflow_id: Filter by workflow
        status_filter: Filter by status
        limit: Maximum results
        offset: Pagination offset
    """
    return await service.list_all(
        user_id=user.id,
        app_id=app_id,
        workflow_id=workflow_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )


@router.get("/{execution_id}", response_model=ExecutionRead)
async def get_execution(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> ExecutionRead:
    """Get an execution with its result log and final context.

    Raises:
        HTTPException 404: If execution not found
        HTTPException 403: If access denied
    """
    try:
        return await service.get(execution_id, user.id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ExecutionAccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e


@router.post("/{execution_id}/cancel", response_model=ExecutionRead)
async def cancel_execution(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> ExecutionRead:
    """Cancel a pending or running execution.

    Raises:
        HTTPException 404: If execution not found
        HTTPException 403: If access denied
        HTTPException 409: If the execution already finished
    """
    try:
        return await service.cancel(execution_id, user.id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ExecutionAccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except ExecutionServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
