"""Workflow API endpoints.

Handles workflow CRUD and execution of stored or ad-hoc graphs.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Query, Response, status

from blockflow.api.deps import CurrentUser, ExecutionServiceDep, WorkflowServiceDep
from blockflow.models.workflow import (
    StoredWorkflowExecuteRequest,
    WorkflowCreate,
    WorkflowExecuteRequest,
    WorkflowRead,
    WorkflowStatus,
    WorkflowUpdate,
)
from blockflow.services.app_service import AppAccessDeniedError, AppNotFoundError
from blockflow.services.workflow_service import (
    WorkflowAccessDeniedError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)

logger = structlog.get_logger()

router = APIRouter()


def _http_error(e: Exception) -> HTTPException:
    """Map service errors onto HTTP errors."""
    if isinstance(e, WorkflowValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        )
    if isinstance(e, (WorkflowNotFoundError, AppNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))


_SERVICE_ERRORS = (
    WorkflowValidationError,
    WorkflowNotFoundError,
    WorkflowAccessDeniedError,
    AppNotFoundError,
    AppAccessDeniedError,
)


@router.get("", response_model=list[WorkflowRead])
async def list_workflows(
    user: CurrentUser,
    service: WorkflowServiceDep,
    app_id: Annotated[int | None, Query(alias="appId")] = None,
    status_filter: Annotated[WorkflowStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[WorkflowRead]:
    """List user's workflows, optionally for one app."""
    return await service.list_all(
        user_id=user.id,
        app_id=app_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    user: CurrentUser,
    service: WorkflowServiceDep,
    data: WorkflowCreate,
) -> WorkflowRead:
    """Create a new workflow.

    Raises:
        HTTPException 422: If the graph is invalid
        HTTPException 404/403: If the app is missing or not owned
    """
    try:
        return await service.create(user_id=user.id, data=data)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e


@router.post("/execute", response_model=dict[str, Any])
async def execute_graph(
    user: CurrentUser,
    service: ExecutionServiceDep,
    data: WorkflowExecuteRequest,
    response: Response,
) -> dict[str, Any]:
    """Execute an ad-hoc graph.

    Synchronous runs answer 200 with ``{executionId, status, results,
    context}``; with ``async: true`` the run is queued and the answer is 202.
    """
    try:
        result = await service.execute_graph(user.id, data)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e

    if result.get("queued"):
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.get("/{workflow_id}", response_model=WorkflowRead)
async def get_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
) -> WorkflowRead:
    try:
        return await service.get(workflow_id, user.id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e


@router.patch("/{workflow_id}", response_model=WorkflowRead)
async def update_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
    data: WorkflowUpdate,
) -> WorkflowRead:
    """Update a workflow; a new graph bumps the version."""
    try:
        return await service.update(workflow_id, user.id, data)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
) -> None:
    try:
        await service.delete(workflow_id, user.id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e


@router.post("/{workflow_id}/activate", response_model=WorkflowRead)
async def activate_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
) -> WorkflowRead:
    try:
        return await service.activate(workflow_id, user.id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e


@router.post("/{workflow_id}/archive", response_model=WorkflowRead)
async def archive_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
) -> WorkflowRead:
    try:
        return await service.archive(workflow_id, user.id)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e


@router.post(
    "/{workflow_id}/duplicate",
    response_model=WorkflowRead,
    status_code=status.HTTP_201_CREATED,
)
async def duplicate_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
    name: Annotated[str | None, Query(max_length=255)] = None,
) -> WorkflowRead:
    try:
        return await service.duplicate(workflow_id, user.id, new_name=name)
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e


@router.post("/{workflow_id}/execute", response_model=dict[str, Any])
async def execute_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
    response: Response,
    data: StoredWorkflowExecuteRequest | None = None,
) -> dict[str, Any]:
    """Execute a stored workflow (200 when run inline, 202 when queued)."""
    try:
        result = await service.execute_workflow(
            workflow_id,
            user.id,
            data or StoredWorkflowExecuteRequest(),
        )
    except _SERVICE_ERRORS as e:
        raise _http_error(e) from e

    if result.get("queued"):
        response.status_code = status.HTTP_202_ACCEPTED
    return result
