"""App API endpoints."""

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from blockflow.api.deps import AppServiceDep, CurrentUser
from blockflow.models.app import AppCreate, AppRead, AppTableRead
from blockflow.services.app_service import AppAccessDeniedError, AppNotFoundError

router = APIRouter()


@router.get("", response_model=list[AppRead])
async def list_apps(
    user: CurrentUser,
    service: AppServiceDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[AppRead]:
    """List apps owned by the current user."""
    return await service.list_all(user.id, limit=limit, offset=offset)


@router.post("", response_model=AppRead, status_code=status.HTTP_201_CREATED)
async def create_app(
    user: CurrentUser,
    service: AppServiceDep,
    data: AppCreate,
) -> AppRead:
    return await service.create(user.id, data)


@router.get("/{app_id}", response_model=AppRead)
async def get_app(
    app_id: int,
    user: CurrentUser,
    service: AppServiceDep,
) -> AppRead:
    try:
        return await service.get(app_id, user.id)
    except AppNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except AppAccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e


@router.get("/{app_id}/tables", response_model=list[AppTableRead])
async def list_app_tables(
    app_id: int,
    user: CurrentUser,
    service: AppServiceDep,
) -> list[AppTableRead]:
    """List the dynamic tables provisioned for an app.

    Raises:
        HTTPException 404: If app not found
        HTTPException 403: If access denied
    """
    try:
        return await service.list_tables(app_id, user.id)
    except AppNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except AppAccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
