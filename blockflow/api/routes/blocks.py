"""Block catalog API endpoints.

Lists the blocks a workflow may use, grouped by category.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, status

from blockflow.api.deps import CurrentUser
from blockflow.blocks.registry import get_block_registry
from blockflow.models.node import BlockCategory

router = APIRouter()


@router.get("", response_model=dict[str, Any])
async def list_blocks(user: CurrentUser) -> dict[str, Any]:
    """List all blocks.

    Returns:
        ``{"categories": {"Trigger": [...], "Condition": [...], "Action": [...]}, "total": n}``
    """
    registry = get_block_registry()
    categories = {
        category.value: [d.to_dict() for d in registry.list_by_category(category)]
        for category in BlockCategory
    }
    return {
        "categories": categories,
        "total": sum(len(blocks) for blocks in categories.values()),
    }


@router.get("/category/{category}", response_model=list[dict[str, Any]])
async def list_blocks_by_category(category: str, user: CurrentUser) -> list[dict[str, Any]]:
    """List blocks of one category (``Trigger``, ``Conditions``, ``action``...)."""
    try:
        parsed = BlockCategory.parse(category)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return [d.to_dict() for d in get_block_registry().list_by_category(parsed)]


@router.get("/{label}", response_model=dict[str, Any])
async def get_block(label: str, user: CurrentUser) -> dict[str, Any]:
    definition = get_block_registry().get_definition(label)
    if definition is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Block '{label}' not found",
        )
    return definition.to_dict()
