"""Block definitions - the closed set of workflow blocks."""

from blockflow.blocks.base import (
    BaseBlock,
    BlockContext,
    BlockExecutionError,
    BlockOutcome,
    BlockServices,
    BlockValidationError,
    ConditionBlock,
)
from blockflow.blocks.registry import BlockRegistry, get_block_registry

__all__ = [
    "BaseBlock",
    "BlockContext",
    "BlockExecutionError",
    "BlockOutcome",
    "BlockRegistry",
    "BlockServices",
    "BlockValidationError",
    "ConditionBlock",
    "get_block_registry",
]
