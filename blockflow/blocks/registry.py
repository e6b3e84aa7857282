"""Block registry.

Central table of every block the engine can dispatch to, keyed by label.
"""

from typing import Type

import structlog

from blockflow.blocks.base import BaseBlock
from blockflow.models.node import BlockCategory, BlockDefinition

logger = structlog.get_logger()


class BlockRegistryError(Exception):
    """Error in block registry operations."""

    pass


class BlockRegistry:
    """Central registry for workflow blocks.

    Labels are unique across categories. Graphs are checked against the
    registry before they run, so an unknown label is reported when a
    workflow is saved or submitted rather than halfway through a run.

    Example usage:
        registry = BlockRegistry()
        registry.register(DbFindBlock)

        block = registry.get("db.find")
        outcome = await block.run(node, ctx)
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._blocks: dict[str, Type[BaseBlock]] = {}
        self._instances: dict[str, BaseBlock] = {}

    def register(self, block_class: Type[BaseBlock]) -> None:
        """Register a block class.

        Args:
            block_class: Block class to register

        Raises:
            BlockRegistryError: If a block with the same label exists
        """
        instance = block_class()
        definition = instance.get_definition()

        if definition.label in self._blocks:
            raise BlockRegistryError(f"Block '{definition.label}' already registered")

        self._blocks[definition.label] = block_class
        self._instances[definition.label] = instance

        logger.debug(
            "block_registered",
            label=definition.label,
            category=definition.category.value,
        )

    def unregister(self, label: str) -> None:
        self._blocks.pop(label, None)
        self._instances.pop(label, None)

    def get(self, label: str) -> BaseBlock | None:
        """Get a block instance by label.

        Args:
            label: Block label

        Returns:
            Block instance or None if not found
        """
        return self._instances.get(label)

    def __contains__(self, label: object) -> bool:
        return label in self._instances

    def get_definition(self, label: str) -> BlockDefinition | None:
        instance = self._instances.get(label)
        if instance is None:
            return None
        return instance.get_definition()

    def list_all(self) -> list[BlockDefinition]:
        """List all registered block definitions."""
        return [inst.get_definition() for inst in self._instances.values()]

    def list_by_category(self, category: BlockCategory) -> list[BlockDefinition]:
        """List blocks of one category.

        Args:
            category: Block category

        Returns:
            List of matching block definitions
        """
        return [
            inst.get_definition()
            for inst in self._instances.values()
            if inst.category == category
        ]

    def load_builtin_blocks(self) -> int:
        """Load all built-in blocks.

        Returns:
            Number of blocks loaded
        """
        from blockflow.blocks.actions import (
            AiSummarizeBlock,
            AuthVerifyBlock,
            DbCreateBlock,
            DbFindBlock,
            DbUpdateBlock,
            DbUpsertBlock,
            EmailSendBlock,
            FileDownloadBlock,
            FileUploadBlock,
            HttpRequestBlock,
            NotifyToastBlock,
            PageRedirectBlock,
        )
        from blockflow.blocks.conditions import (
            DateValidBlock,
            IsFilledBlock,
            MatchBlock,
            RoleIsBlock,
            SwitchBlock,
        )
        from blockflow.blocks.triggers import (
            OnClickBlock,
            OnLoginBlock,
            OnPageLoadBlock,
            OnSubmitBlock,
            OnWebhookBlock,
        )

        builtin_blocks = [
            # Triggers
            OnSubmitBlock,
            OnLoginBlock,
            OnWebhookBlock,
            OnClickBlock,
            OnPageLoadBlock,
            # Conditions
            MatchBlock,
            IsFilledBlock,
            SwitchBlock,
            RoleIsBlock,
            DateValidBlock,
            # Actions
            DbFindBlock,
            DbCreateBlock,
            DbUpdateBlock,
            DbUpsertBlock,
            HttpRequestBlock,
            EmailSendBlock,
            AiSummarizeBlock,
            FileUploadBlock,
            FileDownloadBlock,
            AuthVerifyBlock,
            NotifyToastBlock,
            PageRedirectBlock,
        ]

        count = 0
        for block_class in builtin_blocks:
            try:
                self.register(block_class)
                count += 1
            except BlockRegistryError as e:
                logger.warning("builtin_block_registration_failed", error=str(e))

        logger.info("builtin_blocks_loaded", count=count)
        return count


# Singleton instance
_registry: BlockRegistry | None = None


def get_block_registry() -> BlockRegistry:
    """Get or create the singleton block registry.

    Returns:
        BlockRegistry instance with builtin blocks loaded
    """
    global _registry
    if _registry is None:
        _registry = BlockRegistry()
        _registry.load_builtin_blocks()
    return _registry
