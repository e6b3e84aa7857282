"""Base block interface.

Defines the abstract base class for all workflow blocks, the services they
receive and the outcome they report back to the engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from blockflow.core.context import ExecutionContext, substitute_deep
from blockflow.core.identifiers import DataLayerError
from blockflow.core.schema import SchemaRegistry
from blockflow.core.security import SecurityValidator
from blockflow.core.table_store import TableStore
from blockflow.integrations.base import ExternalServiceError
from blockflow.integrations.email import EmailSender
from blockflow.integrations.gemini import Summarizer
from blockflow.integrations.media import MediaStorage
from blockflow.integrations.publisher import Publisher
from blockflow.models.node import BlockCategory, BlockDefinition, WorkflowNode

logger = structlog.get_logger()

ConfigT = TypeVar("ConfigT")


class BlockExecutionError(Exception):
    """Error during block execution."""

    def __init__(
        self,
        message: str,
        block_name: str,
        error_code: str = "BLOCK_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.block_name = block_name
        self.error_code = error_code
        self.details = details or {}


class BlockValidationError(Exception):
    """Block configuration is missing or malformed."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


@dataclass
class BlockServices:
    """Collaborators available to blocks for one job.

    ``store`` and ``schemas`` are scoped to the job so a transactional run
    shares one database session across every block.
    """

    security: SecurityValidator
    store: TableStore
    schemas: SchemaRegistry
    publisher: Publisher
    media: MediaStorage
    email: EmailSender | None = None
    summarizer: Summarizer | None = None
    http_transport: httpx.AsyncBaseTransport | None = None
    http_timeout: float = 30.0


@dataclass
class BlockContext:
    """Everything a block may read while it runs."""

    app_id: int
    user_id: str
    execution_id: str
    data: ExecutionContext
    services: BlockServices


@dataclass
class BlockOutcome:
    """What a block reports back.

    ``payload`` is merged into the recorded result; ``context_updates`` are
    applied by the engine to produce the next context version; ``branch``
    selects the outgoing edge of a condition.
    """

    success: bool
    payload: dict[str, Any] = field(default_factory=dict)
    context_updates: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    branch: str | None = None
    error: str | None = None
    # Usually a symbolic code; auth failures carry the HTTP status instead
    error_code: str | int | None = None

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str = "BLOCK_ERROR",
        **payload: Any,
    ) -> "BlockOutcome":
        return cls(success=False, payload=payload, error=error, error_code=error_code)

    def to_result(self, label: str) -> dict[str, Any]:
        """Render the recorded result: ``{type, success, error?, ...}``."""
        result: dict[str, Any] = {"type": label, "success": self.success}
        result.update(self.payload)
        if self.error is not None:
            result["error"] = self.error
            result["errorCode"] = self.error_code
        return result


def require(config: dict[str, Any], name: str, message: str | None = None) -> Any:
    """Return a required config value.

    Raises:
        BlockValidationError: If the value is missing or blank
    """
    value = config.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise BlockValidationError(message or f"{name} is required", name)
    return value


class BaseBlock(ABC, Generic[ConfigT]):
    """Abstract base class for workflow blocks.

    All blocks must implement:
    - get_definition(): Returns block metadata
    - execute(): Performs the block's operation

    Example implementation:
        class ToastBlock(BaseBlock[dict[str, Any]]):
            def get_definition(self) -> BlockDefinition:
                return BlockDefinition(
                    label="notify.toast",
                    display_name="Show Toast",
                    category=BlockCategory.ACTION,
                    ...
                )

            async def execute(self, config, ctx: BlockContext) -> BlockOutcome:
                return BlockOutcome(success=True, payload={"message": config["message"]})
    """

    # Config key naming the context variable that receives ``output``
    output_variable_key: str = "outputVariable"
    default_output_variable: str | None = None

    @abstractmethod
    def get_definition(self) -> BlockDefinition:
        """Get the block definition with metadata."""

    @abstractmethod
    async def execute(self, config: ConfigT, ctx: BlockContext) -> BlockOutcome:
        """Execute the block's operation.

        Args:
            config: Validated configuration
            ctx: Execution context with services and identity

        Returns:
            Block outcome

        Raises:
            BlockExecutionError: If execution fails
            BlockValidationError: If configuration is invalid
        """

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> ConfigT:
        """Validate and transform configuration.

        Override this method to implement custom validation.

        Raises:
            BlockValidationError: If validation fails
        """
        return config  # type: ignore

    async def pre_execute(self, ctx: BlockContext) -> None:
        """Called before execute(). Override for setup logic."""

    async def post_execute(self, outcome: BlockOutcome, ctx: BlockContext) -> None:
        """Called after execute(). Override for cleanup logic."""

    def resolve_config(self, node: WorkflowNode, ctx: BlockContext) -> dict[str, Any]:
        """Substitute ``{{path}}`` references in the node's configuration."""
        return substitute_deep(dict(node.config), ctx.data)

    async def run(self, node: WorkflowNode, ctx: BlockContext) -> BlockOutcome:
        """Run the block with full lifecycle.

        This method handles:
        1. Config substitution and validation
        2. Pre-execute hook
        3. Execution
        4. Post-execute hook
        5. Output variable assignment

        Every exception is converted to a failed outcome; nothing escapes
        except cancellation.
        """
        definition = self.get_definition()

        logger.debug(
            "block_execution_starting",
            block=definition.label,
            node_id=node.id,
            execution_id=ctx.execution_id,
        )

        try:
            config = self.resolve_config(node, ctx)
            validated = self.validate_config(config, ctx)

            await self.pre_execute(ctx)
            outcome = await self.execute(validated, ctx)
            await self.post_execute(outcome, ctx)

            if outcome.success and outcome.output is not None:
                variable = config.get(self.output_variable_key) or self.default_output_variable
                if variable:
                    outcome.context_updates.setdefault(variable, outcome.output)

            logger.info(
                "block_executed",
                block=definition.label,
                node_id=node.id,
                success=outcome.success,
                execution_id=ctx.execution_id,
            )
            return outcome

        except BlockValidationError as e:
            logger.info(
                "block_configuration_invalid",
                block=definition.label,
                node_id=node.id,
                field=e.field,
            )
            return BlockOutcome.failure(str(e), "CONFIGURATION_ERROR")
        except BlockExecutionError as e:
            return BlockOutcome.failure(str(e), e.error_code, **e.details)
        except DataLayerError as e:
            logger.warning(
                "block_rejected_by_data_layer",
                block=definition.label,
                node_id=node.id,
                error_code=e.error_code,
            )
            payload: dict[str, Any] = {}
            if hasattr(e, "errors"):
                payload["errors"] = list(e.errors)
            return BlockOutcome.failure(str(e), e.error_code, **payload)
        except ExternalServiceError as e:
            logger.warning(
                "block_provider_failed",
                block=definition.label,
                node_id=node.id,
                provider=e.provider,
                error_code=e.error_code,
            )
            return BlockOutcome.failure(str(e), e.error_code)
        except SQLAlchemyError:
            logger.exception("block_database_error", block=definition.label, node_id=node.id)
            return BlockOutcome.failure("Database operation failed", "DATABASE_ERROR")
        except Exception as e:
            logger.exception(
                "block_execution_failed",
                block=definition.label,
                node_id=node.id,
                execution_id=ctx.execution_id,
            )
            return BlockOutcome.failure(str(e) or type(e).__name__, "EXECUTION_ERROR")

    @property
    def label(self) -> str:
        """Get block label."""
        return self.get_definition().label

    @property
    def category(self) -> BlockCategory:
        """Get block category."""
        return self.get_definition().category


class ConditionBlock(BaseBlock[ConfigT]):
    """Base for condition blocks.

    ``evaluate`` returns a bool (``true``/``false`` branch) or a case label.
    """

    result_key: str = "matches"
    # When set, the decision and payload are also stored in the context
    context_key: str | None = None

    @abstractmethod
    async def evaluate(self, config: ConfigT, ctx: BlockContext) -> tuple[bool | str, dict[str, Any]]:
        """Evaluate the condition.

        Returns:
            The branch decision and extra payload for the recorded result
        """

    async def execute(self, config: ConfigT, ctx: BlockContext) -> BlockOutcome:
        decision, payload = await self.evaluate(config, ctx)
        if isinstance(decision, bool):
            branch = "true" if decision else "false"
            payload = {self.result_key: decision, **payload}
        else:
            branch = str(decision)
        updates = {self.context_key: dict(payload)} if self.context_key else {}
        return BlockOutcome(
            success=True,
            payload=payload,
            context_updates=updates,
            output=decision,
            branch=branch,
        )
