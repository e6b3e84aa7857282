"""Workflow service.

Handles CRUD operations for stored workflow graphs. Graphs are checked
against the block registry before they are saved.
"""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from blockflow.blocks.registry import BlockRegistry, get_block_registry
from blockflow.core.execution_engine import GraphValidationError, parse_graph
from blockflow.models.workflow import (
    Workflow,
    WorkflowCreate,
    WorkflowGraph,
    WorkflowRead,
    WorkflowStatus,
    WorkflowUpdate,
)
from blockflow.services.app_service import AppService

logger = structlog.get_logger()

WEBHOOK_TRIGGER = "onWebhook"


class WorkflowServiceError(Exception):
    """Error in workflow service operations."""

    pass


class WorkflowNotFoundError(WorkflowServiceError):
    """Workflow not found."""

    pass


class WorkflowAccessDeniedError(WorkflowServiceError):
    """User doesn't have access to workflow."""

    pass


class WorkflowValidationError(WorkflowServiceError):
    """Workflow validation failed."""

    def __init__(self, message: str, errors: list[str]) -> None:
        super().__init__(message)
        self.errors = errors


class WorkflowService:
    """Service for managing workflows.

    Handles:
    - Creating workflows from graph JSON
    - Reading and listing workflows per app
    - Updating workflow definitions (bumping the version)
    - Activation, archival and duplication
    - Owner-scoped access control

    Example usage:
        service = WorkflowService(session)

        workflow = await service.create(
            user_id="user-123",
            data=WorkflowCreate(
                app_id=7,
                name="Contact form",
                graph={"nodes": [...], "edges": [...]},
            ),
        )
    """

    def __init__(self, session: AsyncSession, registry: BlockRegistry | None = None) -> None:
        """Initialize workflow service.

        Args:
            session: Async database session
            registry: Block registry used to validate graphs
        """
        self._session = session
        self._registry = registry or get_block_registry()
        self._apps = AppService(session)

    async def create(
        self,
        user_id: str,
        data: WorkflowCreate,
    ) -> WorkflowRead:
        """Create a new workflow.

        Args:
            user_id: Author user ID
            data: Workflow creation data

        Returns:
            Created workflow

        Raises:
            AppNotFoundError: If the app doesn't exist
            AppAccessDeniedError: If the user doesn't own the app
            WorkflowValidationError: If graph is invalid
        """
        await self._apps.get_owned(data.app_id, user_id)
        self._validate_graph(data.graph)

        workflow = Workflow(
            app_id=data.app_id,
            user_id=user_id,
            name=data.name,
            description=data.description,
            graph=data.graph.model_dump_json(),
            status=data.status,
        )

        self._session.add(workflow)
        await self._session.commit()
        await self._session.refresh(workflow)

        logger.info(
            "workflow_created",
            workflow_id=workflow.id,
            app_id=data.app_id,
            user_id=user_id,
            node_count=len(data.graph.nodes),
        )

        return self._to_read(workflow)

    async def get(
        self,
        workflow_id: str,
        user_id: str,
    ) -> WorkflowRead:
        """Get a workflow.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowAccessDeniedError: If user doesn't own workflow
        """
        workflow = await self.get_entity(workflow_id, user_id)
        return self._to_read(workflow)

    async def list_all(
        self,
        user_id: str,
        app_id: int | None = None,
        status: WorkflowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowRead]:
        """List user's workflows.

        Args:
            user_id: User ID
            app_id: Filter by app
            status: Filter by status
            limit: Maximum results
            offset: Pagination offset
        """
        query = (
            select(Workflow)
            .where(Workflow.user_id == user_id)
            .order_by(Workflow.updated_at.desc())
            .limit(limit)
            .offset(offset)
        )

        if app_id is not None:
            query = query.where(Workflow.app_id == app_id)
        if status:
            query = query.where(Workflow.status == status)

        result = await self._session.execute(query)
        return [self._to_read(w) for w in result.scalars().all()]

    async def update(
        self,
        workflow_id: str,
        user_id: str,
        data: WorkflowUpdate,
    ) -> WorkflowRead:
        """Update a workflow.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowAccessDeniedError: If user doesn't own workflow
            WorkflowValidationError: If graph is invalid
        """
        workflow = await self.get_entity(workflow_id, user_id)

        if data.name is not None:
            workflow.name = data.name

        if data.description is not None:
            workflow.description = data.description

        if data.graph is not None:
            self._validate_graph(data.graph)
            workflow.graph = data.graph.model_dump_json()
            workflow.version += 1

        if data.status is not None:
            workflow.status = data.status

        await self._session.commit()
        await self._session.refresh(workflow)

        logger.info(
            "workflow_updated",
            workflow_id=workflow_id,
            user_id=user_id,
            version=workflow.version,
        )

        return self._to_read(workflow)

    async def delete(
        self,
        workflow_id: str,
        user_id: str,
    ) -> None:
        """Delete a workflow.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowAccessDeniedError: If user doesn't own workflow
        """
        workflow = await self.get_entity(workflow_id, user_id)

        await self._session.delete(workflow)
        await self._session.commit()

        logger.info(
            "workflow_deleted",
            workflow_id=workflow_id,
            user_id=user_id,
        )

    async def activate(self, workflow_id: str, user_id: str) -> WorkflowRead:
        return await self.update(
            workflow_id=workflow_id,
            user_id=user_id,
            data=WorkflowUpdate(status=WorkflowStatus.ACTIVE),
        )

    async def archive(self, workflow_id: str, user_id: str) -> WorkflowRead:
        return await self.update(
            workflow_id=workflow_id,
            user_id=user_id,
            data=WorkflowUpdate(status=WorkflowStatus.ARCHIVED),
        )

    async def duplicate(
        self,
        workflow_id: str,
        user_id: str,
        new_name: str | None = None,
    ) -> WorkflowRead:
        """Duplicate a workflow as a new draft.

        Args:
            workflow_id: Source workflow ID
            user_id: Requesting user ID
            new_name: Name for the copy (defaults to "Copy of ...")
        """
        source = await self.get_entity(workflow_id, user_id)

        return await self.create(
            user_id=user_id,
            data=WorkflowCreate(
                app_id=source.app_id,
                name=new_name or f"Copy of {source.name}",
                description=source.description,
                graph=WorkflowGraph.model_validate_json(source.graph),
            ),
        )

    async def list_webhook_workflows(self, app_id: int) -> list[Workflow]:
        """Active workflows of an app that start with a webhook trigger."""
        query = (
            select(Workflow)
            .where(Workflow.app_id == app_id)
            .where(Workflow.status == WorkflowStatus.ACTIVE)
            .order_by(Workflow.created_at)
        )
        result = await self._session.execute(query)
        return [w for w in result.scalars().all() if self._has_trigger(w, WEBHOOK_TRIGGER)]

    async def get_entity(
        self,
        workflow_id: str,
        user_id: str,
    ) -> Workflow:
        """Get workflow and verify ownership.

        Raises:
            WorkflowNotFoundError: If not found
            WorkflowAccessDeniedError: If wrong owner
        """
        query = select(Workflow).where(Workflow.id == workflow_id)
        result = await self._session.execute(query)
        workflow = result.scalar_one_or_none()

        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")

        if workflow.user_id != user_id:
            logger.warning(
                "workflow_access_denied",
                workflow_id=workflow_id,
                requested_by=user_id,
                owner=workflow.user_id,
            )
            raise WorkflowAccessDeniedError("Access denied to workflow")

        return workflow

    def _validate_graph(self, graph: WorkflowGraph) -> None:
        """Parse a graph against the registry.

        Raises:
            WorkflowValidationError: With every problem found
        """
        try:
            parse_graph(graph.nodes, graph.edges, self._registry)
        except GraphValidationError as e:
            raise WorkflowValidationError("Invalid workflow graph", errors=e.errors) from e

    @staticmethod
    def _has_trigger(workflow: Workflow, label: str) -> bool:
        for node in workflow.get_graph().get("nodes", []):
            data: dict[str, Any] = node.get("data") if isinstance(node.get("data"), dict) else node
            if data.get("label", node.get("label")) == label:
                return True
        return False

    def _to_read(self, workflow: Workflow) -> WorkflowRead:
        """Convert workflow entity to read schema."""
        return WorkflowRead(
            id=workflow.id,
            app_id=workflow.app_id,
            user_id=workflow.user_id,
            name=workflow.name,
            description=workflow.description,
            graph=WorkflowGraph.model_validate_json(workflow.graph),
            status=workflow.status,
            version=workflow.version,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
        )
