"""Execution service.

Handles workflow execution lifecycle and state management: synchronous
runs inside the request, queued runs handed to the job queue, webhook
fan-in, cancellation and execution history.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from redis import asyncio as redis_async
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from blockflow.blocks.base import BlockServices
from blockflow.config import settings
from blockflow.core.execution_engine import (
    CancellationToken,
    ExecutionOutcome,
    GraphValidationError,
    WorkflowExecutionEngine,
)
from blockflow.core.queue import JobQueue
from blockflow.core.rate_limit import create_rate_limiter
from blockflow.core.schema import SchemaRegistry
from blockflow.core.security import SecurityValidator
from blockflow.core.table_store import TableStore
from blockflow.integrations.email import EmailSender, SmtpEmailSender
from blockflow.integrations.gemini import GeminiSummarizer, Summarizer
from blockflow.integrations.media import LocalMediaStorage, MediaStorage
from blockflow.integrations.ownership import SqlAppOwnership
from blockflow.integrations.publisher import InMemoryPublisher, Publisher, RedisPublisher
from blockflow.models.execution import Execution, ExecutionJob, ExecutionRead, ExecutionStatus
from blockflow.models.workflow import StoredWorkflowExecuteRequest, WorkflowExecuteRequest
from blockflow.services.app_service import AppService
from blockflow.services.workflow_service import WorkflowService, WorkflowValidationError

logger = structlog.get_logger()


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class ExecutionServiceError(Exception):
    """Error in execution service operations."""

    pass


class ExecutionNotFoundError(ExecutionServiceError):
    """Execution not found."""

    pass


class ExecutionAccessDeniedError(ExecutionServiceError):
    """User doesn't have access to execution."""

    pass


class NoWebhookWorkflowsError(ExecutionServiceError):
    """The app has no active workflow starting with a webhook trigger."""

    pass


@dataclass
class ExecutionRuntime:
    """Process-wide collaborators shared by every run.

    Each run gets its own :class:`TableStore` and :class:`SchemaRegistry`
    so a transactional job never shares a session with another job.
    """

    session_maker: sessionmaker
    security: SecurityValidator
    publisher: Publisher
    media: MediaStorage
    email: EmailSender | None = None
    summarizer: Summarizer | None = None
    http_transport: httpx.AsyncBaseTransport | None = None
    http_timeout: float = 30.0
    engine: WorkflowExecutionEngine = field(default_factory=WorkflowExecutionEngine)
    tokens: dict[str, CancellationToken] = field(default_factory=dict)

    def block_services(self, store: TableStore) -> BlockServices:
        return BlockServices(
            security=self.security,
            store=store,
            schemas=SchemaRegistry(store),
            publisher=self.publisher,
            media=self.media,
            email=self.email,
            summarizer=self.summarizer,
            http_transport=self.http_transport,
            http_timeout=self.http_timeout,
        )

    async def run_job(self, job: ExecutionJob) -> ExecutionOutcome:
        """Parse and run one job's graph.

        In transactional mode the job's dynamic-table writes are committed
        only when the run completed and every node succeeded.

        Raises:
            GraphValidationError: If the graph is rejected
        """
        graph = self.engine.parse_graph(job.nodes, job.edges)
        store = TableStore(self.session_maker, transactional=job.transactional)
        execution_id = job.execution_id or job.job_id
        token = self.tokens.setdefault(execution_id, CancellationToken())

        outcome: ExecutionOutcome | None = None
        try:
            outcome = await self.engine.run(
                graph,
                job.context,
                self.block_services(store),
                app_id=job.app_id,
                user_id=job.user_id,
                execution_id=execution_id,
                entry_label=job.entry_label,
                token=token,
            )
            return outcome
        finally:
            self.tokens.pop(execution_id, None)
            if store.transactional:
                commit = (
                    outcome is not None
                    and outcome.status == ExecutionStatus.COMPLETED
                    and outcome.all_succeeded
                )
                await store.finish(commit=commit)

    async def handle_job(self, job: ExecutionJob) -> None:
        """Queue handler: run a job and record it on its execution row.

        Graph errors are recorded and swallowed since retrying cannot fix
        them; anything else is recorded and re-raised so the queue retries.
        """
        async with self.session_maker() as session:
            execution = await session.get(Execution, job.execution_id) if job.execution_id else None
            if execution is None:
                execution = Execution(
                    id=job.execution_id or job.job_id,
                    workflow_id=job.workflow_id,
                    app_id=job.app_id,
                    user_id=job.user_id,
                    trigger="queue",
                )
                execution.set_input_context(job.context)
                session.add(execution)
                job.execution_id = execution.id
            elif execution.status == ExecutionStatus.CANCELLED:
                logger.info("queued_execution_skipped", execution_id=execution.id, reason="cancelled")
                return

            execution.mark_running()
            await session.commit()

            try:
                outcome = await self.run_job(job)
            except GraphValidationError as e:
                execution.mark_failed(str(e), e.error_code)
                await session.commit()
                logger.warning("queued_execution_rejected", execution_id=execution.id, errors=e.errors)
                return
            except Exception as e:
                execution.mark_failed(str(e) or type(e).__name__, "UNEXPECTED_ERROR")
                await session.commit()
                raise

            record_outcome(execution, outcome)
            await session.commit()

    def cancel(self, execution_id: str, reason: str = "Execution cancelled") -> bool:
        """Signal a running execution in this process to stop."""
        token = self.tokens.get(execution_id)
        if token is None:
            return False
        token.cancel(reason)
        return True


def record_outcome(execution: Execution, outcome: ExecutionOutcome) -> None:
    execution.mark_finished(
        status=outcome.status,
        results=[r.to_dict() for r in outcome.results],
        context=outcome.context.to_dict(),
        error=outcome.error,
        error_code=outcome.error_code,
    )


def create_execution_runtime(
    session_maker: sessionmaker,
    redis_client: redis_async.Redis | None = None,
) -> ExecutionRuntime:
    """Build the production runtime from settings.

    Redis, when connected, backs the live-update publisher and (with
    ``rate_limit_backend=redis``) the shared rate limiter.
    """
    security = SecurityValidator(
        rate_limiter=create_rate_limiter(settings.rate_limit_backend, redis_client),
        ownership=SqlAppOwnership(session_maker),
        rate_limits=settings.rate_limits,
        default_rate_limit=settings.rate_limit_default,
        window_seconds=settings.rate_limit_window_seconds,
    )
    publisher = RedisPublisher(redis_client) if redis_client is not None else InMemoryPublisher()
    return ExecutionRuntime(
        session_maker=session_maker,
        security=security,
        publisher=publisher,
        media=LocalMediaStorage(),
        email=SmtpEmailSender(),
        summarizer=GeminiSummarizer(),
        http_timeout=settings.http_timeout,
    )


# Will be set by init_execution_runtime
_runtime: ExecutionRuntime | None = None
_queue: JobQueue | None = None


def init_execution_runtime(runtime: ExecutionRuntime, queue: JobQueue | None = None) -> None:
    """Install the process-wide runtime and job queue."""
    global _runtime, _queue
    _runtime = runtime
    _queue = queue
    logger.info(
        "execution_runtime_initialized",
        queue_backend=queue.backend if queue is not None else None,
    )


def get_execution_runtime() -> ExecutionRuntime:
    if _runtime is None:
        raise RuntimeError("Execution runtime not initialized")
    return _runtime


def get_job_queue() -> JobQueue | None:
    return _queue


class ExecutionService:
    """Service for running workflows and reading their history.

    Example usage:
        service = ExecutionService(session, runtime, queue)

        # Ad-hoc graph, run in the request
        response = await service.execute_graph(user_id, request)
        response["results"], response["context"]

        # Same graph queued for a worker
        response = await service.execute_graph(user_id, request.model_copy(update={"run_async": True}))
    """

    def __init__(
        self,
        session: AsyncSession,
        runtime: ExecutionRuntime,
        queue: JobQueue | None = None,
    ) -> None:
        """Initialize execution service.

        Args:
            session: Async database session
            runtime: Process-wide execution collaborators
            queue: Job queue for asynchronous runs
        """
        self._session = session
        self._runtime = runtime
        self._queue = queue
        self._apps = AppService(session)
        self._workflows = WorkflowService(session, runtime.engine.registry)

    async def execute_graph(
        self,
        user_id: str,
        request: WorkflowExecuteRequest,
    ) -> dict[str, Any]:
        """Run an ad-hoc graph.

        Returns:
            ``{executionId, status, results, context}`` for synchronous runs,
            ``{executionId, jobId, status: "pending", queued: True}`` when queued

        Raises:
            AppNotFoundError: If the app doesn't exist
            AppAccessDeniedError: If the user doesn't own the app
            WorkflowValidationError: If the graph is rejected
        """
        await self._apps.get_owned(request.app_id, user_id)
        job = ExecutionJob(
            app_id=request.app_id,
            user_id=user_id,
            nodes=request.nodes,
            edges=request.edges,
            context=request.context,
            entry_label=request.entry_label,
            transactional=request.transactional,
        )
        return await self._submit(job, run_async=request.run_async, trigger="api")

    async def execute_workflow(
        self,
        workflow_id: str,
        user_id: str,
        request: StoredWorkflowExecuteRequest,
    ) -> dict[str, Any]:
        """Run a stored workflow.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowAccessDeniedError: If user doesn't own workflow
            WorkflowValidationError: If the stored graph no longer validates
        """
        workflow = await self._workflows.get_entity(workflow_id, user_id)
        graph = workflow.get_graph()
        job = ExecutionJob(
            app_id=workflow.app_id,
            user_id=user_id,
            nodes=graph.get("nodes", []),
            edges=graph.get("edges", []),
            context={**request.context, "workflowId": workflow.id},
            workflow_id=workflow.id,
            entry_label=request.entry_label,
            transactional=request.transactional,
        )
        return await self._submit(job, run_async=request.run_async, trigger="api")

    async def trigger_webhook(
        self,
        app_id: int,
        source: str,
        payload: dict[str, Any],
    ) -> list[str]:
        """Queue every webhook workflow of an app.

        Runs act as the app owner, start from ``onWebhook`` and see the
        payload as ``webhookPayload``.

        Returns:
            Execution ids of the queued runs

        Raises:
            AppNotFoundError: If the app doesn't exist
            NoWebhookWorkflowsError: If no active webhook workflow exists
        """
        app = await self._apps.get_any(app_id)
        workflows = await self._workflows.list_webhook_workflows(app_id)
        if not workflows:
            raise NoWebhookWorkflowsError("No webhook workflows found for this app")

        execution_ids = []
        for workflow in workflows:
            graph = workflow.get_graph()
            job = ExecutionJob(
                app_id=app_id,
                user_id=app.owner_id,
                nodes=graph.get("nodes", []),
                edges=graph.get("edges", []),
                context={
                    "webhookPayload": payload,
                    "webhookSource": source,
                    "workflowId": workflow.id,
                },
                workflow_id=workflow.id,
                entry_label="onWebhook",
            )
            response = await self._submit(job, run_async=True, trigger="webhook")
            execution_ids.append(response["executionId"])

        logger.info("webhook_dispatched", app_id=app_id, source=source, workflows=len(execution_ids))
        return execution_ids

    async def _submit(self, job: ExecutionJob, run_async: bool, trigger: str) -> dict[str, Any]:
        try:
            graph = self._runtime.engine.parse_graph(job.nodes, job.edges)
        except GraphValidationError as e:
            raise WorkflowValidationError("Invalid workflow graph", errors=e.errors) from e

        execution = Execution(
            workflow_id=job.workflow_id,
            app_id=job.app_id,
            user_id=job.user_id,
            trigger=trigger,
        )
        execution.set_input_context(job.context)
        self._session.add(execution)
        await self._session.commit()
        await self._session.refresh(execution)
        job.execution_id = execution.id

        logger.info(
            "execution_created",
            execution_id=execution.id,
            app_id=job.app_id,
            trigger=trigger,
            node_count=len(graph.nodes),
            run_async=run_async,
        )

        if run_async and self._queue is not None:
            job_id = await self._queue.enqueue(job)
            return {
                "executionId": execution.id,
                "jobId": job_id,
                "status": ExecutionStatus.PENDING.value,
                "queued": True,
            }

        if run_async:
            logger.warning("job_queue_unavailable", execution_id=execution.id, fallback="sync")

        execution.mark_running()
        await self._session.commit()

        try:
            outcome = await self._runtime.run_job(job)
        except Exception as e:
            execution.mark_failed(str(e) or type(e).__name__, "UNEXPECTED_ERROR")
            await self._session.commit()
            logger.exception("execution_failed_unexpected", execution_id=execution.id)
            raise

        record_outcome(execution, outcome)
        await self._session.commit()
        return outcome.to_dict()

    async def get(
        self,
        execution_id: str,
        user_id: str,
    ) -> ExecutionRead:
        """Get an execution.

        Raises:
            ExecutionNotFoundError: If execution doesn't exist
            ExecutionAccessDeniedError: If user doesn't own execution
        """
        execution = await self._get_and_verify(execution_id, user_id)
        return ExecutionRead.from_execution(execution)

    async def list_all(
        self,
        user_id: str,
        app_id: int | None = None,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionRead]:
        """List user's executions, newest first."""
        query = (
            select(Execution)
            .where(Execution.user_id == user_id)
            .order_by(Execution.started_at.desc())
            .limit(limit)
            .offset(offset)
        )

        if app_id is not None:
            query = query.where(Execution.app_id == app_id)
        if workflow_id:
            query = query.where(Execution.workflow_id == workflow_id)
        if status:
            query = query.where(Execution.status == status)

        result = await self._session.execute(query)
        return [ExecutionRead.from_execution(e) for e in result.scalars().all()]

    async def cancel(
        self,
        execution_id: str,
        user_id: str,
    ) -> ExecutionRead:
        """Cancel a pending or running execution.

        A pending execution is marked cancelled and skipped by the worker;
        a running one is signalled through its cancellation token and
        records its own final state.

        Raises:
            ExecutionNotFoundError: If execution doesn't exist
            ExecutionAccessDeniedError: If user doesn't own execution
            ExecutionServiceError: If execution already finished
        """
        execution = await self._get_and_verify(execution_id, user_id)

        if execution.status.is_terminal:
            raise ExecutionServiceError(
                f"Cannot cancel: status is {execution.status.value}"
            )

        signalled = self._runtime.cancel(execution_id)
        if not signalled:
            execution.mark_cancelled()
            await self._session.commit()
            await self._session.refresh(execution)

        logger.info(
            "execution_cancel_requested",
            execution_id=execution_id,
            user_id=user_id,
            signalled=signalled,
        )

        return ExecutionRead.from_execution(execution)

    async def _get_and_verify(
        self,
        execution_id: str,
        user_id: str,
    ) -> Execution:
        """Get execution and verify ownership.

        Raises:
            ExecutionNotFoundError: If not found
            ExecutionAccessDeniedError: If wrong owner
        """
        query = select(Execution).where(Execution.id == execution_id)
        result = await self._session.execute(query)
        execution = result.scalar_one_or_none()

        if execution is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")

        if execution.user_id != user_id:
            logger.warning(
                "execution_access_denied",
                execution_id=execution_id,
                requested_by=user_id,
                owner=execution.user_id,
            )
            raise ExecutionAccessDeniedError("Access denied to execution")

        return execution
