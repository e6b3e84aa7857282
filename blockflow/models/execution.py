"""Execution entity model.

An execution records one workflow run: its status, the ordered result log
and the final context, both stored redacted rather than as-is. Runs of
ad-hoc graphs have no stored workflow.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlmodel import Column, Field, Relationship, SQLModel, Text

from blockflow.core.redaction import redact

if TYPE_CHECKING:
    from blockflow.models.user import User
    from blockflow.models.workflow import Workflow


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class Execution(SQLModel, table=True):
    """Execution database entity.

    Results and contexts are stored as redacted JSON strings.
    """

    __tablename__ = "execution"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique execution identifier (UUID)",
    )
    workflow_id: str | None = Field(
        default=None,
        foreign_key="workflow.id",
        index=True,
        description="Stored workflow, or None for ad-hoc graphs",
    )
    app_id: int = Field(foreign_key="app.id", index=True)
    user_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="User who triggered the execution",
    )
    status: ExecutionStatus = Field(
        default=ExecutionStatus.PENDING,
        index=True,
    )
    trigger: str = Field(
        default="api",
        max_length=50,
        description="What started the run: 'api', 'queue' or 'webhook'",
    )
    input_context: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    results: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="JSON list of node results in visit order",
    )
    output_context: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    error: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    error_code: str | None = Field(default=None, max_length=100)
    steps_completed: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = Field(default=None)

    workflow: "Workflow" = Relationship(back_populates="executions")
    user: "User" = Relationship(back_populates="executions")

    def get_input_context(self) -> dict[str, Any] | None:
        if self.input_context is None:
            return None
        return json.loads(self.input_context)

    def set_input_context(self, data: dict[str, Any]) -> None:
        self.input_context = json.dumps(redact(data), default=str)

    def get_results(self) -> list[dict[str, Any]]:
        if self.results is None:
            return []
        return json.loads(self.results)

    def get_output_context(self) -> dict[str, Any] | None:
        if self.output_context is None:
            return None
        return json.loads(self.output_context)

    @property
    def duration_ms(self) -> int | None:
        """Calculate execution duration in milliseconds."""
        if self.completed_at is None:
            return None
        started = self.started_at
        completed = self.completed_at
        # SQLite drops tzinfo on round-trip
        if started.tzinfo is None and completed.tzinfo is not None:
            started = started.replace(tzinfo=timezone.utc)
        elif completed.tzinfo is None and started.tzinfo is not None:
            completed = completed.replace(tzinfo=timezone.utc)
        return int((completed - started).total_seconds() * 1000)

    def mark_running(self) -> None:
        """Mark execution as running."""
        self.status = ExecutionStatus.RUNNING
        self.attempts += 1

    def mark_finished(
        self,
        status: ExecutionStatus,
        results: list[dict[str, Any]],
        context: dict[str, Any],
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        """Record the outcome of a run that reached the engine."""
        self.status = status
        self.results = json.dumps(redact(results), default=str)
        self.output_context = json.dumps(redact(context), default=str)
        self.steps_completed = len(results)
        self.error = error
        self.error_code = error_code
        self.completed_at = utc_now()

    def mark_failed(self, error: str, error_code: str | None = None) -> None:
        """Mark execution as failed before or outside the graph walk."""
        self.status = ExecutionStatus.FAILED
        self.error = error
        self.error_code = error_code
        self.completed_at = utc_now()

    def mark_cancelled(self) -> None:
        """Mark execution as cancelled."""
        self.status = ExecutionStatus.CANCELLED
        self.completed_at = utc_now()


class ExecutionRead(SQLModel):
    """Schema for reading execution data."""

    id: str
    workflow_id: str | None = None
    app_id: int
    user_id: str
    status: ExecutionStatus
    trigger: str
    results: list[dict[str, Any]] = []
    context: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    steps_completed: int
    attempts: int
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def from_execution(cls, execution: Execution) -> "ExecutionRead":
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            app_id=execution.app_id,
            user_id=execution.user_id,
            status=execution.status,
            trigger=execution.trigger,
            results=execution.get_results(),
            context=execution.get_output_context(),
            error=execution.error,
            error_code=execution.error_code,
            steps_completed=execution.steps_completed,
            attempts=execution.attempts,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration_ms=execution.duration_ms,
        )


@dataclass
class ExecutionJob:
    """Unit of work placed on the job queue.

    Carries the full graph so a worker never needs to reread a workflow
    that may have changed since submission.
    """

    app_id: int
    user_id: str
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]]
    context: dict[str, Any] = field(default_factory=dict)
    execution_id: str | None = None
    workflow_id: str | None = None
    entry_label: str | None = None
    transactional: bool = False
    attempts: int = 0
    job_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "appId": self.app_id,
            "userId": self.user_id,
            "nodes": self.nodes,
            "edges": self.edges,
            "context": self.context,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "entryLabel": self.entry_label,
            "transactional": self.transactional,
            "attempts": self.attempts,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionJob":
        return cls(
            app_id=int(data["appId"]),
            user_id=str(data["userId"]),
            nodes=list(data.get("nodes") or []),
            edges=list(data.get("edges") or []),
            context=dict(data.get("context") or {}),
            execution_id=data.get("executionId"),
            workflow_id=data.get("workflowId"),
            entry_label=data.get("entryLabel"),
            transactional=bool(data.get("transactional", False)),
            attempts=int(data.get("attempts", 0)),
            job_id=data.get("jobId") or str(uuid4()),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ExecutionJob":
        return cls.from_dict(json.loads(raw))
