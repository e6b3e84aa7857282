"""Workflow entity model.

Workflows are stored as JSON graphs of nodes and edges and belong to an app.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlmodel import Column, Field, Relationship, SQLModel, Text

from blockflow.models.node import WorkflowEdge, WorkflowNode

if TYPE_CHECKING:
    from blockflow.models.app import App
    from blockflow.models.execution import Execution
    from blockflow.models.user import User


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class WorkflowBase(SQLModel):
    """Base workflow fields shared across models."""

    name: str = Field(
        max_length=255,
        min_length=1,
        description="Workflow name",
    )
    description: str | None = Field(
        default=None,
        max_length=2000,
        description="Workflow description",
    )


class Workflow(WorkflowBase, table=True):
    """Workflow database entity.

    Graph schema:
    {
        "nodes": [{"id": str, "label": str, "category": str, "config": dict}],
        "edges": [{"source": str, "target": str, "branch": str | None}]
    }
    Editor-shaped nodes (``{"id", "data": {...}}``) are accepted as well.
    """

    __tablename__ = "workflow"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique workflow identifier (UUID)",
    )
    app_id: int = Field(
        foreign_key="app.id",
        index=True,
        description="App this workflow belongs to",
    )
    user_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="Author user ID",
    )
    graph: str = Field(
        sa_column=Column(Text, nullable=False),
        description="JSON workflow graph definition",
    )
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column_kwargs={"onupdate": utc_now},
    )

    app: "App" = Relationship(back_populates="workflows")
    user: "User" = Relationship(back_populates="workflows")
    executions: list["Execution"] = Relationship(back_populates="workflow")

    def get_graph(self) -> dict[str, Any]:
        """Parse and return the workflow graph as a dictionary."""
        return json.loads(self.graph)

    def set_graph(self, graph_dict: dict[str, Any]) -> None:
        """Set the workflow graph from a dictionary."""
        self.graph = json.dumps(graph_dict)

    def get_nodes(self) -> list[WorkflowNode]:
        return [WorkflowNode.from_dict(n) for n in self.get_graph().get("nodes", [])]

    def get_edges(self) -> list[WorkflowEdge]:
        return [WorkflowEdge.from_dict(e) for e in self.get_graph().get("edges", [])]


class WorkflowGraph(SQLModel):
    """Schema for the complete workflow graph.

    Nodes and edges stay loosely typed here; they are parsed and checked
    against the block registry by the workflow service.
    """

    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)


class WorkflowCreate(WorkflowBase):
    """Schema for creating a new workflow."""

    app_id: int
    graph: WorkflowGraph
    status: WorkflowStatus = WorkflowStatus.DRAFT

    @field_validator("graph", mode="before")
    @classmethod
    def validate_graph(cls, v: Any) -> WorkflowGraph:
        """Validate and parse graph input."""
        if isinstance(v, dict):
            return WorkflowGraph(**v)
        return v


class WorkflowUpdate(SQLModel):
    """Schema for updating a workflow."""

    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    graph: WorkflowGraph | None = None
    status: WorkflowStatus | None = None


class WorkflowRead(WorkflowBase):
    """Schema for reading workflow data."""

    id: str
    app_id: int
    user_id: str
    graph: WorkflowGraph
    status: WorkflowStatus
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("graph", mode="before")
    @classmethod
    def parse_graph(cls, v: Any) -> WorkflowGraph:
        """Parse graph from JSON string or dict."""
        if isinstance(v, str):
            return WorkflowGraph(**json.loads(v))
        if isinstance(v, dict):
            return WorkflowGraph(**v)
        return v


class WorkflowExecuteRequest(BaseModel):
    """Ad-hoc execution request: a graph plus its initial context."""

    app_id: int = PydanticField(alias="appId")
    nodes: list[dict[str, Any]] = PydanticField(default_factory=list)
    edges: list[dict[str, Any]] = PydanticField(default_factory=list)
    context: dict[str, Any] = PydanticField(default_factory=dict)
    run_async: bool = PydanticField(default=False, alias="async")
    transactional: bool = False
    entry_label: str | None = PydanticField(default=None, alias="entryLabel")

    model_config = ConfigDict(populate_by_name=True)


class StoredWorkflowExecuteRequest(BaseModel):
    """Execution request for a stored workflow."""

    context: dict[str, Any] = PydanticField(default_factory=dict)
    run_async: bool = PydanticField(default=False, alias="async")
    transactional: bool = False
    entry_label: str | None = PydanticField(default=None, alias="entryLabel")

    model_config = ConfigDict(populate_by_name=True)
