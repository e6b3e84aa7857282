"""Data models - SQLModel entities and runtime models."""

from blockflow.models.app import App, AppCreate, AppRead, AppStatus, AppTable, AppTableRead
from blockflow.models.execution import Execution, ExecutionJob, ExecutionRead, ExecutionStatus
from blockflow.models.node import (
    BlockCategory,
    BlockDefinition,
    ConfigField,
    ConfigFieldType,
    NodeResult,
    WorkflowEdge,
    WorkflowNode,
)
from blockflow.models.user import Token, TokenPayload, User, UserCreate, UserLogin, UserRead
from blockflow.models.workflow import (
    Workflow,
    WorkflowCreate,
    WorkflowExecuteRequest,
    WorkflowRead,
    WorkflowStatus,
    WorkflowUpdate,
)

__all__ = [
    "App",
    "AppCreate",
    "AppRead",
    "AppStatus",
    "AppTable",
    "AppTableRead",
    "BlockCategory",
    "BlockDefinition",
    "ConfigField",
    "ConfigFieldType",
    "Execution",
    "ExecutionJob",
    "ExecutionRead",
    "ExecutionStatus",
    "NodeResult",
    "Token",
    "TokenPayload",
    "User",
    "UserCreate",
    "UserLogin",
    "UserRead",
    "Workflow",
    "WorkflowCreate",
    "WorkflowEdge",
    "WorkflowExecuteRequest",
    "WorkflowNode",
    "WorkflowRead",
    "WorkflowStatus",
    "WorkflowUpdate",
]
