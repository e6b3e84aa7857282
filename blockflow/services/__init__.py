"""Services layer - Business logic and orchestration."""

from blockflow.services.app_service import AppService
from blockflow.services.execution_service import ExecutionRuntime, ExecutionService
from blockflow.services.workflow_service import WorkflowService

__all__ = [
    "AppService",
    "ExecutionRuntime",
    "ExecutionService",
    "WorkflowService",
]
