"""API route handlers."""

from blockflow.api.routes.apps import router as apps_router
from blockflow.api.routes.auth import router as auth_router
from blockflow.api.routes.blocks import router as blocks_router
from blockflow.api.routes.executions import router as executions_router
from blockflow.api.routes.webhook import router as webhook_router
from blockflow.api.routes.workflows import router as workflows_router

__all__ = [
    "apps_router",
    "auth_router",
    "blocks_router",
    "executions_router",
    "webhook_router",
    "workflows_router",
]
