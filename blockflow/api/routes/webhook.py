"""Inbound webhook endpoint.

``POST /workflow/webhook/{source}`` authenticates the caller with the shared
secret before anything else happens, then queues every active webhook
workflow of the target app.
"""

import json
from typing import Any

import structlog
from fastapi import APIRouter, Header, Query, Request, status
from fastapi.responses import JSONResponse

from blockflow.api.deps import ExecutionServiceDep
from blockflow.config import settings
from blockflow.core.webhooks import WebhookError, authenticate_webhook, extract_secret
from blockflow.services.app_service import AppNotFoundError
from blockflow.services.execution_service import NoWebhookWorkflowsError

logger = structlog.get_logger()

router = APIRouter()

ENVELOPE_KEYS = ("secret", "appId")


def _parse_body(raw: bytes) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


def _reject(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@router.post("/webhook/{source}")
async def receive_webhook(
    source: str,
    request: Request,
    service: ExecutionServiceDep,
    x_webhook_secret: str | None = Header(default=None),
    x_webhook_signature: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    app_id_param: int | None = Query(default=None, alias="appId"),
) -> JSONResponse:
    """Receive a webhook and queue the app's webhook workflows.

    The body may carry ``secret`` and ``appId`` next to the payload; a
    ``payload`` object, when present, is used as the payload itself.

    Returns:
        202 with the queued execution ids; 403 on a bad secret or
        signature; 500 when no secret is configured; 400 on an empty
        payload or missing app id; 404 when there is nothing to run
    """
    raw = await request.body()
    body = _parse_body(raw)

    expected = settings.webhook_secret.get_secret_value() if settings.webhook_secret else None
    provided = extract_secret(x_webhook_secret, authorization, body.get("secret"))
    try:
        authenticate_webhook(expected, provided, raw, x_webhook_signature)
    except WebhookError as e:
        return _reject(e.status_code, str(e))

    payload = body.get("payload")
    if not isinstance(payload, dict):
        payload = {k: v for k, v in body.items() if k not in ENVELOPE_KEYS}
    if not payload:
        return _reject(status.HTTP_400_BAD_REQUEST, "Webhook payload is empty")

    app_id = app_id_param if app_id_param is not None else body.get("appId")
    try:
        app_id = int(app_id)
    except (TypeError, ValueError):
        return _reject(status.HTTP_400_BAD_REQUEST, "appId is required")

    try:
        execution_ids = await service.trigger_webhook(app_id, source, payload)
    except (AppNotFoundError, NoWebhookWorkflowsError) as e:
        return _reject(status.HTTP_404_NOT_FOUND, str(e))

    logger.info("webhook_accepted", source=source, app_id=app_id, executions=len(execution_ids))
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"success": True, "executionIds": execution_ids},
    )
