"""Email sending block."""

import re
from datetime import datetime, timezone
from typing import Any

import structlog

from blockflow.blocks.base import BaseBlock, BlockContext, BlockExecutionError, BlockOutcome, BlockValidationError
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _first(config: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = config.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_recipients(value: Any) -> list[str]:
    """Split a recipient list given as a comma string or a list."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        items = [str(value)]
    return [item.strip() for item in items if item and item.strip()]


class EmailSendBlock(BaseBlock[dict[str, Any]]):
    """Send an email through the configured sender.

    Accepts ``emailTo``/``emailSubject``/``emailBody`` as saved by the
    editor, or the short ``to``/``subject``/``body`` names.
    """

    operation = "email.send"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="email.send",
            display_name="Send Email",
            description="Send an email to one or more recipients",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="emailTo", required=True, description="Comma-separated recipients"),
                ConfigField(name="emailSubject", required=True),
                ConfigField(name="emailBody", required=True),
                ConfigField(name="emailBodyType", default="html", options=["html", "text"]),
                ConfigField(name="emailFrom"),
                ConfigField(name="outputVariable", type=ConfigFieldType.STRING),
            ],
            outputs=["emailSendResult"],
            tags=["notification"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        to = _first(config, "emailTo", "to")
        subject = _first(config, "emailSubject", "subject")
        body = _first(config, "emailBody", "body")
        if to is None:
            raise BlockValidationError("Recipient email is required", "emailTo")
        if subject is None:
            raise BlockValidationError("Email subject is required", "emailSubject")
        if body is None:
            raise BlockValidationError("Email body is required", "emailBody")

        recipients = parse_recipients(to)
        if not recipients:
            raise BlockValidationError("Recipient email is required", "emailTo")
        for address in recipients:
            if not EMAIL_PATTERN.match(address):
                raise BlockValidationError(f"Invalid email address: {address}", "emailTo")

        return {
            "to": recipients,
            "subject": str(subject),
            "body": str(body),
            "html": (config.get("emailBodyType") or "html") == "html",
            "sender": _first(config, "emailFrom", "from"),
        }

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        sender = ctx.services.email
        if sender is None:
            raise BlockExecutionError(
                "Email delivery is not configured",
                block_name="email.send",
                error_code="EMAIL_NOT_CONFIGURED",
            )

        security = ctx.services.security
        await security.assert_app_access(ctx.app_id, ctx.user_id)
        await security.enforce_rate_limit(ctx.user_id, self.operation)

        message_id = await sender.send(
            config["to"],
            config["subject"],
            config["body"],
            html=config["html"],
            sender=config["sender"],
        )

        logger.info(
            "email_block_sent",
            recipient_count=len(config["to"]),
            execution_id=ctx.execution_id,
        )
        result = {
            "success": True,
            "messageId": message_id,
            "to": ", ".join(config["to"]),
            "subject": config["subject"],
            "sentAt": datetime.now(timezone.utc).isoformat(),
        }
        return BlockOutcome(
            success=True,
            payload={"emailSent": True, "messageId": message_id},
            context_updates={"emailSendResult": result},
            output=result,
        )
