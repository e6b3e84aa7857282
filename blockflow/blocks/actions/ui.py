"""Client-side UI action blocks.

These blocks do no I/O; they describe an effect for the running app to
apply (show a toast, navigate to a page) and return it in the result.
"""

from datetime import datetime, timezone
from typing import Any

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome, BlockValidationError
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

TOAST_VARIANTS = ("default", "destructive", "success")
DEFAULT_TOAST_DURATION = 5000
MIN_TOAST_DURATION = 1000
MAX_TOAST_DURATION = 30000


class NotifyToastBlock(BaseBlock[dict[str, Any]]):
    """Show a toast notification in the running app."""

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="notify.toast",
            display_name="Show Toast",
            description="Display a toast notification to the app user",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="message", required=True),
                ConfigField(name="title"),
                ConfigField(name="variant", default="default", options=list(TOAST_VARIANTS)),
                ConfigField(name="duration", type=ConfigFieldType.NUMBER, default=DEFAULT_TOAST_DURATION),
                ConfigField(name="position", default="bottom-right"),
            ],
            outputs=["toast"],
            tags=["ui"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        message = config.get("message")
        if not isinstance(message, str) or not message.strip():
            raise BlockValidationError("Toast message is required and cannot be empty", "message")

        variant = config.get("variant") or "default"
        if variant not in TOAST_VARIANTS:
            variant = "default"

        try:
            duration = int(config.get("duration") or DEFAULT_TOAST_DURATION)
        except (TypeError, ValueError):
            duration = DEFAULT_TOAST_DURATION
        if not MIN_TOAST_DURATION <= duration <= MAX_TOAST_DURATION:
            duration = DEFAULT_TOAST_DURATION

        return {
            "message": message,
            "title": config.get("title") or None,
            "variant": variant,
            "duration": duration,
            "position": config.get("position") or "bottom-right",
        }

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        return BlockOutcome(success=True, payload={"toast": config}, output=config)


class PageRedirectBlock(BaseBlock[dict[str, Any]]):
    """Navigate the running app to a page or an external URL."""

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="page.redirect",
            display_name="Redirect",
            description="Send the app user to another page or URL",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="targetPageId"),
                ConfigField(name="url"),
                ConfigField(name="openInNewTab", type=ConfigFieldType.BOOLEAN, default=False),
            ],
            outputs=["redirect"],
            tags=["ui", "navigation"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        if not config.get("targetPageId") and not config.get("url"):
            raise BlockValidationError(
                "No target page ID or URL specified for redirect", "targetPageId"
            )
        return config

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        target_page = config.get("targetPageId")
        redirect = {
            "type": "page" if target_page else "url",
            "target": target_page or config.get("url"),
            "openInNewTab": bool(config.get("openInNewTab", False)),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return BlockOutcome(
            success=True,
            payload={"redirect": redirect},
            context_updates={"redirect": redirect},
        )
