"""Trigger blocks.

Triggers start a walk. They check that the event data they depend on is in
the context and expose it under well-known keys.
"""

from datetime import datetime, timezone
from typing import Any

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome, BlockValidationError, require
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OnSubmitBlock(BaseBlock[dict[str, Any]]):
    """Form submission trigger.

    Requires a selected form group and a non-empty ``formData`` object. Each
    form field is spread into the context so later blocks can reference it
    directly, and the whole submission is kept under ``formSubmission``.
    """

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="onSubmit",
            display_name="On Form Submit",
            description="Runs when a form group is submitted",
            category=BlockCategory.TRIGGER,
            config=[
                ConfigField(
                    name="selectedFormGroup",
                    description="Form group whose submission starts the workflow",
                    required=True,
                ),
            ],
            outputs=["formData", "formSubmission"],
            tags=["form"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        require(config, "selectedFormGroup", "selectedFormGroup is required: no form group selected")
        return config

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        form_data = ctx.data.get("formData")
        if not isinstance(form_data, dict) or not form_data:
            raise BlockValidationError("No form data provided", "formData")

        submission = {
            "formGroupId": config["selectedFormGroup"],
            "data": form_data,
            "submittedAt": _now(),
        }
        updates = dict(form_data)
        updates["formSubmission"] = submission
        return BlockOutcome(
            success=True,
            payload={"formGroupId": config["selectedFormGroup"], "fieldCount": len(form_data)},
            context_updates=updates,
            output=form_data,
        )


class OnLoginBlock(BaseBlock[dict[str, Any]]):
    """Login trigger. Requires user data carrying ``id`` and ``email``."""

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="onLogin",
            display_name="On Login",
            description="Runs after an app user logs in",
            category=BlockCategory.TRIGGER,
            outputs=["user", "loginTime"],
            tags=["auth"],
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        user = ctx.data.get("user") or ctx.data.get("userData")
        if not isinstance(user, dict) or not user.get("id") or not user.get("email"):
            return BlockOutcome.failure(
                "User data with id and email is required for login trigger",
                "CONFIGURATION_ERROR",
            )
        login_time = _now()
        return BlockOutcome(
            success=True,
            payload={"userId": user["id"]},
            context_updates={"user": user, "loginTime": login_time},
            output=user,
        )


class OnWebhookBlock(BaseBlock[dict[str, Any]]):
    """Webhook trigger. Exposes the received payload as ``webhookPayload``."""

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="onWebhook",
            display_name="On Webhook",
            description="Runs when an authenticated webhook is received for the app",
            category=BlockCategory.TRIGGER,
            outputs=["webhookPayload"],
            tags=["integration"],
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        payload = ctx.data.get("webhookPayload")
        if payload is None:
            return BlockOutcome.failure("No webhook payload in context", "CONFIGURATION_ERROR")
        return BlockOutcome(
            success=True,
            payload={"source": ctx.data.get("webhookSource")},
            output=payload,
        )


class OnClickBlock(BaseBlock[dict[str, Any]]):
    """Element click trigger."""

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="onClick",
            display_name="On Click",
            description="Runs when a bound element is clicked",
            category=BlockCategory.TRIGGER,
            config=[ConfigField(name="elementId", description="Element that was clicked")],
            outputs=["clickedElementId"],
            tags=["ui"],
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        element_id = config.get("elementId") or ctx.data.get("elementId")
        return BlockOutcome(
            success=True,
            payload={"elementId": element_id},
            context_updates={"clickedElementId": element_id, "clickedAt": _now()},
        )


class OnPageLoadBlock(BaseBlock[dict[str, Any]]):
    """Page load trigger."""

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="onPageLoad",
            display_name="On Page Load",
            description="Runs when a page of the app is opened",
            category=BlockCategory.TRIGGER,
            config=[
                ConfigField(name="pageId", description="Page the trigger is bound to"),
                ConfigField(name="loadData", type=ConfigFieldType.BOOLEAN, default=False),
            ],
            outputs=["pageLoad"],
            tags=["ui"],
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        page_id = config.get("pageId") or ctx.data.get("pageId")
        page_load = {"pageId": page_id, "loadedAt": _now()}
        return BlockOutcome(
            success=True,
            payload={"pageId": page_id},
            context_updates={"pageLoad": page_load},
        )
