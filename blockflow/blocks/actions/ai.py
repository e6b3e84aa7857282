"""AI document summarization block."""

import asyncio
import io
import json
from typing import Any

import structlog
from docx2txt import docx2txt

from blockflow.blocks.base import BaseBlock, BlockContext, BlockExecutionError, BlockOutcome, BlockValidationError
from blockflow.blocks.actions.files import file_name_of
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

logger = structlog.get_logger()

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME_TYPES = frozenset({"application/json", "application/xml", "application/csv"})
FILE_FIELDS = ("fileName", "filename", "originalName", "mimeType", "mimetype", "url", "path")


def is_supported(mime_type: str) -> bool:
    mime_type = (mime_type or "").lower()
    return mime_type.startswith("text/") or mime_type in TEXT_MIME_TYPES or mime_type == DOCX_MIME_TYPE


def find_file(file_variable: str, ctx: BlockContext) -> dict[str, Any] | None:
    """Locate the file descriptor named by ``fileVariable``.

    Looked up as a context path first, then as an upload element id, then
    among file descriptors in the context carrying a matching ``elementId``
    or ``id``. Only objects with a file field (name, MIME type, url or path)
    count as descriptors in that last step.
    """
    value = ctx.data.resolve(file_variable)
    if isinstance(value, dict):
        return value

    uploads = ctx.data.get("uploadedFiles")
    if isinstance(uploads, dict) and isinstance(uploads.get(file_variable), dict):
        return uploads[file_variable]

    for item in ctx.data.values():
        if not isinstance(item, dict) or not any(item.get(key) for key in FILE_FIELDS):
            continue
        if file_variable in (item.get("elementId"), item.get("id")):
            return item
    return None


async def extract_text(descriptor: dict[str, Any], ctx: BlockContext) -> str:
    """Return the text of a file descriptor.

    Inline ``text``/``content`` fields win; otherwise the bytes are read from
    media storage and decoded according to the MIME type.

    Raises:
        BlockExecutionError: If the file is unsupported or unreadable
    """
    for key in ("text", "content"):
        if isinstance(descriptor.get(key), str) and descriptor[key].strip():
            return descriptor[key]

    mime_type = str(descriptor.get("mimeType") or descriptor.get("mimetype") or "").lower()
    if not is_supported(mime_type):
        raise BlockExecutionError(
            f"Unsupported file type: {mime_type or 'unknown'}. Supported types: DOCX, TXT, JSON",
            block_name="ai.summarize",
            error_code="UNSUPPORTED_FILE_TYPE",
        )

    data = await ctx.services.media.read(descriptor)
    if data is None:
        raise BlockExecutionError(
            f"File not found: {file_name_of(descriptor) or 'unknown'}",
            block_name="ai.summarize",
            error_code="FILE_NOT_FOUND",
        )

    if mime_type == DOCX_MIME_TYPE:
        return await asyncio.to_thread(docx2txt.process, io.BytesIO(data))

    text = data.decode("utf-8", errors="replace")
    if mime_type == "application/json":
        try:
            text = json.dumps(json.loads(text), indent=2)
        except ValueError:
            pass
    return text


class AiSummarizeBlock(BaseBlock[dict[str, Any]]):
    """Summarize an uploaded document.

    The file is checked before the API key, so a workflow missing both
    reports the missing file first.
    """

    default_output_variable = "aiSummary"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="ai.summarize",
            display_name="Summarize Document",
            description="Summarize an uploaded document with Gemini",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(
                    name="fileVariable",
                    required=True,
                    description="Context variable or upload element holding the file",
                ),
                ConfigField(name="apiKey", type=ConfigFieldType.SECRET, required=True),
                ConfigField(name="outputVariable", default="aiSummary"),
            ],
            outputs=["aiSummary", "aiSummaryMetadata"],
            tags=["ai", "file"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        file_variable = config.get("fileVariable")
        if not isinstance(file_variable, str) or not file_variable.strip():
            raise BlockValidationError("File variable is required for AI summarization", "fileVariable")

        descriptor = find_file(file_variable.strip(), ctx)
        if descriptor is None:
            raise BlockValidationError(
                f"File variable '{file_variable}' not found in context. "
                "Make sure a file is uploaded first.",
                "fileVariable",
            )

        api_key = config.get("apiKey")
        if not isinstance(api_key, str) or not api_key.strip():
            raise BlockValidationError("Gemini API key is required for AI summarization", "apiKey")

        return {"descriptor": descriptor, "api_key": api_key.strip()}

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        summarizer = ctx.services.summarizer
        if summarizer is None:
            raise BlockExecutionError(
                "AI summarization is not configured",
                block_name="ai.summarize",
                error_code="AI_NOT_CONFIGURED",
            )

        await ctx.services.security.assert_app_access(ctx.app_id, ctx.user_id)

        descriptor = config["descriptor"]
        text = await extract_text(descriptor, ctx)
        if not text.strip():
            raise BlockExecutionError(
                "No text content found in the uploaded file",
                block_name="ai.summarize",
                error_code="EMPTY_DOCUMENT",
            )

        summary = await summarizer.summarize(text, config["api_key"])
        metadata = {
            "originalLength": len(text),
            "summaryLength": len(summary),
            "compressionRatio": round(1 - len(summary) / len(text), 4),
            "fileName": file_name_of(descriptor),
            "fileSize": descriptor.get("size"),
        }

        logger.info(
            "document_summarized",
            original_length=len(text),
            summary_length=len(summary),
            execution_id=ctx.execution_id,
        )
        return BlockOutcome(
            success=True,
            payload={"summary": {"text": summary, **metadata}},
            context_updates={"aiSummaryMetadata": metadata},
            output=summary,
        )
