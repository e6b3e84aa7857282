"""File upload and download blocks.

Neither block moves bytes. ``file.upload`` validates a file the app has
already stored and exposes its descriptor; ``file.download`` resolves a
descriptor the running app can hand to the browser.
"""

from pathlib import PurePosixPath
from typing import Any

import structlog

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome, BlockValidationError, require
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

logger = structlog.get_logger()

DOWNLOAD_SOURCES = ("url", "context", "path")
BYTES_PER_MB = 1024 * 1024


def parse_allowed_types(value: Any) -> list[str]:
    """Normalize an allow-list given as a comma string or a list."""
    if not value:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    return [str(item).strip().lower() for item in items if str(item).strip()]


def mime_allowed(mime_type: str, allowed: list[str]) -> bool:
    """Match a MIME type against exact entries and ``type/*`` wildcards."""
    mime_type = (mime_type or "").lower()
    for entry in allowed:
        if entry == mime_type or entry == "*/*":
            return True
        if entry.endswith("/*") and mime_type.startswith(entry[:-1]):
            return True
    return False


def file_name_of(descriptor: dict[str, Any]) -> str | None:
    for key in ("fileName", "filename", "originalName", "name"):
        if descriptor.get(key):
            return str(descriptor[key])
    url = descriptor.get("url")
    if url:
        return PurePosixPath(str(url)).name or None
    return None


class FileUploadBlock(BaseBlock[dict[str, Any]]):
    """Validate a file uploaded through a form element.

    The file descriptor is read from ``uploadedFiles[<elementId>]``; its
    MIME type and size are checked against the configured limits.
    """

    output_variable_key = "fileUploadOutputVariable"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="file.upload",
            display_name="File Upload",
            description="Take a file uploaded through a form element and check it",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="fileUploadElementId", required=True),
                ConfigField(
                    name="allowedFileTypes",
                    description="Comma-separated MIME types, e.g. application/pdf,image/*",
                ),
                ConfigField(name="fileUploadMaxSizeMB", type=ConfigFieldType.NUMBER),
                ConfigField(name="fileUploadOutputVariable"),
            ],
            outputs=["lastUploadedFile"],
            tags=["file", "form"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        require(config, "fileUploadElementId", "fileUploadElementId is required")
        max_size = config.get("fileUploadMaxSizeMB")
        if max_size not in (None, ""):
            try:
                max_size = float(max_size)
            except (TypeError, ValueError) as e:
                raise BlockValidationError(
                    "fileUploadMaxSizeMB must be a number", "fileUploadMaxSizeMB"
                ) from e
        else:
            max_size = None
        return {
            "element_id": str(config["fileUploadElementId"]),
            "allowed": parse_allowed_types(config.get("allowedFileTypes")),
            "max_size_mb": max_size,
        }

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        element_id = config["element_id"]
        uploads = ctx.data.get("uploadedFiles")
        descriptor = uploads.get(element_id) if isinstance(uploads, dict) else None
        if isinstance(descriptor, list):
            descriptor = descriptor[0] if descriptor else None
        if not isinstance(descriptor, dict):
            return BlockOutcome.failure(
                f"No file found for upload element '{element_id}'", "FILE_NOT_FOUND"
            )

        mime_type = descriptor.get("mimeType") or descriptor.get("mimetype") or ""
        if config["allowed"] and not mime_allowed(mime_type, config["allowed"]):
            return BlockOutcome.failure(
                f"File type {mime_type or 'unknown'} is not allowed. "
                f"Allowed types: {', '.join(config['allowed'])}",
                "FILE_TYPE_NOT_ALLOWED",
            )

        size = descriptor.get("size") or 0
        max_size_mb = config["max_size_mb"]
        if max_size_mb is not None and float(size) > max_size_mb * BYTES_PER_MB:
            return BlockOutcome.failure(
                f"File size {size} bytes exceeds configured limit of {max_size_mb} MB",
                "FILE_TOO_LARGE",
            )

        file_info = {**descriptor, "elementId": element_id, "mimeType": mime_type, "size": size}
        file_info.setdefault("filename", file_name_of(descriptor))

        logger.info("file_upload_accepted", element_id=element_id, size=size)
        return BlockOutcome(
            success=True,
            payload={"file": file_info},
            context_updates={"lastUploadedFile": file_info},
            output=file_info,
        )


class FileDownloadBlock(BaseBlock[dict[str, Any]]):
    """Resolve a downloadable file from a URL, a context key or a stored path."""

    output_variable_key = "downloadOutputVariable"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="file.download",
            display_name="File Download",
            description="Offer a file to the app user for download",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(
                    name="downloadSourceType",
                    default="url",
                    options=list(DOWNLOAD_SOURCES),
                ),
                ConfigField(name="downloadUrl"),
                ConfigField(name="downloadContextKey"),
                ConfigField(name="downloadPath"),
                ConfigField(name="downloadFileName"),
                ConfigField(name="downloadMimeType"),
                ConfigField(name="downloadOutputVariable"),
            ],
            outputs=["lastDownload"],
            tags=["file"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any]:
        source = config.get("downloadSourceType") or "url"
        if source not in DOWNLOAD_SOURCES:
            raise BlockValidationError(
                f"Unsupported download source: {source}", "downloadSourceType"
            )
        required = {"url": "downloadUrl", "context": "downloadContextKey", "path": "downloadPath"}[source]
        require(config, required)
        return {**config, "downloadSourceType": source}

    def _resolve(self, config: dict[str, Any], ctx: BlockContext) -> dict[str, Any] | None:
        source = config["downloadSourceType"]
        if source == "url":
            url = str(config["downloadUrl"])
            return {"url": url, "fileName": PurePosixPath(url.split("?")[0]).name or None}

        if source == "context":
            value = ctx.data.resolve(str(config["downloadContextKey"]))
            if isinstance(value, str) and value:
                return {"url": value, "fileName": PurePosixPath(value).name or None}
            if isinstance(value, dict) and (value.get("url") or value.get("path")):
                described = None
                if not value.get("url"):
                    described = ctx.services.media.describe(str(value["path"]))
                return {
                    "url": value.get("url") or (described or {}).get("url"),
                    "fileName": file_name_of(value),
                    "mimeType": value.get("mimeType"),
                    "size": value.get("size"),
                }
            return None

        return ctx.services.media.describe(str(config["downloadPath"]))

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        resolved = self._resolve(config, ctx)
        if not resolved or not resolved.get("url"):
            source = config["downloadSourceType"]
            where = {
                "url": config.get("downloadUrl"),
                "context": config.get("downloadContextKey"),
                "path": config.get("downloadPath"),
            }[source]
            return BlockOutcome.failure(
                f"No file found for {source} source '{where}'", "FILE_NOT_FOUND"
            )

        download = {
            "url": resolved["url"],
            "fileName": config.get("downloadFileName") or resolved.get("fileName"),
            "mimeType": config.get("downloadMimeType")
            or resolved.get("mimeType")
            or "application/octet-stream",
        }
        if resolved.get("size") is not None:
            download["size"] = resolved["size"]

        logger.info("file_download_resolved", source=config["downloadSourceType"])
        return BlockOutcome(
            success=True,
            payload={"download": download},
            context_updates={"lastDownload": download},
            output=download,
        )
