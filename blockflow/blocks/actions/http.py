"""Outbound HTTP request block."""

import asyncio
import base64
import ipaddress
import json
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome, BlockValidationError
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

logger = structlog.get_logger()

BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "169.254.169.254",
        "metadata.google.internal",
    }
)
BLOCKED_PORTS = frozenset({22, 23, 25, 3306, 5432, 6379, 27017})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})
MAX_REDIRECTS = 5


class BlockedDestinationError(ValueError):
    """Request target is an internal host, a private range or a sensitive port."""


def is_internal_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


def check_destination(url: str) -> None:
    """Refuse URLs that would reach internal infrastructure.

    Raises:
        BlockedDestinationError: If the URL is malformed or targets a
            loopback, metadata or private address, or a blocked port
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise BlockedDestinationError("Invalid URL format") from e

    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise BlockedDestinationError("Invalid URL format")

    host = parts.hostname.lower()
    if host in BLOCKED_HOSTS:
        raise BlockedDestinationError("Access to localhost/internal IPs is not allowed")

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None
    if address is not None and is_internal_address(address):
        raise BlockedDestinationError("Access to private IP ranges is not allowed")

    if port is not None and port in BLOCKED_PORTS:
        raise BlockedDestinationError(f"Access to port {port} is not allowed")


async def check_resolved_host(host: str) -> None:
    """Refuse host names that resolve to an internal address.

    Unresolvable names pass; the connection attempt reports them.

    Raises:
        BlockedDestinationError: If any resolved address is internal
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except OSError:
        return
    for info in infos:
        try:
            address = ipaddress.ip_address(info[4][0].split("%", 1)[0])
        except ValueError:
            continue
        if is_internal_address(address):
            raise BlockedDestinationError("Access to private IP ranges is not allowed")


def destination_guard(resolve: bool):
    """httpx request hook that checks every hop, redirects included."""

    async def guard(request: httpx.Request) -> None:
        check_destination(str(request.url))
        if resolve:
            await check_resolved_host(request.url.host)

    return guard


@dataclass
class HttpRequestConfig:
    """Validated configuration for ``http.request``."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    content: str | None = None
    timeout: float = 30.0
    follow_redirects: bool = True
    verify: bool = True
    response_type: str = "json"
    save_to: str = "httpResponse"


def _collect_headers(raw: Any) -> dict[str, str]:
    """Headers arrive as ``[{key, value}]`` from the editor or as a mapping."""
    headers: dict[str, str] = {}
    if isinstance(raw, dict):
        items = raw.items()
    elif isinstance(raw, list):
        items = [(h.get("key"), h.get("value")) for h in raw if isinstance(h, dict)]
    else:
        items = []
    for key, value in items:
        if key and value not in (None, ""):
            headers[str(key)] = str(value)
    return headers


def _apply_auth(headers: dict[str, str], auth_type: str, auth: dict[str, Any]) -> None:
    if auth_type == "bearer" and auth.get("token"):
        headers["Authorization"] = f"Bearer {auth['token']}"
    elif auth_type == "api-key" and auth.get("apiKey"):
        headers[auth.get("apiKeyHeader") or "X-API-Key"] = str(auth["apiKey"])
    elif auth_type == "basic" and auth.get("username") and auth.get("password"):
        credentials = f"{auth['username']}:{auth['password']}".encode()
        headers["Authorization"] = f"Basic {base64.b64encode(credentials).decode()}"


class HttpRequestBlock(BaseBlock[HttpRequestConfig]):
    """Call an external HTTP endpoint and save the response in the context.

    Any status is recorded; the block succeeds only for 2xx. Transport
    failures are reported with a classified error such as ``TIMEOUT``.
    """

    output_variable_key = "saveResponseTo"
    default_output_variable = "httpResponse"

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="http.request",
            display_name="HTTP Request",
            description="Send an HTTP request to an external API",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="url", required=True),
                ConfigField(name="method", default="GET", options=sorted(ALLOWED_METHODS)),
                ConfigField(name="headers", type=ConfigFieldType.ARRAY, default=[]),
                ConfigField(name="bodyType", default="none", options=["none", "json", "raw"]),
                ConfigField(name="body", type=ConfigFieldType.JSON),
                ConfigField(
                    name="authType", default="none", options=["none", "bearer", "api-key", "basic"]
                ),
                ConfigField(name="authConfig", type=ConfigFieldType.SECRET),
                ConfigField(name="timeout", type=ConfigFieldType.NUMBER, default=30000),
                ConfigField(name="followRedirects", type=ConfigFieldType.BOOLEAN, default=True),
                ConfigField(name="validateSSL", type=ConfigFieldType.BOOLEAN, default=True),
                ConfigField(name="responseType", default="json", options=["json", "text"]),
                ConfigField(name="saveResponseTo", default="httpResponse"),
            ],
            outputs=["httpResponse"],
            tags=["integration", "api"],
        )

    def validate_config(self, config: dict[str, Any], ctx: BlockContext) -> HttpRequestConfig:
        url = config.get("url")
        if not isinstance(url, str) or not url.strip():
            raise BlockValidationError("URL is required for HTTP request", "url")
        url = url.strip()
        try:
            check_destination(url)
        except BlockedDestinationError as e:
            raise BlockValidationError(str(e), "url") from e

        method = str(config.get("method") or "GET").upper()
        if method not in ALLOWED_METHODS:
            raise BlockValidationError(f"Unsupported HTTP method: {method}", "method")

        headers = _collect_headers(config.get("headers"))
        auth = config.get("authConfig") if isinstance(config.get("authConfig"), dict) else {}
        _apply_auth(headers, config.get("authType") or "none", auth)

        body = None
        content = None
        raw_body = config.get("body")
        if method in BODY_METHODS and raw_body not in (None, ""):
            body_type = config.get("bodyType") or "none"
            if body_type == "json":
                if isinstance(raw_body, str):
                    try:
                        body = json.loads(raw_body)
                    except ValueError as e:
                        raise BlockValidationError("Invalid JSON in request body", "body") from e
                else:
                    body = raw_body
            elif body_type == "raw":
                content = raw_body if isinstance(raw_body, str) else json.dumps(raw_body)
                headers.setdefault("Content-Type", "text/plain")

        try:
            timeout_ms = float(config.get("timeout") or 30000)
        except (TypeError, ValueError) as e:
            raise BlockValidationError("timeout must be a number of milliseconds", "timeout") from e

        return HttpRequestConfig(
            url=url,
            method=method,
            headers=headers,
            body=body,
            content=content,
            timeout=min(timeout_ms / 1000, ctx.services.http_timeout),
            follow_redirects=config.get("followRedirects", True) is not False,
            verify=config.get("validateSSL", True) is not False,
            response_type=config.get("responseType") or "json",
            save_to=config.get("saveResponseTo") or self.default_output_variable,
        )

    async def execute(self, config: HttpRequestConfig, ctx: BlockContext) -> BlockOutcome:
        sent_at = datetime.now(timezone.utc)
        client_kwargs: dict[str, Any] = {
            "timeout": config.timeout,
            "follow_redirects": config.follow_redirects,
            "max_redirects": MAX_REDIRECTS,
        }
        transport = ctx.services.http_transport
        if transport is not None:
            client_kwargs["transport"] = transport
        else:
            client_kwargs["verify"] = config.verify
        client_kwargs["event_hooks"] = {"request": [destination_guard(resolve=transport is None)]}

        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.request(
                    config.method,
                    config.url,
                    headers=config.headers,
                    json=config.body,
                    content=config.content,
                )
        except BlockedDestinationError as e:
            logger.warning("http_request_blocked", execution_id=ctx.execution_id)
            return self._transport_failure(config, "CONFIGURATION_ERROR", str(e), sent_at)
        except httpx.TimeoutException:
            return self._transport_failure(config, "TIMEOUT", "Request timed out", sent_at)
        except httpx.ConnectError:
            return self._transport_failure(
                config, "CONNECTION_REFUSED", "Could not connect to the server", sent_at
            )
        except httpx.TooManyRedirects:
            return self._transport_failure(config, "HTTP_ERROR", "Too many redirects", sent_at)
        except httpx.RequestError as e:
            return self._transport_failure(config, "NETWORK_ERROR", f"Request failed: {e}", sent_at)

        received_at = datetime.now(timezone.utc)
        is_success = 200 <= response.status_code < 300

        data: Any = response.text
        if config.response_type == "json":
            try:
                data = response.json()
            except ValueError:
                data = response.text

        saved = {
            "success": is_success,
            "statusCode": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "data": data,
            "timing": {
                "requestSentAt": sent_at.isoformat(),
                "responseReceivedAt": received_at.isoformat(),
                "duration": int((received_at - sent_at).total_seconds() * 1000),
            },
        }

        logger.info(
            "http_request_completed",
            method=config.method,
            status_code=response.status_code,
            execution_id=ctx.execution_id,
        )

        message = f"HTTP {config.method} request completed with status {response.status_code}"
        if not is_success:
            return BlockOutcome(
                success=False,
                payload={"isValid": False, "statusCode": response.status_code, "message": message},
                context_updates={config.save_to: saved},
                error=f"HTTP {response.status_code}: {response.reason_phrase}",
                error_code="HTTP_ERROR",
            )
        return BlockOutcome(
            success=True,
            payload={"isValid": True, "statusCode": response.status_code, "message": message},
            output=saved,
        )

    def _transport_failure(
        self,
        config: HttpRequestConfig,
        error_type: str,
        message: str,
        sent_at: datetime,
    ) -> BlockOutcome:
        logger.warning("http_request_failed", error_type=error_type)
        saved = {
            "success": False,
            "error": error_type,
            "errorMessage": message,
            "timing": {"requestSentAt": sent_at.isoformat(), "failed": True},
        }
        return BlockOutcome(
            success=False,
            payload={"isValid": False, "errorMessage": message},
            context_updates={config.save_to: saved},
            error=message,
            error_code=error_type,
        )
