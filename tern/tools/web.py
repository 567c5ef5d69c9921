"""http_request tool: fetch a URL (or send a request) with SSRF protection.

Hostnames are resolved and checked against private ranges on the initial
URL and on every redirect hop. HTML responses are reduced to readable text.
"""

from __future__ import annotations

import html as html_module
import ipaddress
import json
import logging
import re
import socket
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from tern.config import Settings
from tern.tools.registry import (
    Capability,
    Tool,
    ToolError,
    ToolErrorKind,
    ToolExecutionContext,
    ToolOutcome,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE")
_SAFE_METHODS = ("GET", "HEAD")
_MAX_REDIRECTS = 5

_BLOCKED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]
_BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0"}


def check_url(url: str) -> None:
    """Raise ToolError(PERMISSION_DENIED) if the URL targets a private address."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ToolError(ToolErrorKind.INVALID_INPUT, "URL must start with http:// or https://")
    hostname = parsed.hostname
    if not hostname:
        raise ToolError(ToolErrorKind.INVALID_INPUT, "Could not parse hostname from URL")
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        raise ToolError(ToolErrorKind.PERMISSION_DENIED, f"Blocked hostname: {hostname}")
    try:
        addr_infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as e:
        raise ToolError(ToolErrorKind.EXECUTION, f"Could not resolve hostname: {hostname}") from e
    for addr_info in addr_infos:
        ip = ipaddress.ip_address(addr_info[4][0])
        for network in _BLOCKED_NETWORKS:
            if ip in network:
                raise ToolError(
                    ToolErrorKind.PERMISSION_DENIED,
                    f"URL resolves to blocked IP range ({network})",
                )


def extract_readable(html: str) -> str:
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


class HttpRequestTool:
    """Holds the shared httpx client; its bound __call__ is the tool handler."""

    def __init__(
        self,
        max_chars: int,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        url_check=check_url,
    ) -> None:
        self._max_chars = max_chars
        self._http = httpx.AsyncClient(timeout=15, transport=transport)
        self._url_check = url_check

    async def close(self) -> None:
        await self._http.aclose()

    async def __call__(self, arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
        url = arguments.get("url")
        if not isinstance(url, str) or not url:
            raise ToolError(ToolErrorKind.INVALID_INPUT, "'url' must be a non-empty string")
        method = str(arguments.get("method") or "GET").upper()
        if method not in _METHODS:
            raise ToolError(ToolErrorKind.INVALID_INPUT, f"Unsupported method: {method}")
        if context.read_only and method not in _SAFE_METHODS:
            raise ToolError(
                ToolErrorKind.PERMISSION_DENIED,
                f"{method} requests are not allowed in read-only mode",
            )
        headers = {"User-Agent": "tern/0.1 (coding assistant)", **(arguments.get("headers") or {})}
        body = arguments.get("body")
        content = json.dumps(body) if isinstance(body, (dict, list)) else body

        current_url = url
        response: httpx.Response | None = None
        try:
            for _ in range(_MAX_REDIRECTS + 1):
                self._url_check(current_url)
                response = await self._http.request(
                    method,
                    current_url,
                    headers=headers,
                    content=content,
                    follow_redirects=False,
                )
                if response.status_code not in (301, 302, 303, 307, 308):
                    break
                location = response.headers.get("location", "")
                if not location:
                    break
                current_url = urljoin(current_url, location)
                if response.status_code == 303:
                    method, content = "GET", None
            else:
                raise ToolError(ToolErrorKind.EXECUTION, f"Too many redirects (max {_MAX_REDIRECTS})")
        except httpx.TimeoutException as e:
            raise ToolError(ToolErrorKind.TIMEOUT, f"Request timed out for: {url}") from e
        except httpx.HTTPError as e:
            raise ToolError(ToolErrorKind.EXECUTION, f"Could not fetch {url}: {e}") from e

        if response is None:
            raise ToolError(ToolErrorKind.EXECUTION, "No response received")
        content_type = response.headers.get("content-type", "")
        is_text = any(
            t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml")
        )
        if content_type and not is_text:
            text = f"(binary content, {len(response.content):,} bytes, content-type: {content_type})"
        elif "html" in content_type:
            text = extract_readable(response.text)
        else:
            text = response.text

        limit = min(int(arguments.get("max_chars") or self._max_chars), 50_000)
        if len(text) > limit:
            text = text[:limit] + "\n\n[... truncated]"
        return ToolOutcome(
            f"HTTP {response.status_code} from {current_url} ({len(text)} chars):\n\n{text}",
            is_error=response.status_code >= 400,
            metadata={"status": response.status_code},
        )


_HTTP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "url": {"type": "string", "description": "http:// or https:// URL"},
        "method": {"type": "string", "enum": list(_METHODS), "default": "GET"},
        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
        "body": {"description": "Request body; objects are sent as JSON"},
        "max_chars": {"type": "integer", "minimum": 1, "maximum": 50000},
    },
    "required": ["url"],
}


def register_web_tools(
    registry: ToolRegistry,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpRequestTool:
    """Register http_request. Returns the handler so the caller can close it."""
    handler = HttpRequestTool(settings.http_max_chars, transport=transport)
    registry.register(
        Tool(
            "http_request",
            "Send an HTTP request to a public URL and return the response text",
            _HTTP_SCHEMA,
            handler,
            frozenset({Capability.NETWORK}),
            requires_approval=True,
        )
    )
    return handler
