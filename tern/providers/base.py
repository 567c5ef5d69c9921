"""Provider adapter contract and the shared httpx plumbing.

Each adapter owns three translations: canonical Request -> wire payload,
wire response -> canonical Response, and wire stream events -> StreamDelta.
The HTTP client, error classification and SSE line handling live here so
adapters cannot diverge on them.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from tern.errors import (
    Authentication,
    MalformedRequest,
    NetworkTransient,
    ProviderError,
    RateLimited,
)
from tern.providers.types import (
    Request,
    Response,
    StreamDelta,
    TextDelta,
    Usage,
    UsageSummary,
)

logger = logging.getLogger(__name__)

_RETRY_AFTER_RE = re.compile(
    r"(?:try again in|retry after)\s+(\d+(?:\.\d+)?)\s*(ms|s|seconds?)?", re.IGNORECASE
)


@dataclass(frozen=True)
class ModelInfo:
    """Per-model metadata. Prices are per `price_unit` tokens."""

    context_window: int
    input_price: float
    output_price: float
    price_unit: int = 1_000_000


def parse_retry_after(headers: httpx.Headers | dict[str, str], message: str = "") -> float | None:
    """Server-suggested delay from a retry-after header or the error text."""
    raw = headers.get("retry-after")
    if raw:
        try:
            return max(0.0, float(raw))
        except ValueError:
            logger.debug("Non-numeric retry-after header: %s", raw)
    match = _RETRY_AFTER_RE.search(message or "")
    if match:
        value = float(match.group(1))
        return value / 1000 if (match.group(2) or "").lower() == "ms" else value
    return None


def classify_status(
    status_code: int,
    message: str,
    headers: httpx.Headers | dict[str, str] | None = None,
) -> ProviderError:
    """Map an HTTP failure onto the provider error taxonomy."""
    headers = headers or {}
    if status_code in (401, 403):
        return Authentication(message, status_code=status_code)
    if status_code == 429:
        return RateLimited(message, retry_after=parse_retry_after(headers, message))
    if status_code in (408, 409) or status_code >= 500:
        return NetworkTransient(message, status_code=status_code)
    return MalformedRequest(message, status_code=status_code)


def error_message_from_body(status_code: int, body: bytes | str) -> str:
    """Pull a readable message out of a JSON error body, else raw text."""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        data = json.loads(text)
    except ValueError:
        return f"HTTP {status_code}: {text[:500]}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        kind = error.get("type") or error.get("code") or "error"
        return f"HTTP {status_code}: {kind} - {error.get('message', '')}"
    if isinstance(error, str):
        return f"HTTP {status_code}: {error}"
    return f"HTTP {status_code}: {text[:500]}"


class StreamDecoder(ABC):
    """Incremental decoder for one streamed response.

    feed() consumes one decoded `data:` payload and returns the deltas it
    produced; finish() assembles the final Response once the stream ends.
    """

    @abstractmethod
    def feed(self, data: dict[str, Any]) -> list[StreamDelta]: ...

    @abstractmethod
    def finish(self) -> Response: ...

    @property
    def done(self) -> bool:
        """True once the response is complete; reading can stop."""
        return False

    @property
    def complete(self) -> bool:
        """True once the terminal event arrived, even if trailing data may follow."""
        return self.done


class Provider(ABC):
    """Base class for provider adapters."""

    name: str = "provider"
    supports_streaming: bool = True
    supports_tools: bool = True
    supports_vision: bool = False
    models: dict[str, ModelInfo] = {}

    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        timeout_connect: float = 10.0,
        timeout_read: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.default_model = default_model
        self._timeout_connect = timeout_connect
        self._timeout_read = timeout_read
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"content-type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            timeout = httpx.Timeout(
                connect=self._timeout_connect,
                read=self._timeout_read,
                write=10.0,
                pool=10.0,
            )
            limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
            self._http = httpx.AsyncClient(
                headers=self._headers(),
                timeout=timeout,
                limits=limits,
                transport=self._transport,
            )
            logger.info("%s client initialized (%s)", self.name, self.base_url)
        return self._http

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "Provider":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Model metadata
    # ------------------------------------------------------------------

    @property
    def supported_models(self) -> list[str]:
        return list(self.models)

    def validate_model(self, model: str) -> bool:
        return model in self.models

    def context_window(self, model: str) -> int | None:
        info = self.models.get(model)
        return info.context_window if info else None

    def calculate_cost(self, model: str, usage: Usage) -> float:
        """Cost in USD. Unknown models cost 0 (display/accounting only)."""
        info = self.models.get(model)
        if info is None:
            return 0.0
        return (
            usage.input_tokens * info.input_price + usage.output_tokens * info.output_price
        ) / info.price_unit

    # ------------------------------------------------------------------
    # Wire translation (per adapter)
    # ------------------------------------------------------------------

    @abstractmethod
    def endpoint(self, request: Request) -> str:
        """Absolute URL the request is POSTed to."""

    @abstractmethod
    def build_payload(self, request: Request) -> dict[str, Any]: ...

    @abstractmethod
    def parse_response(self, data: dict[str, Any], request: Request) -> Response: ...

    @abstractmethod
    def stream_decoder(self, request: Request) -> StreamDecoder: ...

    def classify_stream_error(self, data: dict[str, Any]) -> ProviderError:
        """In-stream error event (HTTP 200 but an error in the body)."""
        error = data.get("error", {})
        if not isinstance(error, dict):
            return NetworkTransient(str(error))
        kind = error.get("type", "unknown")
        message = f"{kind}: {error.get('message', '')}"
        if kind in ("authentication_error", "permission_error"):
            return Authentication(message)
        if kind == "rate_limit_error":
            return RateLimited(message, retry_after=parse_retry_after({}, message))
        if kind in ("invalid_request_error", "not_found_error"):
            return MalformedRequest(message)
        return NetworkTransient(message)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _resolve_model(self, request: Request) -> Request:
        if not request.model:
            request.model = self.default_model
        return request

    async def send(self, request: Request) -> Response:
        """One non-streaming round trip."""
        request = self._resolve_model(request)
        payload = self.build_payload(request)
        payload.pop("stream", None)
        try:
            response = await self._client().post(self.endpoint(request), json=payload)
        except httpx.TimeoutException as e:
            raise NetworkTransient(f"{self.name} request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkTransient(f"{self.name} HTTP error: {e}") from e

        if response.status_code != 200:
            message = error_message_from_body(response.status_code, response.content)
            raise classify_status(response.status_code, message, response.headers)
        try:
            data = response.json()
        except ValueError as e:
            raise NetworkTransient(f"{self.name} returned invalid JSON: {e}") from e
        return self.parse_response(data, request)

    async def stream(self, request: Request) -> AsyncIterator[StreamDelta]:
        """Stream deltas; always ends with exactly one UsageSummary.

        Only `data:` lines are processed. A decoder may mark itself done
        (e.g. on message_stop) before the connection closes. A connection
        that closes before `[DONE]` or the decoder's terminal event raises
        NetworkTransient instead of returning a partial response.
        """
        request = self._resolve_model(request)
        if not self.supports_streaming:
            response = await self.send(request)
            if response.text:
                yield TextDelta(response.text)
            yield UsageSummary(response)
            return

        payload = self.build_payload(request)
        payload["stream"] = True
        decoder = self.stream_decoder(request)
        finished = False
        try:
            async with self._client().stream(
                "POST", self.endpoint(request), json=payload
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    message = error_message_from_body(response.status_code, body)
                    raise classify_status(response.status_code, message, response.headers)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    raw = line[5:].strip()
                    if not raw:
                        continue
                    if raw == "[DONE]":
                        finished = True
                        break
                    try:
                        data = json.loads(raw)
                    except ValueError:
                        logger.warning("%s: skipping undecodable stream line: %s", self.name, raw[:200])
                        continue
                    if data.get("type") == "error" or (
                        "error" in data and "choices" not in data
                    ):
                        raise self.classify_stream_error(data)
                    for delta in decoder.feed(data):
                        yield delta
                    if decoder.done:
                        break
        except httpx.TimeoutException as e:
            raise NetworkTransient(f"{self.name} stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkTransient(f"{self.name} stream HTTP error: {e}") from e

        if not (finished or decoder.complete):
            raise NetworkTransient(f"{self.name} stream ended before completion")
        yield UsageSummary(decoder.finish())
