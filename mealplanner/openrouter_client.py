"""OpenRouter chat completion client."""

import asyncio
import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
from pydantic import ValidationError

from .config import config
from .errors import CompletionError, ErrorKind
from .models import (
    CompletionRequest,
    CompletionResponse,
    JsonSchemaSpec,
    Message,
    ModelInfo,
    ResponseFormat,
    StreamChunk,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

VALID_ROLES = ("system", "user", "assistant")
DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data: "


class CompletionClient:
    """
    Async client for the OpenRouter chat completion API.

    Handles:
    - Request validation before any network I/O
    - Per-attempt timeout, retry with exponential backoff
    - Non-streaming and SSE streaming completions
    - Mapping of HTTP and transport failures to ErrorKind

    Holds no per-call state, so one instance can serve concurrent calls.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        site_name: Optional[str] = None,
        site_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key or config.openrouter_api_key
        if not self.api_key:
            raise CompletionError(
                ErrorKind.AUTH,
                "API key is required. Set OPENROUTER_API_KEY environment variable or pass it in config.",
            )

        self.base_url = (base_url or config.openrouter_base_url).rstrip("/")
        self.default_model = default_model or config.openrouter_default_model
        self.timeout = config.openrouter_timeout if timeout is None else timeout
        self.max_retries = config.openrouter_max_retries if max_retries is None else max_retries
        self.retry_delay = config.openrouter_retry_delay if retry_delay is None else retry_delay
        self._sleep = sleep

        self.headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        # Optional headers identifying the app on openrouter.ai
        site_name = site_name or config.openrouter_site_name
        site_url = site_url or config.openrouter_site_url
        if site_name:
            self.headers["X-Title"] = site_name
        if site_url:
            self.headers["HTTP-Referer"] = site_url

        self.client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=transport)

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Non-streaming chat completion."""
        _validate_request(request)
        body = self._build_body(request, stream=False)
        url = f"{self.base_url}/chat/completions"

        logger.info(f"Completion request: model={body['model']}, messages={len(request.messages)}")

        data = await self._with_retry(lambda: self._request_json("POST", url, body), "Completion")
        try:
            return CompletionResponse.model_validate(data)
        except ValidationError as e:
            raise CompletionError(ErrorKind.GENERIC, "Unexpected completion response format", detail=e) from e

    async def complete_with_schema(
        self,
        messages: List[Message],
        schema: JsonSchemaSpec,
        **options: Any,
    ) -> Any:
        """
        Completion in strict structured-output mode.

        Returns the first choice's content decoded as JSON.
        """
        request = CompletionRequest(
            messages=list(messages),
            response_format=ResponseFormat(type="json_schema", json_schema=schema),
            **options,
        )
        response = await self.complete(request)

        try:
            return json.loads(response.choices[0].message.content or "")
        except (IndexError, ValueError) as e:
            raise CompletionError(ErrorKind.GENERIC, "Failed to parse structured response", detail=e) from e

    def stream_complete(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """
        Streaming chat completion.

        The request is validated immediately; the connection is opened when
        iteration starts. Each call opens a fresh connection and the returned
        iterator cannot be restarted.
        """
        _validate_request(request)
        body = self._build_body(request, stream=True)
        return self._stream(body)

    async def get_available_models(self) -> List[ModelInfo]:
        """List models offered by the provider."""
        url = f"{self.base_url}/models"
        data = await self._with_retry(lambda: self._request_json("GET", url, None), "List models")

        try:
            return [ModelInfo.model_validate(m) for m in data.get("data", [])]
        except (AttributeError, ValidationError) as e:
            raise CompletionError(ErrorKind.GENERIC, "Unexpected models response format", detail=e) from e

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _build_body(self, request: CompletionRequest, stream: bool) -> Dict[str, Any]:
        body = request.model_dump(exclude_none=True, by_alias=True)
        body["model"] = request.model or self.default_model
        body["stream"] = stream
        return body

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """
        Run ``operation`` with a timeout per attempt and backoff between attempts.

        Waits retry_delay * 2**attempt before the next attempt. Only NETWORK,
        TIMEOUT and MODEL failures are retried.
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(operation(), timeout=self.timeout)
            except (CompletionError, asyncio.TimeoutError, httpx.RequestError) as exc:
                error = self._to_completion_error(exc)

                if not error.retryable or attempt >= self.max_retries:
                    logger.error(f"{description} failed after {attempt + 1} attempt(s): "
                                 f"{error.kind.value}: {error.message}")
                    if error is exc:
                        raise
                    raise error from exc

                delay = self.retry_delay * (2 ** attempt)
                logger.warning(f"{description} attempt {attempt + 1} failed ({error.kind.value}: "
                               f"{error.message}), retrying in {delay:.1f}s")
                await self._sleep(delay)
                attempt += 1

    def _to_completion_error(self, exc: Exception) -> CompletionError:
        if isinstance(exc, CompletionError):
            return exc
        if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
            return CompletionError(ErrorKind.TIMEOUT, f"Request timeout after {self.timeout}s", detail=exc)
        if isinstance(exc, httpx.TransportError):
            return CompletionError(ErrorKind.NETWORK, "Failed to connect to OpenRouter API", detail=exc)
        # Decoding errors, redirect loops
        return CompletionError(ErrorKind.GENERIC, f"Request failed: {exc}", detail=exc)

    async def _request_json(self, method: str, url: str, body: Optional[Dict[str, Any]]) -> Any:
        response = await self.client.request(method, url, json=body, headers=self.headers)
        data = _decode_json(response)

        if not response.is_success:
            raise _map_api_error(response.status_code, data, response.headers)
        if data is None:
            raise CompletionError(ErrorKind.GENERIC, "Invalid JSON in response", status_code=response.status_code)
        return data

    async def _open_stream(self, url: str, body: Dict[str, Any]) -> httpx.Response:
        request = self.client.build_request("POST", url, json=body, headers=self.headers)
        response = await self.client.send(request, stream=True)

        if not response.is_success:
            # Error bodies are read once and never exposed as a stream
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise _map_api_error(response.status_code, _decode_json(response), response.headers)

        return response

    async def _stream(self, body: Dict[str, Any]) -> AsyncIterator[StreamChunk]:
        url = f"{self.base_url}/chat/completions"
        logger.info(f"Starting completion stream: model={body['model']}, messages={len(body['messages'])}")

        response = await self._with_retry(lambda: self._open_stream(url, body), "Stream")
        chunks = parse_sse_stream(response.aiter_bytes())

        try:
            async for chunk in chunks:
                yield chunk
        except httpx.TimeoutException as e:
            raise CompletionError(ErrorKind.TIMEOUT, "Stream read timeout", detail=e) from e
        except httpx.TransportError as e:
            raise CompletionError(ErrorKind.NETWORK, "Stream interrupted", detail=e) from e
        except httpx.RequestError as e:
            raise CompletionError(ErrorKind.GENERIC, f"Stream failed: {e}", detail=e) from e
        finally:
            await chunks.aclose()
            await response.aclose()


# =============================================================================
# SSE Parsing
# =============================================================================

async def parse_sse_stream(byte_chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamChunk]:
    """
    Parse an SSE byte stream into StreamChunks.

    Reads may split lines (and UTF-8 sequences) anywhere; the incomplete tail
    is carried over to the next read. Blank lines and ``:`` comments are
    ignored, ``data: [DONE]`` ends the stream, and payloads that do not parse
    are skipped without ending the stream.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for raw in byte_chunks:
        buffer += decoder.decode(raw)
        lines = buffer.split("\n")
        buffer = lines.pop()

        for line in lines:
            payload = _sse_payload(line)
            if payload is None:
                continue
            if payload == DONE_SENTINEL:
                return
            chunk = _parse_chunk(payload)
            if chunk is not None:
                yield chunk

    # Unterminated last line
    buffer += decoder.decode(b"", final=True)
    payload = _sse_payload(buffer)
    if payload is not None and payload != DONE_SENTINEL:
        chunk = _parse_chunk(payload)
        if chunk is not None:
            yield chunk


def _sse_payload(line: str) -> Optional[str]:
    trimmed = line.strip()
    if not trimmed or trimmed.startswith(":"):
        return None
    if trimmed.startswith(DATA_PREFIX):
        return trimmed[len(DATA_PREFIX):]
    return None


def _parse_chunk(payload: str) -> Optional[StreamChunk]:
    try:
        return StreamChunk.model_validate_json(payload)
    except ValidationError:
        logger.debug(f"Skipping malformed stream chunk: {payload[:100]}")
        return None


# =============================================================================
# Validation & Error Mapping
# =============================================================================

def _invalid(message: str, field: str) -> CompletionError:
    return CompletionError(ErrorKind.VALIDATION, message, status_code=400, field=field)


def _check_range(value: Optional[float], low: float, high: float, field: str, message: str):
    if value is not None and not low <= value <= high:
        raise _invalid(message, field)


def _validate_request(request: CompletionRequest):
    """Reject malformed requests before any network I/O."""
    if not request.messages:
        raise _invalid("Messages array cannot be empty", "messages")

    for message in request.messages:
        if not message.role or not message.content:
            raise _invalid("Each message must have role and content", "messages")
        if message.role not in VALID_ROLES:
            raise _invalid(f"Invalid message role: {message.role}", "messages")

    _check_range(request.temperature, 0, 2, "temperature", "Temperature must be between 0 and 2")
    _check_range(request.top_p, 0, 1, "top_p", "top_p must be between 0 and 1")
    _check_range(request.frequency_penalty, -2, 2, "frequency_penalty",
                 "frequency_penalty must be between -2 and 2")
    _check_range(request.presence_penalty, -2, 2, "presence_penalty",
                 "presence_penalty must be between -2 and 2")

    if request.max_tokens is not None and request.max_tokens <= 0:
        raise _invalid("max_tokens must be greater than 0", "max_tokens")

    if request.response_format is not None:
        _validate_response_format(request.response_format)


def _validate_response_format(response_format: ResponseFormat):
    """Only strict json_schema formats with a closed object schema are accepted."""
    if response_format.type != "json_schema":
        raise _invalid('response_format type must be "json_schema"', "response_format")

    json_schema = response_format.json_schema
    if json_schema is None:
        raise _invalid("json_schema is required in response_format", "response_format")
    if json_schema.strict is not True:
        raise _invalid("json_schema.strict must be true", "response_format")
    if not json_schema.name:
        raise _invalid("json_schema.name is required", "response_format")

    schema = json_schema.schema_
    if not schema:
        raise _invalid("json_schema.schema is required", "response_format")
    if schema.get("type") != "object":
        raise _invalid('json_schema.schema.type must be "object"', "response_format")
    if not isinstance(schema.get("required"), list):
        raise _invalid("json_schema.schema.required must list the required properties", "response_format")
    if schema.get("additionalProperties") is not False:
        raise _invalid("json_schema.schema.additionalProperties must be false for strict mode", "response_format")


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _map_api_error(status_code: int, body: Any, headers: httpx.Headers) -> CompletionError:
    """Map an HTTP error response to a CompletionError."""
    message = "Unknown error occurred"
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message") or message

    if status_code in (401, 403):
        return CompletionError(ErrorKind.AUTH, message, status_code=status_code, detail=body)
    if status_code == 429:
        return CompletionError(
            ErrorKind.RATE_LIMIT,
            message,
            status_code=status_code,
            retry_after=_parse_retry_after(headers.get("retry-after")),
            detail=body,
        )
    if status_code == 400:
        return CompletionError(ErrorKind.VALIDATION, message, status_code=status_code, detail=body)
    if status_code == 404:
        return CompletionError(ErrorKind.MODEL, "Model not found or unavailable", status_code=status_code, detail=body)
    if 500 <= status_code < 600:
        return CompletionError(ErrorKind.MODEL, message, status_code=status_code, detail=body)
    return CompletionError(ErrorKind.GENERIC, message, status_code=status_code, detail=body)
