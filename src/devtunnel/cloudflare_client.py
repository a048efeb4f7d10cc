"""Cloudflare API client: authenticated, envelope-validated calls plus retry with backoff."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
import structlog
from httpx import AsyncClient
from pydantic import TypeAdapter, ValidationError

from . import __version__
from .config import CF_API_BASE
from .exceptions import ApiError
from .models import ApiEnvelope
from .timers import defer

logger = structlog.get_logger()

T = TypeVar("T")

USER_AGENT = f"devtunnel/{__version__}"

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 1.0


class CloudflareClient:
    """Thin async client for the Cloudflare v4 API.

    Every response passes through ``call``, which validates the standard
    envelope and, when asked, the shape of ``result``. Callers only ever see
    validated data or an ApiError.
    """

    def __init__(
        self,
        base_url: str = CF_API_BASE,
        timeout: float = 30.0,
        debug: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.debug = debug
        self._transport = transport

    def _http_client(self, token: str) -> AsyncClient:
        return AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def call(
        self,
        token: str,
        method: str,
        path: str,
        body: Any = None,
        result_type: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Perform one API call.

        Args:
            token: Bearer token
            method: HTTP method
            path: Path below the API base, e.g. ``/accounts``
            body: JSON body for mutating calls
            result_type: Optional type the ``result`` field is validated against
            params: Query parameters

        Returns:
            The validated ``result`` value (raw when no result_type is given)

        Raises:
            ApiError: On transport failure, non-2xx status, malformed envelope,
                ``success: false`` or a result that does not match result_type.
        """
        if self.debug:
            logger.debug("Cloudflare API request", method=method, path=path, params=params)

        try:
            async with self._http_client(token) as client:
                r = await client.request(method, path, json=body, params=params)
        except httpx.HTTPError as e:
            raise ApiError(f"API request failed: {e}") from e

        if r.is_error:
            raise ApiError(
                f"API request failed: {r.status_code} {r.reason_phrase}. Response: {r.text}",
                status_code=r.status_code,
                body=r.text,
            )

        try:
            data = r.json()
        except json.JSONDecodeError as e:
            raise ApiError(
                f"API returned invalid JSON: {e}", status_code=r.status_code, body=r.text
            ) from e

        envelope = _check(data, status_code=r.status_code, body=r.text)

        if self.debug:
            logger.debug("Cloudflare API response", method=method, path=path, status=r.status_code)

        if result_type is None:
            return envelope.result
        try:
            return TypeAdapter(result_type).validate_python(envelope.result)
        except ValidationError as e:
            raise ApiError(
                f"API response validation failed for {method} {path}: {e}",
                status_code=r.status_code,
                body=r.text,
            ) from e


def _check(data: Any, *, status_code: int, body: str) -> ApiEnvelope:
    try:
        envelope = ApiEnvelope.model_validate(data)
    except ValidationError as e:
        raise ApiError(
            f"API response validation failed: {e}", status_code=status_code, body=body
        ) from e

    if not envelope.success:
        messages = [err.message for err in envelope.errors]
        msg = ", ".join(messages) if messages else "Unknown error"
        raise ApiError(
            f"Cloudflare API error: {msg}",
            status_code=status_code,
            body=body,
            errors=[err.model_dump() for err in envelope.errors],
        )
    return envelope


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    operation_name: str = "operation",
) -> T:
    """Run an idempotent operation, retrying with exponential backoff.

    The operation runs once plus up to ``max_retries`` retries. Before retry
    ``n`` (1-based) the call waits ``base_delay * 2 ** (n - 1)`` seconds.
    When every attempt fails the last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(
                    "Operation failed, retries exhausted",
                    operation=operation_name,
                    attempts=attempt,
                    error=str(e),
                )
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning(
                "Operation failed, retrying",
                operation=operation_name,
                attempt=attempt,
                max_retries=max_retries,
                error=str(e),
                delay=delay,
            )
            await defer(delay)
