"""Async HTTP plumbing for the target forum API.

``BaseAPIClient`` owns the httpx client, spaces requests out to the configured
rate, and turns error responses into the exceptions of ``client.exceptions``.
What counts as a row-level rejection and what stops the run is decided from
those exception types, so this module is the single place status codes are
interpreted.
"""

import asyncio
import logging
import time
from typing import Any

import httpx

from forum_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ConnectionFailedError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    ServiceUnavailableError,
    ValidationFailedError,
)
from forum_migration.utils.logging import get_logger, payload_preview

logger = get_logger(__name__)

_STATUS_ERRORS: dict[int, tuple[type[APIError], str]] = {
    401: (AuthenticationError, "API key rejected"),
    403: (AuthorizationError, "API user may not do this"),
    404: (NotFoundError, "Not found"),
    409: (ConflictError, "Conflicts with an existing record"),
    422: (ValidationFailedError, "Rejected"),
}


def _error_detail(body: Any) -> str:
    """Human readable reason from an error body.

    Forum APIs answer ``{"errors": [...]}``; anything else falls back to
    ``detail``/``message`` or the raw body.
    """
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(e) for e in errors)
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
        return "no details"
    if isinstance(body, list):
        return "; ".join(str(e) for e in body) or "no details"
    return str(body)[:500] or "no details"


def error_from_response(response: httpx.Response) -> APIError:
    """The exception an error response maps to (not raised)."""
    status = response.status_code
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text
    detail = _error_detail(body)
    raw = body if isinstance(body, dict) else {"detail": detail}

    if status in _STATUS_ERRORS:
        error_class, prefix = _STATUS_ERRORS[status]
        return error_class(f"{prefix}: {detail}", status_code=status, response=raw)
    header = response.headers.get("Retry-After", "")
    retry_after = int(header) if header.isdigit() else None
    if status == 429:
        return RateLimitError(
            f"Rate limited: {detail}", status_code=status, response=raw, retry_after=retry_after
        )
    if status == 503 and retry_after is not None:
        return ServiceUnavailableError(
            f"Target unavailable: {detail}",
            status_code=status,
            response=raw,
            retry_after=retry_after,
        )
    if status >= 500:
        return ServerError(f"Target error: {detail}", status_code=status, response=raw)
    return APIError(detail, status_code=status, response=raw)


class _Throttle:
    """Keeps at least ``1 / rate`` seconds between request starts."""

    def __init__(self, rate: float):
        self.interval = 1.0 / rate if rate > 0 else 0.0
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def wait(self) -> None:
        if not self.interval:
            return
        async with self._lock:
            now = time.monotonic()
            if self._next_slot > now:
                await asyncio.sleep(self._next_slot - now)
                now = self._next_slot
            self._next_slot = now + self.interval


class BaseAPIClient:
    """Authenticated, throttled JSON client.

    Every request carries ``Api-Key``/``Api-Username`` headers. Responses
    with status >= 400 raise; transport failures raise ``NetworkError``,
    or ``ConnectionFailedError`` when the request was never sent.
    Retrying is left to the caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_username: str = "system",
        verify_ssl: bool = True,
        timeout: int = 30,
        rate_limit: int = 20,
        max_connections: int = 20,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root; endpoints are resolved relative to it
            api_key: API key sent with every request
            api_username: User the API key acts as
            verify_ssl: Whether to verify SSL certificates
            timeout: Request timeout in seconds
            rate_limit: Maximum requests per second (0 disables throttling)
            max_connections: Connection pool size
            log_payloads: Log redacted request and response bodies at DEBUG
            max_payload_size: Characters of a body to log
            transport: Custom httpx transport (tests pass a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.log_payloads = log_payloads
        self.max_payload_size = max_payload_size
        self._throttle = _Throttle(rate_limit)

        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/",
            headers={
                "Api-Key": api_key,
                "Api-Username": api_username,
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(max_connections=max_connections),
            verify=verify_ssl,
            transport=transport,
        )

    def _payload_logging(self) -> bool:
        return self.log_payloads and logging.getLogger(__name__).isEnabledFor(logging.DEBUG)

    async def request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body ({} when empty).

        Raises:
            NetworkError: If the target cannot be reached or times out
            APIError: Subclass matching the error status
        """
        endpoint = endpoint.lstrip("/")
        await self._throttle.wait()

        if self._payload_logging() and json_data is not None:
            logger.debug(
                "target_request_body",
                method=method,
                endpoint=endpoint,
                body=payload_preview(json_data, self.max_payload_size),
            )

        started = time.monotonic()
        try:
            response = await self.client.request(method, endpoint, json=json_data, params=params)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            logger.warning("target_unreachable", method=method, endpoint=endpoint, error=str(e))
            raise ConnectionFailedError(f"{method} {endpoint} could not connect: {e}") from e
        except httpx.TimeoutException as e:
            logger.warning("target_timeout", method=method, endpoint=endpoint)
            raise NetworkError(f"{method} {endpoint} timed out") from e
        except httpx.TransportError as e:
            logger.warning("target_unreachable", method=method, endpoint=endpoint, error=str(e))
            raise NetworkError(f"{method} {endpoint} failed: {e}") from e

        logger.debug(
            "target_request",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(
                "target_request_failed",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                error=str(error),
            )
            raise error

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise APIError(
                f"{method} {endpoint} returned a non-JSON body", status_code=response.status_code
            ) from e

        if self._payload_logging():
            logger.debug(
                "target_response_body",
                endpoint=endpoint,
                body=payload_preview(body, self.max_payload_size),
            )
        return body

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json_data: dict[str, Any] | None = None) -> Any:
        return await self.request("POST", endpoint, json_data=json_data)

    async def put(self, endpoint: str, json_data: dict[str, Any] | None = None) -> Any:
        return await self.request("PUT", endpoint, json_data=json_data)

    async def close(self) -> None:
        await self.client.aclose()
        logger.debug("target_client_closed", base_url=self.base_url)

    async def __aenter__(self) -> "BaseAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
