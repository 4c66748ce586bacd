"""Target forum client for creating imported records.

This client posts mapped rows to the target forum's REST API and reads back
the id the target assigned.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from forum_migration.client.base_client import BaseAPIClient
from forum_migration.client.exceptions import APIError, ConfigurationError
from forum_migration.config import TargetConfig
from forum_migration.entities import EntityKind
from forum_migration.utils.logging import get_logger
from forum_migration.utils.retry import RESEND_SAFE_ERRORS, retry_with_backoff

logger = get_logger(__name__)


@dataclass(frozen=True)
class CreatedRecord:
    """A record the target created.

    ``payload`` is the full response body, so callers can read secondary
    ids (a new first post's ``topic_id``).
    """

    internal_id: int
    payload: dict[str, Any] = field(default_factory=dict, compare=False)


@runtime_checkable
class ForumTarget(Protocol):
    """Protocol for the system records are created in."""

    async def create(self, kind: EntityKind, attributes: dict[str, Any]) -> CreatedRecord:
        """Create one record and return its internal id."""
        ...

    async def get_site_setting(self, name: str) -> Any:
        """Current value of a site setting."""
        ...

    async def update_site_setting(self, name: str, value: Any) -> None:
        """Change a site setting."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        ...


class TargetClient(BaseAPIClient):
    """Client for the target forum's REST API.

    Records are created with ``POST <endpoint>`` where the endpoint is looked
    up by the kind's registry namespace in ``TargetConfig.endpoints``.
    Transient failures are retried with backoff; once attempts run out the
    error propagates. A create is only resent when the target cannot have
    acted on the first attempt (no connection, 429, 503 with Retry-After), so
    a timed out or failed POST is never sent twice.
    """

    def __init__(
        self,
        config: TargetConfig,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize target client.

        Args:
            config: Target API configuration
            log_payloads: Enable request/response payload logging
            max_payload_size: Maximum payload size to log before truncation
            transport: Custom httpx transport
        """
        super().__init__(
            base_url=config.url,
            api_key=config.api_key,
            api_username=config.api_username,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            rate_limit=config.rate_limit,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            transport=transport,
        )
        self.config = config
        self._retry = retry_with_backoff(
            max_attempts=config.retry_attempts,
            min_wait=config.retry_backoff_min,
            max_wait=config.retry_backoff_max,
        )
        self._retry_create = retry_with_backoff(
            max_attempts=config.retry_attempts,
            min_wait=config.retry_backoff_min,
            max_wait=config.retry_backoff_max,
            retry_on=RESEND_SAFE_ERRORS,
        )
        logger.info("target_client_initialized", url=config.url)

    def endpoint_for(self, namespace: str) -> str:
        """Endpoint records of a registry namespace are created at.

        Raises:
            ConfigurationError: If no endpoint is configured
        """
        endpoint = self.config.endpoints.get(namespace)
        if not endpoint:
            raise ConfigurationError(f"No target endpoint configured for '{namespace}'")
        return endpoint

    async def create(self, kind: EntityKind, attributes: dict[str, Any]) -> CreatedRecord:
        """Create a record on the target.

        Args:
            kind: Entity kind of the record
            attributes: Mapped target attributes

        Returns:
            CreatedRecord with the target id and response payload

        Raises:
            APIError: If the target rejects the record or answers without a numeric id
            NetworkError: If the request failed; only connection failures are retried
        """
        endpoint = self.endpoint_for(kind.namespace)
        result = await self._retry_create(self.post)(endpoint, json_data=attributes)

        raw_id = result.get("id") if isinstance(result, dict) else None
        if raw_id is None:
            raise APIError(f"Target response for {kind.value} has no id", response=result)
        try:
            internal_id = int(raw_id)
        except (TypeError, ValueError) as e:
            raise APIError(
                f"Target returned a non-numeric id {raw_id!r} for {kind.value}", response=result
            ) from e

        logger.debug("record_created", kind=kind.value, internal_id=internal_id)
        return CreatedRecord(internal_id=internal_id, payload=result)

    async def get_site_setting(self, name: str) -> Any:
        """Current value of a site setting (None when the target reports none)."""
        endpoint = f"{self.endpoint_for('site_setting')}/{name}"
        result = await self._retry(self.get)(endpoint)
        return result.get("value") if isinstance(result, dict) else None

    async def update_site_setting(self, name: str, value: Any) -> None:
        """Change a site setting on the target."""
        endpoint = f"{self.endpoint_for('site_setting')}/{name}"
        await self._retry(self.put)(endpoint, json_data={"value": value})
        logger.info("site_setting_updated", name=name, value=value)
