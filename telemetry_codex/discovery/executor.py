"""
Remote query executors.

The engine only depends on the :class:`QueryExecutor` protocol: an async
callable taking query text plus options and returning a
:class:`~telemetry_codex.discovery.models.QueryResult`.  A timeout must
surface as :class:`QueryTimeoutError`; anything else may be raised as-is
and is classified by :func:`~telemetry_codex.discovery.errors.classify_error`.

:class:`HttpQueryExecutor` talks to the GraphQL API, wrapping each query in
an ``actor { account { nrql } }`` request authenticated by an API key
header.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from telemetry_codex.discovery.errors import (
    FatalConfigError,
    MalformedResponseError,
    QueryTimeoutError,
    TransientQueryError,
)
from telemetry_codex.discovery.models import QueryResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0  # seconds

_NRQL_QUERY = """
query($accountId: Int!, $nrql: Nrql!, $timeout: Seconds) {
  actor {
    account(id: $accountId) {
      nrql(query: $nrql, timeout: $timeout) {
        results
        metadata { eventTypes facets messages }
      }
    }
  }
}
"""


class QueryExecutor(Protocol):
    """Anything that can run one query against the remote store."""

    async def __call__(
        self, query: str, options: dict[str, Any] | None = None
    ) -> QueryResult: ...


class HttpQueryExecutor:
    """GraphQL NRQL executor over ``httpx.AsyncClient``.

    Example:
        async with HttpQueryExecutor(api_key, account_id) as executor:
            result = await executor("SELECT count(*) FROM Transaction SINCE 1 hour ago")

    Args:
        api_key: User API key sent as the ``API-Key`` header
        account_id: Account to query
        endpoint: GraphQL endpoint URL
        timeout: Per-request timeout in seconds (also sent as the remote
            query timeout)
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
    """

    def __init__(
        self,
        api_key: str,
        account_id: int,
        endpoint: str = "https://api.newrelic.com/graphql",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.account_id = account_id
        self.endpoint = endpoint
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.requests = 0

    async def __aenter__(self) -> HttpQueryExecutor:
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={
                    "API-Key": self.api_key,
                    "Content-Type": "application/json",
                    "User-Agent": "telemetry-codex/0.4 (telemetry discovery)",
                },
                limits=httpx.Limits(
                    max_connections=20,
                    max_keepalive_connections=10,
                    keepalive_expiry=30.0,
                ),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __call__(
        self, query: str, options: dict[str, Any] | None = None
    ) -> QueryResult:
        options = options or {}
        variables = {
            "accountId": self.account_id,
            "nrql": query,
            "timeout": int(options.get("timeout", self.timeout)),
        }
        client = self._get_client()
        self.requests += 1
        try:
            response = await client.post(
                self.endpoint, json={"query": _NRQL_QUERY, "variables": variables}
            )
        except httpx.TimeoutException as e:
            raise QueryTimeoutError(f"Request timed out: {e}", query) from e
        except httpx.RequestError as e:
            raise TransientQueryError(f"Request failed: {e}", query) from e

        if response.status_code in (401, 403):
            raise FatalConfigError(
                f"API rejected credentials (HTTP {response.status_code})"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientQueryError(
                f"HTTP {response.status_code} from {self.endpoint}",
                query,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise MalformedResponseError(
                f"HTTP {response.status_code}: {response.text[:200]}", query
            )

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Response is not JSON: {e}", query) from e
        return self._parse(body, query)

    def _parse(self, body: Any, query: str) -> QueryResult:
        if not isinstance(body, dict):
            raise MalformedResponseError("Response body is not an object", query)

        errors = body.get("errors") or []
        if errors:
            message = "; ".join(
                str(e.get("message", e) if isinstance(e, dict) else e) for e in errors
            )
            lowered = message.lower()
            if "timeout" in lowered or "timed out" in lowered:
                raise QueryTimeoutError(message, query)
            if "unauthorized" in lowered or "forbidden" in lowered or "api key" in lowered:
                raise FatalConfigError(message)
            # Partial data with errors is still usable
            if not (body.get("data") or {}).get("actor"):
                raise TransientQueryError(message, query)
            logger.debug("Query returned partial data with errors: %s", message)

        try:
            nrql = body["data"]["actor"]["account"]["nrql"]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError("Response is missing nrql results", query) from e
        if nrql is None:
            raise MalformedResponseError("Response has null nrql results", query)

        results = nrql.get("results")
        if not isinstance(results, list):
            raise MalformedResponseError("nrql results are not a list", query)
        return QueryResult(results=results, metadata=nrql.get("metadata") or {})
