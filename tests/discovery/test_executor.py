"""Tests for the GraphQL query executor, using httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from telemetry_codex.discovery.errors import (
    FatalConfigError,
    MalformedResponseError,
    QueryTimeoutError,
    TransientQueryError,
)
from telemetry_codex.discovery.executor import HttpQueryExecutor

ENDPOINT = "https://api.example.test/graphql"
QUERY = "SELECT count(*) FROM Transaction SINCE 1 hour ago"


def _nrql_body(results, metadata=None):
    return {
        "data": {
            "actor": {
                "account": {"nrql": {"results": results, "metadata": metadata or {}}}
            }
        }
    }


def _executor(handler) -> HttpQueryExecutor:
    return HttpQueryExecutor(
        "secret-key",
        1234,
        endpoint=ENDPOINT,
        timeout=15,
        transport=httpx.MockTransport(handler),
    )


class TestHttpQueryExecutor:
    @pytest.mark.asyncio
    async def test_posts_graphql_request(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_nrql_body([{"count": 5}], {"eventTypes": ["T"]}))

        async with _executor(handler) as executor:
            result = await executor(QUERY)

        assert result.results == [{"count": 5}]
        assert result.metadata == {"eventTypes": ["T"]}
        assert executor.requests == 1

        (request,) = seen
        assert str(request.url) == ENDPOINT
        assert request.headers["API-Key"] == "secret-key"
        payload = json.loads(request.content)
        assert payload["variables"] == {"accountId": 1234, "nrql": QUERY, "timeout": 15}
        assert "nrql(query: $nrql" in payload["query"]

    @pytest.mark.asyncio
    async def test_timeout_option_overrides_default(self):
        seen: list[dict] = []

        def handler(request):
            seen.append(json.loads(request.content)["variables"])
            return httpx.Response(200, json=_nrql_body([]))

        async with _executor(handler) as executor:
            await executor(QUERY, {"timeout": 60})

        assert seen[0]["timeout"] == 60

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status(self, status):
        async with _executor(lambda r: httpx.Response(status)) as executor:
            with pytest.raises(TransientQueryError) as info:
                await executor(QUERY)
        assert info.value.status_code == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_credentials(self, status):
        async with _executor(lambda r: httpx.Response(status)) as executor:
            with pytest.raises(FatalConfigError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_client_error_is_malformed(self):
        async with _executor(lambda r: httpx.Response(400, text="bad")) as executor:
            with pytest.raises(MalformedResponseError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_graphql_timeout_error(self):
        body = {"errors": [{"message": "NRDB query timed out"}], "data": None}
        async with _executor(lambda r: httpx.Response(200, json=body)) as executor:
            with pytest.raises(QueryTimeoutError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_graphql_auth_error(self):
        body = {"errors": [{"message": "Invalid API key"}]}
        async with _executor(lambda r: httpx.Response(200, json=body)) as executor:
            with pytest.raises(FatalConfigError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_graphql_error_without_data_is_transient(self):
        body = {"errors": [{"message": "Internal server error"}]}
        async with _executor(lambda r: httpx.Response(200, json=body)) as executor:
            with pytest.raises(TransientQueryError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_partial_data_with_errors_is_returned(self):
        body = _nrql_body([{"count": 1}])
        body["errors"] = [{"message": "one facet dropped"}]
        async with _executor(lambda r: httpx.Response(200, json=body)) as executor:
            result = await executor(QUERY)
        assert result.results == [{"count": 1}]

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        async with _executor(lambda r: httpx.Response(200, text="<html>")) as executor:
            with pytest.raises(MalformedResponseError):
                await executor(QUERY)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"data": {}},
            {"data": {"actor": {"account": {"nrql": None}}}},
            _nrql_body("not a list"),
            ["not", "an", "object"],
        ],
    )
    async def test_missing_results(self, body):
        async with _executor(lambda r: httpx.Response(200, json=body)) as executor:
            with pytest.raises(MalformedResponseError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        async with _executor(handler) as executor:
            with pytest.raises(QueryTimeoutError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _executor(handler) as executor:
            with pytest.raises(TransientQueryError):
                await executor(QUERY)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        executor = _executor(lambda r: httpx.Response(200, json=_nrql_body([])))
        await executor.close()
        await executor(QUERY)
        await executor.close()
        await executor.close()
