"""Tests for the query error taxonomy."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from telemetry_codex.discovery.errors import (
    ErrorKind,
    FatalConfigError,
    MalformedResponseError,
    QueryTimeoutError,
    TransientQueryError,
    classify_error,
)


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.test/graphql")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class TestClassifyError:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (QueryTimeoutError("slow"), ErrorKind.timeout),
            (TransientQueryError("503"), ErrorKind.transient),
            (MalformedResponseError("garbage"), ErrorKind.malformed),
            (FatalConfigError("no key"), ErrorKind.fatal),
        ],
    )
    def test_taxonomy_classes(self, exc, kind):
        assert classify_error(exc) is kind

    def test_rejected_credentials_status_is_fatal(self):
        assert classify_error(TransientQueryError("no", status_code=401)) is ErrorKind.fatal
        assert classify_error(TransientQueryError("busy", status_code=429)) is ErrorKind.transient

    def test_httpx_timeout(self):
        assert classify_error(httpx.ReadTimeout("read timed out")) is ErrorKind.timeout

    def test_asyncio_timeout(self):
        assert classify_error(asyncio.TimeoutError()) is ErrorKind.timeout

    def test_http_status_errors(self):
        assert classify_error(_status_error(401)) is ErrorKind.fatal
        assert classify_error(_status_error(500)) is ErrorKind.transient

    def test_json_decode_error_is_malformed(self):
        with pytest.raises(json.JSONDecodeError) as info:
            json.loads("{nope")
        assert classify_error(info.value) is ErrorKind.malformed

    @pytest.mark.parametrize(
        "message,kind",
        [
            ("NRQL query duration exceeded", ErrorKind.timeout),
            ("Deadline exceeded while waiting", ErrorKind.timeout),
            ("Invalid API key supplied", ErrorKind.fatal),
            ("connection reset by peer", ErrorKind.transient),
        ],
    )
    def test_message_fallback(self, message, kind):
        assert classify_error(RuntimeError(message)) is kind

    def test_query_is_kept_on_error(self):
        exc = QueryTimeoutError("slow", "SELECT 1 FROM X")
        assert exc.query == "SELECT 1 FROM X"
