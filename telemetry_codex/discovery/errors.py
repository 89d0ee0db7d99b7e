"""
Error taxonomy for discovery runs.

Every failure a query can produce is folded into one of five kinds, and the
kind alone decides what the engine does next:

- ``QueryTimeoutError``: the query exceeded the remote execution budget.
  Degradable - the engine narrows the time window and resubmits.
- ``TransientQueryError``: network, rate limit or 5xx-class failure.
  Retried unchanged a small fixed number of times.
- ``MalformedResponseError``: the response could not be understood.
  Treated as an empty result for that query.
- ``PersistenceError``: checkpoint save/load failure. Logged as a warning;
  discovery continues with in-memory state.
- ``FatalConfigError``: unusable configuration or credentials. Aborts the
  whole session with status ``failed``.

Executors are free to raise whatever their transport raises;
:func:`classify_error` maps foreign exceptions onto the taxonomy.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum

import httpx

__all__ = [
    "DiscoveryError",
    "ErrorKind",
    "FatalConfigError",
    "MalformedResponseError",
    "PersistenceError",
    "QueryError",
    "QueryTimeoutError",
    "TransientQueryError",
    "classify_error",
]


class DiscoveryError(Exception):
    """Base class for all discovery errors."""


class QueryError(DiscoveryError):
    """A single remote query failed."""

    def __init__(self, message: str, query: str | None = None) -> None:
        super().__init__(message)
        self.query = query


class QueryTimeoutError(QueryError):
    """Query exceeded the remote API's execution budget."""


class TransientQueryError(QueryError):
    """Network, rate limit or server-side failure worth retrying unchanged."""

    def __init__(
        self,
        message: str,
        query: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, query)
        self.status_code = status_code


class MalformedResponseError(QueryError):
    """Response body could not be parsed into results."""


class PersistenceError(DiscoveryError):
    """Checkpoint or snapshot could not be written or read."""


class FatalConfigError(DiscoveryError):
    """Configuration or credentials make the session impossible to run."""


class ErrorKind(str, Enum):
    """How the engine should react to a failed query."""

    timeout = "timeout"
    transient = "transient"
    malformed = "malformed"
    fatal = "fatal"


# Lower-case fragments of messages from remote query backends.
_TIMEOUT_PATTERNS = (
    "timeout",
    "timed out",
    "deadline exceeded",
    "query duration exceeded",
)

_FATAL_PATTERNS = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
)

_FATAL_STATUS_CODES = frozenset({401, 403})


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised while running a query onto the taxonomy.

    Taxonomy classes classify as themselves.  Transport exceptions from
    ``httpx`` and asyncio are mapped by type, and anything else falls back
    to message matching.  Unknown errors are transient: the remote executor
    contract only distinguishes "timeout" from "everything else", and
    everything else is retried unchanged.

    Args:
        exc: The exception to classify

    Returns:
        The ErrorKind deciding the retry policy
    """
    if isinstance(exc, QueryTimeoutError):
        return ErrorKind.timeout
    if isinstance(exc, MalformedResponseError):
        return ErrorKind.malformed
    if isinstance(exc, FatalConfigError):
        return ErrorKind.fatal
    if isinstance(exc, TransientQueryError):
        if exc.status_code in _FATAL_STATUS_CODES:
            return ErrorKind.fatal
        return ErrorKind.transient

    if isinstance(exc, httpx.TimeoutException | asyncio.TimeoutError):
        return ErrorKind.timeout
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in _FATAL_STATUS_CODES:
            return ErrorKind.fatal
        return ErrorKind.transient
    if isinstance(exc, json.JSONDecodeError):
        return ErrorKind.malformed

    message = str(exc).lower()
    if any(pattern in message for pattern in _TIMEOUT_PATTERNS):
        return ErrorKind.timeout
    if any(pattern in message for pattern in _FATAL_PATTERNS):
        return ErrorKind.fatal
    return ErrorKind.transient
