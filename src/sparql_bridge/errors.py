"""
Error taxonomy and the classifier that maps every failure onto it.

CORS detection is a message heuristic. Transports seldom say plainly that a
request was blocked cross-origin, so `ErrorKind.CORS` is best effort and a
blocked request can still surface as `ErrorKind.NETWORK`.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

import requests

from sparql_bridge.models import RawResponse

if TYPE_CHECKING:  # pragma: no cover
    from sparql_bridge.negotiation import NegotiationPlan


MAX_DETAIL_CHARS = 500


class ErrorKind(str, Enum):
    NETWORK = "network"
    CORS = "cors"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    SPARQL_SYNTAX = "sparql_syntax"
    FORMAT_UNSUPPORTED = "format_unsupported"
    INTERNAL_PARSE = "internal_parse"


class QueryError(Exception):
    """Classified failure of one query execution."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        http_status: Optional[int] = None,
        details: Optional[str] = None,
        cause: Any = None,
    ) -> None:
        super().__init__(message)
        self._kind = kind
        self._message = message
        self._http_status = http_status
        self._details = details
        self._cause = cause

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def http_status(self) -> Optional[int]:
        return self._http_status

    @property
    def details(self) -> Optional[str]:
        return self._details

    @property
    def cause(self) -> Any:
        return self._cause

    def __repr__(self) -> str:
        status = f", http_status={self._http_status}" if self._http_status is not None else ""
        return f"QueryError(kind={self._kind.value}, message={self._message!r}{status})"


_STATUS_MESSAGES = {
    400: "Bad Request: Invalid SPARQL query",
    401: "Unauthorized: Authentication required",
    403: "Forbidden: Access denied to this endpoint",
    404: "Not Found: Endpoint does not exist",
    406: "Not Acceptable: Requested format not supported by endpoint",
    408: "Request Timeout: Query took too long to execute",
    500: "Internal Server Error: The SPARQL endpoint encountered an error",
    502: "Bad Gateway: The SPARQL endpoint is not responding correctly",
    503: "Service Unavailable: The SPARQL endpoint is temporarily down",
    504: "Gateway Timeout: The SPARQL endpoint did not respond in time",
}

_CORS_MARKERS = ("cors", "cross-origin", "cross origin", "blocked by", "access-control-allow-origin")

_SYNTAX_RE = re.compile(
    r"syntax|pars(e|ing)|malformed|lexical|encountered|unexpected|expected|\bline\s+\d+",
    flags=re.IGNORECASE,
)


def looks_like_cors(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _CORS_MARKERS)


def looks_like_syntax_error(text: str) -> bool:
    return bool(text) and _SYNTAX_RE.search(text) is not None


def _response_details(response: RawResponse) -> Optional[str]:
    text = response.text.strip()
    if not text:
        return None
    if "json" in response.content_type.lower():
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            for key in ("message", "error", "detail"):
                value = payload.get(key)
                if isinstance(value, str) and value:
                    return value[:MAX_DETAIL_CHARS]
            return json.dumps(payload, indent=2)[:MAX_DETAIL_CHARS]
    return text[:MAX_DETAIL_CHARS]


def classify_response(response: RawResponse) -> QueryError:
    status = response.status
    details = _response_details(response)

    if status == 406:
        return QueryError(
            ErrorKind.FORMAT_UNSUPPORTED,
            _STATUS_MESSAGES[406],
            http_status=status,
            details=details,
        )

    if status == 400 and looks_like_syntax_error(details or ""):
        return QueryError(
            ErrorKind.SPARQL_SYNTAX,
            "SPARQL syntax error reported by endpoint",
            http_status=status,
            details=details,
        )

    message = _STATUS_MESSAGES.get(status, f"HTTP {status}: Request failed")
    return QueryError(ErrorKind.HTTP_STATUS, message, http_status=status, details=details)


def classify_exception(exc: BaseException) -> QueryError:
    if isinstance(exc, QueryError):
        return exc

    text = str(exc)
    if isinstance(exc, requests.Timeout):
        return QueryError(
            ErrorKind.TIMEOUT,
            "Query timed out",
            details="The endpoint did not respond before the deadline.",
            cause=exc,
        )

    if looks_like_cors(text):
        return QueryError(
            ErrorKind.CORS,
            "CORS Error: Cross-origin request blocked",
            details=text[:MAX_DETAIL_CHARS] or None,
            cause=exc,
        )

    if isinstance(exc, requests.RequestException):
        return QueryError(
            ErrorKind.NETWORK,
            "Network error: Unable to reach endpoint",
            details=text[:MAX_DETAIL_CHARS] or "Check that the endpoint URL is correct and reachable.",
            cause=exc,
        )

    return QueryError(
        ErrorKind.NETWORK,
        f"Transport failure: {type(exc).__name__}",
        details=text[:MAX_DETAIL_CHARS] or None,
        cause=exc,
    )


def classify(failure: Union[BaseException, RawResponse]) -> QueryError:
    """Turn a transport exception or a non-success response into a QueryError."""

    if isinstance(failure, RawResponse):
        return classify_response(failure)
    return classify_exception(failure)


def timeout_error(timeout_ms: int) -> QueryError:
    return QueryError(
        ErrorKind.TIMEOUT,
        f"Query timed out after {timeout_ms} ms",
        details="The query took too long to execute.",
    )


def parse_error(message: str, cause: Any = None) -> QueryError:
    return QueryError(
        ErrorKind.INTERNAL_PARSE,
        "Failed to parse endpoint response",
        details=message[:MAX_DETAIL_CHARS],
        cause=cause,
    )


def format_unsupported(plan: "NegotiationPlan") -> QueryError:
    tried = ", ".join(plan.tried) or "none"
    return QueryError(
        ErrorKind.FORMAT_UNSUPPORTED,
        "No acceptable result format left to negotiate",
        details=f"Formats tried for {plan.kind.value}: {tried}.",
    )


__all__ = [
    "ErrorKind",
    "QueryError",
    "classify",
    "classify_response",
    "classify_exception",
    "looks_like_cors",
    "looks_like_syntax_error",
    "timeout_error",
    "parse_error",
    "format_unsupported",
]
