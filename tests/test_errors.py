"""Tests for the error classifier."""

import json

import pytest
import requests

from sparql_bridge.errors import (
    ErrorKind,
    QueryError,
    classify,
    looks_like_syntax_error,
    parse_error,
    timeout_error,
)
from sparql_bridge.models import RawResponse


def test_cross_origin_exception_is_cors():
    exc = requests.ConnectionError("Request blocked by CORS policy: No 'Access-Control-Allow-Origin' header")
    error = classify(exc)
    assert error.kind is ErrorKind.CORS
    assert error.cause is exc


def test_other_transport_failure_is_network():
    error = classify(requests.ConnectionError("Name or service not known"))
    assert error.kind is ErrorKind.NETWORK
    assert error.http_status is None


def test_requests_timeout_is_timeout():
    assert classify(requests.ReadTimeout("read timed out")).kind is ErrorKind.TIMEOUT
    assert classify(requests.ConnectTimeout("connect timed out")).kind is ErrorKind.TIMEOUT


def test_unknown_exception_is_still_classified():
    error = classify(RuntimeError("boom"))
    assert isinstance(error, QueryError)
    assert error.kind is ErrorKind.NETWORK


def test_query_error_passes_through():
    original = parse_error("bad")
    assert classify(original) is original


def test_syntax_complaint_on_400():
    response = RawResponse(400, "text/plain", b"Encountered ' ' at line 3, column 7.")
    error = classify(response)
    assert error.kind is ErrorKind.SPARQL_SYNTAX
    assert error.http_status == 400
    assert "line 3" in error.details


def test_400_without_syntax_markers_is_http_status():
    error = classify(RawResponse(400, "text/html", "Missing API key"))
    assert error.kind is ErrorKind.HTTP_STATUS
    assert error.http_status == 400


@pytest.mark.parametrize("status", [401, 403, 404, 500, 502, 503, 504, 418])
def test_error_statuses_are_http_status(status):
    error = classify(RawResponse(status, "text/plain", ""))
    assert error.kind is ErrorKind.HTTP_STATUS
    assert error.http_status == status
    assert error.details is None


def test_status_messages_are_specific():
    assert classify(RawResponse(401, "", "")).message.startswith("Unauthorized")
    assert classify(RawResponse(404, "", "")).message.startswith("Not Found")
    assert classify(RawResponse(599, "", "")).message == "HTTP 599: Request failed"


def test_406_is_format_unsupported():
    error = classify(RawResponse(406, "text/plain", "not acceptable"))
    assert error.kind is ErrorKind.FORMAT_UNSUPPORTED
    assert error.http_status == 406


def test_json_error_body_uses_message_field():
    body = json.dumps({"message": "Parse error: unexpected '}' on line 2"})
    error = classify(RawResponse(400, "application/json", body))
    assert error.kind is ErrorKind.SPARQL_SYNTAX
    assert error.details == "Parse error: unexpected '}' on line 2"


def test_long_text_details_are_truncated():
    error = classify(RawResponse(500, "text/plain", "x" * 2000))
    assert len(error.details) == 500


def test_query_error_is_read_only():
    error = timeout_error(1000)
    assert error.kind is ErrorKind.TIMEOUT
    with pytest.raises(AttributeError):
        error.kind = ErrorKind.NETWORK


def test_syntax_heuristic():
    assert looks_like_syntax_error("Lexical error at line 1")
    assert looks_like_syntax_error("org.openrdf.query.MalformedQueryException")
    assert not looks_like_syntax_error("")
    assert not looks_like_syntax_error("Service temporarily unavailable")
