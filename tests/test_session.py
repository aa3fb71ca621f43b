"""Tests for one-query-at-a-time sessions."""

import threading

import pytest

from sparql_bridge.errors import ErrorKind, QueryError
from sparql_bridge.models import BooleanResult
from sparql_bridge.session import QuerySession

from fakes import FakeResponse

ENDPOINT = "http://example.org/sparql"


def test_run_returns_result(make_client):
    client = make_client(FakeResponse(chunks='{"head": {}, "boolean": true}'))
    with QuerySession(client) as session:
        assert session.run(client.request(ENDPOINT, "ASK {}")) == BooleanResult(True)
        assert session.in_flight is False


def test_run_raises_classified_error(make_client):
    client = make_client(FakeResponse(status_code=503, content_type="text/plain"))
    with QuerySession(client) as session:
        with pytest.raises(QueryError) as info:
            session.run(client.request(ENDPOINT, "ASK {}"))
    assert info.value.kind is ErrorKind.HTTP_STATUS


def test_new_submission_cancels_pending(make_client):
    client = make_client(
        FakeResponse(chunks='{"boolean": true}'),
        FakeResponse(chunks='{"boolean": false}'),
    )
    entered = threading.Event()
    release = threading.Event()

    def hold_first_request():
        if not entered.is_set():
            entered.set()
            assert release.wait(5)

    client.session.before_request = hold_first_request
    with QuerySession(client, name="tab-1") as session:
        first_request = client.request(ENDPOINT, "ASK { ?s ?p ?o }")
        first = session.submit(first_request)
        assert entered.wait(5)
        assert session.in_flight is True

        second = session.submit(client.request(ENDPOINT, "ASK {}"))
        assert first_request.cancellation.cancelled
        release.set()

        assert first.result(timeout=5) is None
        assert second.result(timeout=5) == BooleanResult(False)
    assert len(client.session.calls) == 2


def test_close_cancels_outstanding_request(make_client):
    client = make_client(FakeResponse(chunks='{"boolean": true}'))
    release = threading.Event()
    client.session.before_request = lambda: release.wait(5)
    session = QuerySession(client)
    request = client.request(ENDPOINT, "ASK {}")
    future = session.submit(request)
    session.cancel()
    release.set()
    session.close()
    assert request.cancellation.cancelled
    assert future.result(timeout=5) is None


def test_superseded_request_resolves_without_waiting_for_endpoint(make_client):
    client = make_client(
        FakeResponse(chunks='{"boolean": true}'),
        FakeResponse(chunks='{"boolean": false}'),
    )
    entered = threading.Event()
    release = threading.Event()

    def hold_first_request():
        if not entered.is_set():
            entered.set()
            release.wait(5)

    client.session.before_request = hold_first_request
    try:
        with QuerySession(client) as session:
            first = session.submit(client.request(ENDPOINT, "ASK { ?s ?p ?o }"))
            assert entered.wait(5)
            second = session.submit(client.request(ENDPOINT, "ASK {}"))

            assert first.result(timeout=2) is None
            assert second.result(timeout=2) == BooleanResult(False)
            assert not release.is_set()
    finally:
        release.set()


def test_progress_callback_runs_on_worker(make_client):
    client = make_client(FakeResponse(chunks='{"boolean": true}'))
    phases = []
    with QuerySession(client) as session:
        future = session.submit(client.request(ENDPOINT, "ASK {}"), on_progress=lambda p: phases.append(p.phase))
        assert future.result(timeout=5) == BooleanResult(True)
    assert phases[0] == "executing"
    assert phases[-1] == "parsing"
