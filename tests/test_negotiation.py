"""Tests for Accept negotiation plans."""

import pytest

from sparql_bridge.errors import ErrorKind, QueryError
from sparql_bridge.models import QueryKind
from sparql_bridge.negotiation import (
    ANY,
    GRAPH_FORMATS,
    JSON_LD,
    SPARQL_RESULTS_JSON,
    SPARQL_RESULTS_XML,
    TURTLE,
    EndpointCapabilities,
    FormatNegotiator,
    normalize_media_type,
)


@pytest.mark.parametrize("kind", [QueryKind.SELECT, QueryKind.ASK])
def test_binding_plans_contain_no_graph_formats(kind):
    plan = FormatNegotiator().plan(kind)
    types = [c.media_type for c in plan.candidates]
    assert types == [SPARQL_RESULTS_JSON, SPARQL_RESULTS_XML]
    assert not set(types) & set(GRAPH_FORMATS)


@pytest.mark.parametrize("kind", [QueryKind.CONSTRUCT, QueryKind.DESCRIBE])
def test_graph_plans_start_with_turtle(kind):
    plan = FormatNegotiator().plan(kind)
    assert [c.media_type for c in plan.candidates][:2] == [TURTLE, JSON_LD]


def test_update_plan_accepts_anything():
    plan = FormatNegotiator().plan(QueryKind.UPDATE)
    assert [c.media_type for c in plan.candidates] == [ANY]


def test_plan_is_consumed_front_to_back():
    negotiator = FormatNegotiator()
    plan = negotiator.plan(QueryKind.SELECT)
    assert plan.current is None
    assert negotiator.next(plan) == SPARQL_RESULTS_JSON
    assert negotiator.next(plan) == SPARQL_RESULTS_XML
    assert plan.attempts == 2
    assert plan.remaining == 0
    with pytest.raises(QueryError) as info:
        negotiator.next(plan)
    assert info.value.kind is ErrorKind.FORMAT_UNSUPPORTED
    assert SPARQL_RESULTS_XML in info.value.details


def test_capabilities_prune_plan():
    caps = EndpointCapabilities(result_formats={QueryKind.SELECT: frozenset({SPARQL_RESULTS_XML})})
    plan = FormatNegotiator().plan(QueryKind.SELECT, caps)
    assert [c.media_type for c in plan.candidates] == [SPARQL_RESULTS_XML]


def test_unknown_capabilities_leave_plan_alone():
    caps = EndpointCapabilities(result_formats={QueryKind.SELECT: frozenset({SPARQL_RESULTS_XML})})
    plan = FormatNegotiator().plan(QueryKind.CONSTRUCT, caps)
    assert len(plan.candidates) == len(GRAPH_FORMATS)


def test_service_description_format_iris():
    caps = EndpointCapabilities.from_service_description(
        ["http://www.w3.org/ns/formats/SPARQL_Results_XML", "text/turtle; charset=utf-8"],
        features=["http://www.w3.org/ns/sparql-service-description#SPARQL11Update"],
    )
    assert caps.formats_for(QueryKind.SELECT) == frozenset({SPARQL_RESULTS_XML})
    assert caps.formats_for(QueryKind.DESCRIBE) == frozenset({TURTLE})
    assert caps.supports_update() is True
    assert EndpointCapabilities().supports_update() is None


def test_incompatible_custom_formats_are_dropped():
    negotiator = FormatNegotiator(order={QueryKind.SELECT: [TURTLE, "text/csv", SPARQL_RESULTS_JSON]})
    plan = negotiator.plan(QueryKind.SELECT)
    assert [c.media_type for c in plan.candidates] == ["text/csv", SPARQL_RESULTS_JSON]


def test_empty_plan_fails_immediately():
    caps = EndpointCapabilities(result_formats={QueryKind.ASK: frozenset({"text/csv"})})
    negotiator = FormatNegotiator()
    plan = negotiator.plan(QueryKind.ASK, caps)
    with pytest.raises(QueryError) as info:
        negotiator.next(plan)
    assert info.value.kind is ErrorKind.FORMAT_UNSUPPORTED


def test_normalize_media_type():
    assert normalize_media_type("Application/SPARQL-Results+JSON; charset=UTF-8") == SPARQL_RESULTS_JSON
