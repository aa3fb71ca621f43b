"""
Client-side engine for running SPARQL queries against remote endpoints.

This package contains the protocol client, format negotiation, result
parsing with row caps, error classification, and IRI abbreviation used to
turn heterogeneous endpoint responses into one bounded result model.
"""

from sparql_bridge.client import ProtocolClient
from sparql_bridge.errors import ErrorKind, QueryError, classify
from sparql_bridge.models import (
    BooleanResult,
    CancellationToken,
    Cell,
    CellKind,
    GraphResult,
    QueryKind,
    QueryRequest,
    RawResponse,
    TabularResult,
    UnifiedResult,
    UpdateResult,
    detect_query_kind,
)
from sparql_bridge.negotiation import EndpointCapabilities, FormatNegotiator, NegotiationPlan
from sparql_bridge.parser import parse
from sparql_bridge.prefixes import PrefixTable, default_prefix_table
from sparql_bridge.session import QuerySession

__version__ = "0.1.0"

__all__ = [
    "ProtocolClient",
    "QuerySession",
    "ErrorKind",
    "QueryError",
    "classify",
    "BooleanResult",
    "CancellationToken",
    "Cell",
    "CellKind",
    "GraphResult",
    "QueryKind",
    "QueryRequest",
    "RawResponse",
    "TabularResult",
    "UnifiedResult",
    "UpdateResult",
    "detect_query_kind",
    "EndpointCapabilities",
    "FormatNegotiator",
    "NegotiationPlan",
    "parse",
    "PrefixTable",
    "default_prefix_table",
]
