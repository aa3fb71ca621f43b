from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from sparql_bridge.errors import format_unsupported
from sparql_bridge.models import QueryKind

logger = logging.getLogger(__name__)

SPARQL_RESULTS_JSON = "application/sparql-results+json"
SPARQL_RESULTS_XML = "application/sparql-results+xml"
SPARQL_RESULTS_CSV = "text/csv"
SPARQL_RESULTS_TSV = "text/tab-separated-values"
TURTLE = "text/turtle"
JSON_LD = "application/ld+json"
N_TRIPLES = "application/n-triples"
RDF_XML = "application/rdf+xml"
ANY = "*/*"

BINDING_FORMATS: Tuple[str, ...] = (SPARQL_RESULTS_JSON, SPARQL_RESULTS_XML)
GRAPH_FORMATS: Tuple[str, ...] = (TURTLE, JSON_LD, N_TRIPLES, RDF_XML)

DEFAULT_ORDER: Dict[QueryKind, Tuple[str, ...]] = {
    QueryKind.SELECT: BINDING_FORMATS,
    QueryKind.ASK: BINDING_FORMATS,
    QueryKind.CONSTRUCT: GRAPH_FORMATS,
    QueryKind.DESCRIBE: GRAPH_FORMATS,
    QueryKind.UPDATE: (ANY,),
}

# W3C "Unique URIs for File Formats", as used by sd:resultFormat.
FORMAT_IRIS: Dict[str, str] = {
    "http://www.w3.org/ns/formats/SPARQL_Results_JSON": SPARQL_RESULTS_JSON,
    "http://www.w3.org/ns/formats/SPARQL_Results_XML": SPARQL_RESULTS_XML,
    "http://www.w3.org/ns/formats/SPARQL_Results_CSV": SPARQL_RESULTS_CSV,
    "http://www.w3.org/ns/formats/SPARQL_Results_TSV": SPARQL_RESULTS_TSV,
    "http://www.w3.org/ns/formats/Turtle": TURTLE,
    "http://www.w3.org/ns/formats/JSON-LD": JSON_LD,
    "http://www.w3.org/ns/formats/N-Triples": N_TRIPLES,
    "http://www.w3.org/ns/formats/RDF_XML": RDF_XML,
}

SPARQL11_UPDATE = "http://www.w3.org/ns/sparql-service-description#SPARQL11Update"


def normalize_media_type(value: str) -> str:
    """Lower-case a media type and drop its parameters (`; charset=...`)."""

    return value.split(";", 1)[0].strip().lower()


@dataclass(frozen=True)
class EndpointCapabilities:
    """
    What a service description says an endpoint supports.

    An empty media-type set for a query kind means "unknown", not "nothing".
    """

    result_formats: Mapping[QueryKind, FrozenSet[str]] = field(default_factory=dict)
    features: FrozenSet[str] = frozenset()

    def formats_for(self, kind: QueryKind) -> FrozenSet[str]:
        return self.result_formats.get(kind, frozenset())

    def supports_update(self) -> Optional[bool]:
        if not self.features:
            return None
        return SPARQL11_UPDATE in self.features

    @classmethod
    def from_service_description(
        cls,
        result_formats: Iterable[str],
        features: Iterable[str] = (),
    ) -> "EndpointCapabilities":
        """
        Build capabilities from `sd:resultFormat` values and language/feature IRIs.

        Service descriptions list formats for the endpoint as a whole, so each
        format is assigned to the query kinds that can produce it.
        """

        media_types = set()
        for value in result_formats:
            media_type = FORMAT_IRIS.get(value.strip(), value)
            media_types.add(normalize_media_type(media_type))

        by_kind: Dict[QueryKind, FrozenSet[str]] = {}
        for kind in (QueryKind.SELECT, QueryKind.ASK, QueryKind.CONSTRUCT, QueryKind.DESCRIBE):
            relevant = {m for m in media_types if m in DEFAULT_ORDER[kind]}
            if relevant:
                by_kind[kind] = frozenset(relevant)
        return cls(result_formats=by_kind, features=frozenset(features))


@dataclass(frozen=True)
class Candidate:
    media_type: str
    query_kind_compatible: bool = True


class NegotiationPlan:
    """Ordered candidates for one request, consumed front to back."""

    def __init__(self, kind: QueryKind, candidates: Iterable[Candidate]) -> None:
        self.kind = kind
        self.candidates: Tuple[Candidate, ...] = tuple(candidates)
        self._cursor = -1

    @property
    def current(self) -> Optional[str]:
        if 0 <= self._cursor < len(self.candidates):
            return self.candidates[self._cursor].media_type
        return None

    @property
    def attempts(self) -> int:
        """Number of candidates handed out so far."""

        return min(self._cursor + 1, len(self.candidates))

    @property
    def remaining(self) -> int:
        return len(self.candidates) - self.attempts

    @property
    def tried(self) -> List[str]:
        return [c.media_type for c in self.candidates[: self.attempts]]

    def _advance(self) -> Optional[str]:
        if self._cursor + 1 >= len(self.candidates):
            self._cursor = len(self.candidates)
            return None
        self._cursor += 1
        return self.candidates[self._cursor].media_type

    def __repr__(self) -> str:
        types = [c.media_type for c in self.candidates]
        return f"NegotiationPlan(kind={self.kind.value}, candidates={types}, attempts={self.attempts})"


class FormatNegotiator:
    """Chooses response serializations per query kind."""

    def __init__(self, order: Optional[Mapping[QueryKind, Iterable[str]]] = None) -> None:
        self._order: Dict[QueryKind, Tuple[str, ...]] = dict(DEFAULT_ORDER)
        if order:
            for kind, media_types in order.items():
                self._order[kind] = tuple(media_types)

    def plan(
        self,
        kind: QueryKind,
        capabilities: Optional[EndpointCapabilities] = None,
    ) -> NegotiationPlan:
        media_types = list(self._order[kind])

        if capabilities is not None:
            supported = capabilities.formats_for(kind)
            if supported and kind != QueryKind.UPDATE:
                pruned = [m for m in media_types if normalize_media_type(m) in supported]
                logger.debug(
                    "Pruned %s plan from %s to %s using endpoint capabilities",
                    kind.value,
                    media_types,
                    pruned,
                )
                media_types = pruned
            if kind == QueryKind.UPDATE and capabilities.supports_update() is False:
                logger.warning("Endpoint does not advertise SPARQL 1.1 Update support; sending anyway.")

        compatible = set(DEFAULT_ORDER[kind]) | (
            {SPARQL_RESULTS_CSV, SPARQL_RESULTS_TSV} if kind.produces_bindings else set()
        )
        candidates = [Candidate(m, normalize_media_type(m) in compatible) for m in media_types]
        dropped = [c.media_type for c in candidates if not c.query_kind_compatible]
        if dropped:
            logger.warning("Dropping formats that cannot carry %s results: %s", kind.value, dropped)
        return NegotiationPlan(kind, [c for c in candidates if c.query_kind_compatible])

    def next(self, plan: NegotiationPlan) -> str:
        """Advance `plan` and return its next media type, or raise FORMAT_UNSUPPORTED."""

        media_type = plan._advance()
        if media_type is None:
            raise format_unsupported(plan)
        logger.debug("Negotiating %s as %s (attempt %d)", plan.kind.value, media_type, plan.attempts)
        return media_type


__all__ = [
    "SPARQL_RESULTS_JSON",
    "SPARQL_RESULTS_XML",
    "SPARQL_RESULTS_CSV",
    "SPARQL_RESULTS_TSV",
    "TURTLE",
    "JSON_LD",
    "N_TRIPLES",
    "RDF_XML",
    "ANY",
    "BINDING_FORMATS",
    "GRAPH_FORMATS",
    "DEFAULT_ORDER",
    "FORMAT_IRIS",
    "normalize_media_type",
    "EndpointCapabilities",
    "Candidate",
    "NegotiationPlan",
    "FormatNegotiator",
]
