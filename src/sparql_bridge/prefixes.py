"""
Namespace table used to render IRIs as compact `prefix:local` names.

Registration is append-only apart from re-binding a namespace to a new
prefix; abbreviation always picks the longest registered namespace that
is a literal prefix of the IRI.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, List, Mapping, Optional, Tuple

COMMON_PREFIXES: Dict[str, str] = {
    "rdf": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
    "rdfs": "http://www.w3.org/2000/01/rdf-schema#",
    "owl": "http://www.w3.org/2002/07/owl#",
    "xsd": "http://www.w3.org/2001/XMLSchema#",
    "foaf": "http://xmlns.com/foaf/0.1/",
    "skos": "http://www.w3.org/2004/02/skos/core#",
    "dc": "http://purl.org/dc/elements/1.1/",
    "dcterms": "http://purl.org/dc/terms/",
    "schema": "http://schema.org/",
    "dbo": "http://dbpedia.org/ontology/",
    "dbr": "http://dbpedia.org/resource/",
    "wdt": "http://www.wikidata.org/prop/direct/",
    "wd": "http://www.wikidata.org/entity/",
    "geo": "http://www.opengis.net/ont/geosparql#",
}

_PREFIX_DECL_RE = re.compile(r"PREFIX\s+([A-Za-z][\w.-]*|):\s*<([^>]+)>", flags=re.IGNORECASE)


class PrefixTable:
    """Mapping from namespace IRI to short prefix name."""

    def __init__(self, prefixes: Optional[Mapping[str, str]] = None) -> None:
        self._lock = threading.Lock()
        # namespace -> (prefix, registration sequence number)
        self._entries: Dict[str, Tuple[str, int]] = {}
        self._ordered: List[Tuple[str, str, int]] = []
        self._sequence = 0
        if prefixes:
            self.merge(prefixes)

    def register(self, namespace: str, prefix: str) -> None:
        """
        Bind `namespace` to `prefix`.

        Re-registering a namespace replaces its prefix for future calls and
        counts as the most recent registration when breaking ties.
        """

        if not namespace or namespace[-1].isalnum():
            raise ValueError(
                f"Namespace '{namespace}' must end in a non-alphanumeric character (e.g. '/' or '#')."
            )
        with self._lock:
            self._sequence += 1
            self._entries[namespace] = (prefix, self._sequence)
            # Longest namespace first; among equals the latest registration wins.
            self._ordered = sorted(
                ((ns, p, seq) for ns, (p, seq) in self._entries.items()),
                key=lambda item: (-len(item[0]), -item[2]),
            )

    def merge(self, prefixes: Mapping[str, str]) -> None:
        """Register every `prefix -> namespace` pair of a PREFIX-style mapping."""

        for prefix, namespace in prefixes.items():
            self.register(namespace, prefix)

    def abbreviate(self, iri: str) -> str:
        for namespace, prefix, _ in self._ordered:
            if iri.startswith(namespace):
                return f"{prefix}:{iri[len(namespace):]}"
        return iri

    def expand(self, curie: str) -> str:
        prefix, sep, local = curie.partition(":")
        if not sep:
            return curie
        for namespace, candidate, _ in sorted(self._ordered, key=lambda item: -item[2]):
            if candidate == prefix:
                return namespace + local
        return curie

    def namespaces(self) -> Dict[str, str]:
        """Return a `prefix -> namespace` snapshot."""

        return {prefix: ns for ns, prefix, _ in sorted(self._ordered, key=lambda item: item[2])}

    def copy(self) -> "PrefixTable":
        table = PrefixTable()
        for namespace, prefix, _ in sorted(self._ordered, key=lambda item: item[2]):
            table.register(namespace, prefix)
        return table

    def __contains__(self, namespace: object) -> bool:
        return namespace in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def parse_prefix_declarations(query: str) -> Dict[str, str]:
    """Extract `PREFIX name: <iri>` declarations from query text."""

    return {name: iri for name, iri in _PREFIX_DECL_RE.findall(query)}


def register_query_prefixes(table: PrefixTable, query: str) -> None:
    """Add a query's PREFIX declarations for namespaces the table does not know yet."""

    for name, iri in parse_prefix_declarations(query).items():
        if iri and not iri[-1].isalnum() and iri not in table:
            table.register(iri, name)


_DEFAULT_TABLE: Optional[PrefixTable] = None
_DEFAULT_LOCK = threading.Lock()


def default_prefix_table() -> PrefixTable:
    """Process-wide table, lazily seeded with the common prefixes."""

    global _DEFAULT_TABLE
    with _DEFAULT_LOCK:
        if _DEFAULT_TABLE is None:
            _DEFAULT_TABLE = PrefixTable(COMMON_PREFIXES)
        return _DEFAULT_TABLE


__all__ = [
    "COMMON_PREFIXES",
    "PrefixTable",
    "parse_prefix_declarations",
    "register_query_prefixes",
    "default_prefix_table",
]
