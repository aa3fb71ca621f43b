from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Literal, Mapping, Optional, Tuple, Union


class QueryKind(str, Enum):
    SELECT = "SELECT"
    ASK = "ASK"
    CONSTRUCT = "CONSTRUCT"
    DESCRIBE = "DESCRIBE"
    UPDATE = "UPDATE"

    @property
    def produces_bindings(self) -> bool:
        return self in (QueryKind.SELECT, QueryKind.ASK)

    @property
    def produces_graph(self) -> bool:
        return self in (QueryKind.CONSTRUCT, QueryKind.DESCRIBE)


_PROLOGUE_RE = re.compile(
    r"^\s*(?:(?:#[^\n]*\n)|(?:PREFIX\s+[^\s:]*:\s*<[^>]*>)|(?:BASE\s*<[^>]*>)|\s+)*",
    flags=re.IGNORECASE,
)
_UPDATE_RE = re.compile(r"^(INSERT|DELETE|LOAD|CLEAR|CREATE|DROP|COPY|MOVE|ADD)\b")


def detect_query_kind(query: str) -> QueryKind:
    """
    Detect the operation of a SPARQL request from its text.

    Leading comments and PREFIX/BASE declarations are skipped. This is a
    keyword heuristic, not a parser; unrecognised text is treated as SELECT.
    """

    body = _PROLOGUE_RE.sub("", query, count=1).lstrip().upper()
    for kind in (QueryKind.SELECT, QueryKind.ASK, QueryKind.CONSTRUCT, QueryKind.DESCRIBE):
        if body.startswith(kind.value):
            return kind
    if _UPDATE_RE.match(body):
        return QueryKind.UPDATE
    return QueryKind.SELECT


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and one execution.

    Abort callbacks registered by the transport run once, on the thread that
    calls `cancel()`. A callback registered after cancellation runs at once.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


@dataclass(frozen=True)
class QueryRequest:
    """A single query or update submitted by a caller."""

    endpoint: str
    query: str
    kind: QueryKind
    timeout_ms: int = 60_000
    cancellation: CancellationToken = field(default_factory=CancellationToken, compare=False)
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be a positive integer.")
        # Read-only snapshot of the caller's mapping.
        object.__setattr__(self, "extra_headers", MappingProxyType(dict(self.extra_headers)))

    @classmethod
    def for_query(cls, endpoint: str, query: str, **kwargs) -> "QueryRequest":
        return cls(endpoint=endpoint, query=query, kind=detect_query_kind(query), **kwargs)


ProgressPhase = Literal["executing", "downloading", "parsing"]


@dataclass(frozen=True)
class Progress:
    """
    Snapshot of a running execution, passed to an `on_progress` callback.

    `total_bytes` comes from Content-Length and is None when the endpoint
    does not send one. `started_at` is wall-clock time (`time.time()`).
    """

    phase: ProgressPhase
    started_at: float
    bytes_received: int = 0
    total_bytes: Optional[int] = None
    bytes_per_second: float = 0.0


ProgressCallback = Callable[[Progress], None]


@dataclass(frozen=True)
class RawResponse:
    status: int
    content_type: str
    body: Union[bytes, str]

    @property
    def text(self) -> str:
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        return self.body


class CellKind(str, Enum):
    IRI = "iri"
    LITERAL = "literal"
    BLANK_NODE = "bnode"


@dataclass(frozen=True)
class Cell:
    """
    One bound RDF term, ready for display.

    `display_value` is derived and excluded from equality and hashing.
    """

    kind: CellKind
    lexical_value: str
    datatype: Optional[str] = None
    language: Optional[str] = None
    display_value: str = field(default="", compare=False, hash=False)


Row = Dict[str, Cell]
Triple = Tuple[Cell, Cell, Cell]


@dataclass(frozen=True)
class TabularResult:
    columns: Tuple[str, ...]
    rows: Tuple[Row, ...]
    truncated: bool = False
    total_available: Optional[int] = None


@dataclass(frozen=True)
class BooleanResult:
    value: bool


@dataclass(frozen=True)
class GraphResult:
    triples: Tuple[Triple, ...]
    truncated: bool = False


@dataclass(frozen=True)
class UpdateResult:
    """Successful SPARQL Update; the endpoint's response body is not parsed."""

    status: int


UnifiedResult = Union[TabularResult, BooleanResult, GraphResult, UpdateResult]


__all__ = [
    "QueryKind",
    "detect_query_kind",
    "CancellationToken",
    "QueryRequest",
    "ProgressPhase",
    "Progress",
    "ProgressCallback",
    "RawResponse",
    "CellKind",
    "Cell",
    "Row",
    "Triple",
    "TabularResult",
    "BooleanResult",
    "GraphResult",
    "UpdateResult",
    "UnifiedResult",
]
