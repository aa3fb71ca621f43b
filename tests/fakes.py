"""In-memory stand-ins for requests objects and result payload builders."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from requests.structures import CaseInsensitiveDict


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        content_type: str = "application/sparql-results+json",
        chunks: Union[bytes, str, Iterable[bytes]] = b"",
        on_chunk: Optional[Callable[[int], None]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.status_code = status_code
        self.headers = CaseInsensitiveDict({"Content-Type": content_type} if content_type else {})
        self.headers.update(headers or {})
        if isinstance(chunks, str):
            chunks = chunks.encode("utf-8")
        self._chunks = [chunks] if isinstance(chunks, bytes) else list(chunks)
        self._on_chunk = on_chunk
        self.closed = False
        self.served = 0

    def iter_content(self, chunk_size: int = 1):
        for index, chunk in enumerate(self._chunks):
            if self.closed:
                raise ValueError("I/O operation on closed response")
            if self._on_chunk is not None:
                self._on_chunk(index)
            self.served += 1
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records calls."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes: List[Any] = list(outcomes)
        self.calls: List[Dict[str, Any]] = []
        self.before_request: Optional[Callable[[], None]] = None

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.outcomes:
            raise AssertionError("Unexpected extra HTTP request")
        # Taken before the hook runs so a blocked call keeps its own outcome.
        outcome = self.outcomes.pop(0)
        if self.before_request is not None:
            self.before_request()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def json_results(variables: List[str], rows: List[Dict[str, Any]]) -> str:
    return json.dumps({"head": {"vars": variables}, "results": {"bindings": rows}})


def uri_rows(count: int, var: str = "s") -> List[Dict[str, Any]]:
    return [{var: {"type": "uri", "value": f"http://example.org/item/{i}"}} for i in range(count)]


def split_chunks(payload: str, count: int) -> List[bytes]:
    data = payload.encode("utf-8")
    size = max(1, -(-len(data) // count))
    return [data[i : i + size] for i in range(0, len(data), size)]


def xml_results(variables: List[str], uris: List[str]) -> str:
    head = "".join(f'<variable name="{v}"/>' for v in variables)
    results = "".join(
        f'<result><binding name="{variables[0]}"><uri>{uri}</uri></binding></result>' for uri in uris
    )
    return (
        '<?xml version="1.0"?>'
        '<sparql xmlns="http://www.w3.org/2005/sparql-results#">'
        f"<head>{head}</head><results>{results}</results></sparql>"
    )
