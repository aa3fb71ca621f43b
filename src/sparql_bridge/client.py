from __future__ import annotations

import logging
import socket
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Literal, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import ReadTimeoutError
from urllib3.util.retry import Retry

from sparql_bridge.config import AppConfig, load_config
from sparql_bridge.errors import ErrorKind, QueryError, classify, timeout_error
from sparql_bridge.models import (
    CancellationToken,
    Progress,
    ProgressCallback,
    ProgressPhase,
    QueryKind,
    QueryRequest,
    RawResponse,
    UnifiedResult,
)
from sparql_bridge.negotiation import EndpointCapabilities, FormatNegotiator
from sparql_bridge.parser import parse
from sparql_bridge.prefixes import PrefixTable, default_prefix_table, register_query_prefixes

logger = logging.getLogger(__name__)

HttpMethod = Literal["GET", "POST"]

CHUNK_SIZE = 64 * 1024
MAX_ERROR_BODY_BYTES = 64 * 1024
PROGRESS_INTERVAL = 0.1
_PROTECTED_HEADERS = {"accept", "content-type"}


def configure_session(user_agent: str) -> requests.Session:
    """
    Session with transport-level retries switched off.

    The only retry this client performs is the single 406 format fallback.
    """

    session = requests.Session()
    adapter = HTTPAdapter(max_retries=Retry(total=0, raise_on_status=False))
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


def build_get_url(endpoint: str, query: str) -> str:
    """Append the percent-encoded `query` parameter to the endpoint URL."""

    parts = urlsplit(endpoint)
    encoded = urlencode({"query": query})
    combined = f"{parts.query}&{encoded}" if parts.query else encoded
    return urlunsplit((parts.scheme, parts.netloc, parts.path, combined, parts.fragment))


def select_method(endpoint: str, query: str, kind: QueryKind, threshold: int) -> HttpMethod:
    if kind == QueryKind.UPDATE:
        return "POST"
    return "POST" if len(build_get_url(endpoint, query)) > threshold else "GET"


def build_headers(
    accept: str,
    method: HttpMethod,
    kind: QueryKind,
    extra: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Protocol headers; caller extras are merged last but cannot replace them."""

    headers: Dict[str, str] = {"Accept": accept}
    if method == "POST":
        headers["Content-Type"] = (
            "application/sparql-update" if kind == QueryKind.UPDATE else "application/sparql-query"
        )
    for name, value in (extra or {}).items():
        if name.lower() in _PROTECTED_HEADERS:
            logger.debug("Ignoring caller-supplied %s header", name)
            continue
        headers[name] = value
    return headers


def _abort(response: requests.Response) -> None:
    """Close a streaming response, shutting its socket down first so a blocked read returns."""

    connection = getattr(getattr(response, "raw", None), "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug("Socket shutdown failed: %s", exc)
    response.close()


def _is_read_timeout(exc: BaseException) -> bool:
    # requests reports a body read timeout as ConnectionError(ReadTimeoutError).
    if isinstance(exc, (requests.Timeout, ReadTimeoutError)):
        return True
    return any(isinstance(arg, ReadTimeoutError) for arg in getattr(exc, "args", ()))


@contextmanager
def _watchdog(response: requests.Response, token: CancellationToken, deadline: float) -> Iterator[threading.Event]:
    """
    Abort `response` when the deadline passes or the token is cancelled.

    The yielded event is set when the deadline fired, so a read error caused
    by the abort can be reported as a timeout.
    """

    expired = threading.Event()

    def expire() -> None:
        expired.set()
        _abort(response)

    def cancel() -> None:
        _abort(response)

    timer = threading.Timer(max(deadline - time.monotonic(), 0.0), expire)
    timer.daemon = True
    token.on_cancel(cancel)
    timer.start()
    try:
        yield expired
    finally:
        timer.cancel()
        token.remove(cancel)


class _PendingCall:
    """
    One blocking `session.request` run on a helper thread.

    The executing thread waits on it and can stop waiting on cancellation or
    at the deadline. A response that arrives after the call was abandoned is
    closed by the helper.
    """

    def __init__(self, session: requests.Session, method: str, url: str, kwargs: Dict[str, Any]) -> None:
        self.response: Optional[requests.Response] = None
        self.error: Optional[BaseException] = None
        self._done = threading.Event()
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self._abandoned = False
        self._thread = threading.Thread(
            target=self._run,
            args=(session, method, url, kwargs),
            name="sparql-request",
            daemon=True,
        )
        self._thread.start()

    def _run(self, session: requests.Session, method: str, url: str, kwargs: Dict[str, Any]) -> None:
        try:
            response = session.request(method, url, **kwargs)
        except Exception as exc:
            # Handed to the waiting thread, which raises it.
            self.error = exc
        else:
            with self._lock:
                if self._abandoned:
                    response.close()
                else:
                    self.response = response
        finally:
            self._done.set()
            self._wake.set()

    def wake(self) -> None:
        self._wake.set()

    def wait(self, timeout: float) -> bool:
        """Block until the call finishes, `wake()` is called, or `timeout` passes."""

        self._wake.wait(timeout)
        return self._done.is_set()

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            response, self.response = self.response, None
        if response is not None:
            response.close()


class _ProgressReporter:
    """Builds Progress updates for one execution, throttling download updates."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self.callback = callback
        self.started_at = time.time()
        self.bytes_received = 0
        self.total_bytes: Optional[int] = None
        self._download_started = 0.0
        self._last_update: Optional[float] = None

    def phase(self, phase: ProgressPhase) -> None:
        if self.callback is None:
            return
        self.callback(
            Progress(
                phase=phase,
                started_at=self.started_at,
                bytes_received=self.bytes_received,
                total_bytes=self.total_bytes,
                bytes_per_second=self._speed(time.monotonic()),
            )
        )

    def start_download(self, response: requests.Response) -> None:
        self.bytes_received = 0
        self.total_bytes = _content_length(response)
        self._download_started = time.monotonic()
        self._last_update = None

    def received(self, size: int) -> None:
        self.bytes_received += size
        now = time.monotonic()
        if self._last_update is None or now - self._last_update >= PROGRESS_INTERVAL:
            self._last_update = now
            self.phase("downloading")

    def _speed(self, now: float) -> float:
        elapsed = now - self._download_started if self._download_started else 0.0
        return self.bytes_received / elapsed if elapsed > 0 else 0.0


def _content_length(response: requests.Response) -> Optional[int]:
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class ProtocolClient:
    """
    Executes one QueryRequest against a SPARQL endpoint.

    `execute` returns the parsed result, or None when the caller cancelled the
    request. Every failure is raised as a classified QueryError.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        session: Optional[requests.Session] = None,
        negotiator: Optional[FormatNegotiator] = None,
        prefixes: Optional[PrefixTable] = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        self.session = session if session is not None else configure_session(self.config.http.user_agent)
        self.negotiator = negotiator if negotiator is not None else FormatNegotiator()
        if prefixes is None:
            prefixes = default_prefix_table()
            for name, namespace in self.config.prefixes.items():
                if namespace not in prefixes:
                    prefixes.register(namespace, name)
        self.prefixes = prefixes

    def request(self, endpoint: str, query: str, **kwargs) -> QueryRequest:
        """Build a QueryRequest using this client's configured timeout."""

        kwargs.setdefault("timeout_ms", self.config.http.timeout_ms)
        return QueryRequest.for_query(endpoint, query, **kwargs)

    def execute(
        self,
        request: QueryRequest,
        capabilities: Optional[EndpointCapabilities] = None,
        row_cap: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[UnifiedResult]:
        """
        Run `request` and return its parsed result.

        `on_progress` is called on the executing thread with an "executing"
        update per HTTP attempt, "downloading" updates at most every 100 ms
        while the body streams, and a "parsing" update once the body ends.
        """

        token = request.cancellation
        if token.cancelled:
            logger.info("Query to %s cancelled before it was sent", request.endpoint)
            return None

        deadline = time.monotonic() + request.timeout_ms / 1000.0
        cap = row_cap if row_cap is not None else self.config.limits.max_rows
        register_query_prefixes(self.prefixes, request.query)
        progress = _ProgressReporter(on_progress)

        plan = self.negotiator.plan(request.kind, capabilities)
        accept = self.negotiator.next(plan)
        fallback_used = False

        while True:
            progress.phase("executing")
            response = self._send(request, accept, deadline)
            if response is None:
                return None
            try:
                if response.status_code == 406 and not fallback_used:
                    fallback_used = True
                    logger.warning(
                        "Endpoint %s rejected %s (406); trying next format", request.endpoint, accept
                    )
                    accept = self.negotiator.next(plan)
                    continue

                content_type = response.headers.get("Content-Type", "")
                if response.status_code >= 400:
                    error_body = self._read_error_body(response, token, deadline, request.timeout_ms)
                    if token.cancelled:
                        return None
                    error = classify(RawResponse(response.status_code, content_type, error_body))
                    logger.info("Query to %s failed: %r", request.endpoint, error)
                    raise error

                body = self._iter_body(response, token, deadline, request.timeout_ms, progress)
                try:
                    result = parse(
                        body,
                        content_type,
                        request.kind,
                        cap,
                        prefixes=self.prefixes,
                        status=response.status_code,
                    )
                except QueryError:
                    if token.cancelled:
                        return None
                    raise
                finally:
                    body.close()
                if token.cancelled:
                    logger.info("Discarding result of cancelled query to %s", request.endpoint)
                    return None
                logger.info(
                    "Query to %s returned %s (format %s)",
                    request.endpoint,
                    type(result).__name__,
                    content_type or "unknown",
                )
                return result
            finally:
                response.close()

    def _send(self, request: QueryRequest, accept: str, deadline: float) -> Optional[requests.Response]:
        token = request.cancellation
        threshold = self.config.http.url_length_threshold_for_post
        method = select_method(request.endpoint, request.query, request.kind, threshold)
        extra = {**self.config.http.headers, **request.extra_headers}
        headers = build_headers(accept, method, request.kind, extra)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise timeout_error(request.timeout_ms)

        logger.info("SPARQL %s %s (%s, accept=%s)", method, request.endpoint, request.kind.value, accept)
        logger.debug("Request headers: %s", headers)
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": remaining, "stream": True}
        if method == "GET":
            url = build_get_url(request.endpoint, request.query)
        else:
            url = request.endpoint
            kwargs["data"] = request.query.encode("utf-8")

        call = _PendingCall(self.session, method, url, kwargs)
        token.on_cancel(call.wake)
        try:
            finished = call.wait(remaining)
        finally:
            token.remove(call.wake)

        if token.cancelled:
            logger.info("Query to %s cancelled while waiting for the response", request.endpoint)
            call.abandon()
            return None
        if not finished:
            call.abandon()
            raise timeout_error(request.timeout_ms)

        exc = call.error
        if isinstance(exc, requests.Timeout):
            raise QueryError(
                ErrorKind.TIMEOUT,
                f"Query timed out after {request.timeout_ms} ms",
                details=str(exc)[:500] or None,
                cause=exc,
            ) from exc
        if exc is not None:
            raise classify(exc) from exc

        response = call.response
        if time.monotonic() > deadline:
            response.close()
            raise timeout_error(request.timeout_ms)
        return response

    def _iter_body(
        self,
        response: requests.Response,
        token: CancellationToken,
        deadline: float,
        timeout_ms: int,
        progress: _ProgressReporter,
    ) -> Iterator[bytes]:
        """Stream the body, stopping on cancellation and enforcing the deadline."""

        progress.start_download(response)
        with _watchdog(response, token, deadline) as expired:
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if token.cancelled:
                        return
                    if expired.is_set() or time.monotonic() > deadline:
                        raise timeout_error(timeout_ms)
                    progress.received(len(chunk))
                    yield chunk
                # An aborted stream can end quietly instead of raising.
                if token.cancelled:
                    return
                if expired.is_set():
                    raise timeout_error(timeout_ms)
            except QueryError:
                raise
            except Exception as exc:
                # Aborting the response from another thread surfaces here as a read error.
                if token.cancelled:
                    return
                if expired.is_set() or time.monotonic() > deadline or _is_read_timeout(exc):
                    raise timeout_error(timeout_ms) from exc
                raise classify(exc) from exc
        progress.phase("downloading")
        progress.phase("parsing")

    def _read_error_body(
        self,
        response: requests.Response,
        token: CancellationToken,
        deadline: float,
        timeout_ms: int,
    ) -> bytes:
        collected = bytearray()
        with _watchdog(response, token, deadline) as expired:
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    collected.extend(chunk)
                    if len(collected) >= MAX_ERROR_BODY_BYTES or token.cancelled:
                        break
                    if expired.is_set() or time.monotonic() > deadline:
                        raise timeout_error(timeout_ms)
            except (requests.RequestException, OSError, ValueError) as exc:
                # A closed or aborted stream raises one of these.
                if expired.is_set() or _is_read_timeout(exc):
                    raise timeout_error(timeout_ms) from exc
                logger.debug("Could not read error body: %s", exc)
        if expired.is_set() and not token.cancelled:
            raise timeout_error(timeout_ms)
        return bytes(collected[:MAX_ERROR_BODY_BYTES])


__all__ = [
    "ProtocolClient",
    "configure_session",
    "build_get_url",
    "build_headers",
    "select_method",
]
