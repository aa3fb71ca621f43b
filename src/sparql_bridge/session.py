"""
Per-tab execution context: at most one query in flight at a time.

Executions run on a single worker thread so the caller's thread stays free.
Submitting a new request cancels the pending one first; because there is
only one worker, outcomes are delivered in submission order.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from sparql_bridge.client import ProtocolClient
from sparql_bridge.models import ProgressCallback, QueryRequest, UnifiedResult
from sparql_bridge.negotiation import EndpointCapabilities

logger = logging.getLogger(__name__)


class QuerySession:
    def __init__(self, client: ProtocolClient, name: str = "session") -> None:
        self.client = client
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sparql-{name}")
        self._lock = threading.Lock()
        self._pending: Optional[QueryRequest] = None
        self._future: Optional["Future[Optional[UnifiedResult]]"] = None

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._future is not None and not self._future.done()

    def submit(
        self,
        request: QueryRequest,
        capabilities: Optional[EndpointCapabilities] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "Future[Optional[UnifiedResult]]":
        """
        Schedule `request`, cancelling whatever this session was running.

        The future resolves to the result, to None if the request was
        cancelled, or raises the QueryError the execution failed with.
        """

        with self._lock:
            if self._pending is not None and self._future is not None and not self._future.done():
                logger.info("[%s] Cancelling pending query to %s", self.name, self._pending.endpoint)
                self._pending.cancellation.cancel()
            future = self._executor.submit(self.client.execute, request, capabilities, on_progress=on_progress)
            self._pending = request
            self._future = future
        future.add_done_callback(lambda f, r=request: self._finished(r))
        return future

    def run(
        self,
        request: QueryRequest,
        capabilities: Optional[EndpointCapabilities] = None,
    ) -> Optional[UnifiedResult]:
        """Submit and wait for the outcome."""

        return self.submit(request, capabilities).result()

    def cancel(self) -> None:
        with self._lock:
            if self._pending is not None:
                self._pending.cancellation.cancel()

    def _finished(self, request: QueryRequest) -> None:
        with self._lock:
            if self._pending is request:
                self._pending = None

    def close(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "QuerySession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = ["QuerySession"]
