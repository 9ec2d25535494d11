import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

import h11

from egress import fetch_upstream
from egress.fetch_delegate import FetchDescriptor, FetchExecutor, FetchResult
from egress.interface import Headers

logger = logging.getLogger(__name__)

FetchFunc = Callable[[FetchDescriptor], tuple[int, Headers, bytes]]

@dataclass
class PendingFetch:
    descriptor: FetchDescriptor
    done: threading.Event = field(default_factory=threading.Event)
    status: int = 0
    headers: Headers = field(default_factory=list)
    body: bytes = b''

class LocalFetchExecutor(FetchExecutor):
    """
    In-process executor: every submitted request is fetched on its own worker
    thread and parked in the pending table until the session polls for it.
    """

    def __init__(
        self,
        fetch: Optional[FetchFunc] = None,
        proxy_config: Optional[tuple[str, int]] = None,
        timeout: Optional[float] = None,
    ):
        if fetch is None:
            fetch = lambda descriptor: fetch_upstream.fetch(descriptor, proxy_config, timeout)
        self.fetch = fetch
        self.pending: dict[int, PendingFetch] = {}
        self.lock = threading.Lock()

    def submit(self, descriptor: FetchDescriptor) -> bool:
        with self.lock:
            # resubmitting an in-flight id is a no-op
            if descriptor.correlation_id in self.pending:
                return True
            entry = PendingFetch(descriptor)
            self.pending[descriptor.correlation_id] = entry

        worker = threading.Thread(target=self._run, args=(entry,), daemon=True)
        worker.start()
        return True

    def poll_headers(self, correlation_id: int) -> Optional[FetchResult]:
        with self.lock:
            entry = self.pending.get(correlation_id)
        if entry is None:
            logger.error(f"poll_headers: unknown request id {correlation_id}")
            return None

        entry.done.wait()

        # nothing left to hand out once an empty body is reported
        if not entry.body:
            self._release(correlation_id)
        return FetchResult(
            correlation_id=correlation_id,
            status=entry.status,
            headers=entry.headers,
            body_length=len(entry.body),
        )

    def poll_body(self, correlation_id: int) -> Optional[bytes]:
        entry = self._release(correlation_id)
        if entry is None:
            logger.error(f"poll_body: unknown request id {correlation_id}")
            return None
        entry.done.wait()
        return entry.body

    def _release(self, correlation_id: int) -> Optional[PendingFetch]:
        with self.lock:
            return self.pending.pop(correlation_id, None)

    def _run(self, entry: PendingFetch):
        descriptor = entry.descriptor
        try:
            entry.status, entry.headers, entry.body = self.fetch(descriptor)
        except (OSError, ValueError, h11.ProtocolError) as e:
            logger.log(logging.WARNING, f"fetch {descriptor.method} {descriptor.url} failed: {e}")
            entry.status, entry.headers, entry.body = 0, [], b''
        finally:
            entry.done.set()
