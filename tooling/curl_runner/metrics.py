"""
Per-call request metrics.

Start time, duration, attempts, redirects and body size are always filled
in. Connection timings come from httpcore's "trace" request extension and
stay None when the transport emits no trace events (httpx.MockTransport or
a caller-supplied transport that does not go through httpcore).
"""
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class RequestMetrics:
    start_time: float                     # time.time() when the call began
    duration: float = 0.0                 # seconds, whole call
    attempts: int = 0
    redirects: int = 0
    response_size: int = 0                # decoded body bytes
    connect_time: Optional[float] = None  # TCP connect, summed over connections
    tls_time: Optional[float] = None      # TLS handshakes, summed
    time_to_first_byte: Optional[float] = None

    @property
    def retry_count(self) -> int:
        return max(self.attempts - 1, 0)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["retry_count"] = self.retry_count
        return d


class TraceRecorder:
    """
    Collects httpcore trace events for one call.

    Event names look like "connection.connect_tcp.started" /
    ".complete" / ".failed"; only completed steps are timed. Pass
    `recorder.trace` as the request's "trace" extension.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._t0 = clock()
        self._open: Dict[str, float] = {}
        self.durations: Dict[str, float] = {}
        self.first_byte_at: Optional[float] = None

    async def trace(self, name: str, info: Dict[str, Any]) -> None:
        step, _, phase = name.rpartition(".")
        now = self._clock()
        if phase == "started":
            self._open[step] = now
            return
        begun = self._open.pop(step, None)
        if phase != "complete" or begun is None:
            return
        self.durations[step] = self.durations.get(step, 0.0) + (now - begun)
        if step.endswith("receive_response_headers") and self.first_byte_at is None:
            self.first_byte_at = now

    def apply(self, metrics: RequestMetrics) -> RequestMetrics:
        metrics.connect_time = self.durations.get("connection.connect_tcp")
        metrics.tls_time = self.durations.get("connection.start_tls")
        if self.first_byte_at is not None:
            metrics.time_to_first_byte = self.first_byte_at - self._t0
        return metrics
