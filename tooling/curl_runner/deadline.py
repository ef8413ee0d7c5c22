"""
One deadline per call.

A caller may hand in a CancellationSignal (optionally carrying a deadline)
and the command may carry -m/--max-time. resolve() collapses the two into a
single EffectiveDeadline:

  1) the caller's deadline, when present, is authoritative; the configured
     timeout is ignored entirely
  2) otherwise a positive configured timeout starts a new deadline
  3) otherwise there is no deadline

The transport is never given a second overall timeout, so nothing can race
the resolved deadline.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from .errors import Cancelled, CurlRunnerError, DeadlineExceeded


logger = logging.getLogger(__name__)


class CancellationSignal:
    """
    Caller-side cancellation handle.

    - cancel() aborts any call observing this signal, including one that is
      in flight or sleeping between retries
    - deadline (time.monotonic() based) bounds every call observing it

    Must be used from the event loop thread that runs the calls.
    """

    def __init__(self, *, deadline: Optional[float] = None, timeout: Optional[float] = None):
        if deadline is not None and timeout is not None:
            raise ValueError("pass either deadline or timeout, not both")
        if timeout is not None:
            deadline = time.monotonic() + timeout
        self._deadline = deadline
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationSignal":
        return cls(timeout=seconds)

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class EffectiveDeadline:
    at: Optional[float]  # time.monotonic() value, None = unbounded
    source: str          # "caller" | "config" | "none"

    def remaining(self, now: Optional[float] = None) -> Optional[float]:
        if self.at is None:
            return None
        now = time.monotonic() if now is None else now
        return self.at - now

    @property
    def expired(self) -> bool:
        r = self.remaining()
        return r is not None and r <= 0


NO_DEADLINE = EffectiveDeadline(at=None, source="none")


def resolve(
    signal: Optional[CancellationSignal],
    cfg_timeout: Optional[float],
    *,
    now: Optional[float] = None,
) -> EffectiveDeadline:
    if signal is not None and signal.deadline is not None:
        return EffectiveDeadline(at=signal.deadline, source="caller")
    if cfg_timeout is not None and cfg_timeout > 0:
        now = time.monotonic() if now is None else now
        return EffectiveDeadline(at=now + cfg_timeout, source="config")
    return NO_DEADLINE


@dataclass
class ExecutionContext:
    """Per-call state for one full retry sequence. Never shared between calls."""

    deadline: EffectiveDeadline
    signal: Optional[CancellationSignal] = None
    url: Optional[str] = None
    attempt: int = 0

    def check(self) -> None:
        if self.signal is not None and self.signal.cancelled:
            raise Cancelled(self.signal.reason or "request cancelled", url=self.url)
        if self.deadline.expired:
            raise DeadlineExceeded(url=self.url)

    async def sleep(self, delay: float) -> None:
        """
        Backoff sleep that returns early (by raising) on cancellation.
        A sleep that would outlast the deadline fails immediately instead.
        """
        self.check()
        remaining = self.deadline.remaining()
        if remaining is not None and remaining <= delay:
            raise DeadlineExceeded("deadline would expire during retry backoff", url=self.url)

        if delay > 0:
            if self.signal is None:
                await asyncio.sleep(delay)
            else:
                try:
                    await asyncio.wait_for(self.signal.wait(), timeout=delay)
                except TimeoutError:
                    pass
        self.check()


@asynccontextmanager
async def deadline_scope(ctx: ExecutionContext) -> AsyncIterator[ExecutionContext]:
    """
    Bound the enclosed block by the effective deadline and the caller's
    signal. In-flight awaits (connect, TLS handshake, body reads, sleeps)
    are cancelled, and surface as DeadlineExceeded / Cancelled.

    The watcher task and the timeout are released on every exit path.
    """
    ctx.check()

    task = asyncio.current_task()
    fired = False
    watcher: Optional[asyncio.Task] = None

    if ctx.signal is not None and task is not None:
        signal = ctx.signal

        async def _watch() -> None:
            nonlocal fired
            await signal.wait()
            fired = True
            task.cancel()

        watcher = asyncio.create_task(_watch())

    timeout_cm = asyncio.timeout(ctx.deadline.remaining())
    try:
        async with timeout_cm:
            yield ctx
    except CurlRunnerError:
        raise
    except TimeoutError as e:
        if timeout_cm.expired():
            logger.debug("deadline (%s) reached", ctx.deadline.source)
            raise DeadlineExceeded(url=ctx.url) from e
        raise
    except asyncio.CancelledError:
        if fired and task is not None and task.uncancel() == 0:
            raise Cancelled(ctx.signal.reason or "request cancelled", url=ctx.url) from None
        raise
    finally:
        if watcher is not None:
            watcher.cancel()
            # asyncio.wait does not re-raise the watcher's CancelledError but
            # still lets a cancellation of this task through
            await asyncio.wait((watcher,))
