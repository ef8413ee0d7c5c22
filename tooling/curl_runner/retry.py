import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, wait_exponential

from .config import RetryPolicy
from .deadline import ExecutionContext
from .errors import RequestConnectionError, RetriesExhausted


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay: float
    reason: str


async def _close_response(response: Any) -> None:
    if isinstance(response, httpx.Response):
        await response.aclose()


class RetryController:
    """
    Drives one call's attempts on top of tenacity.AsyncRetrying.

    Attempting -> Success   : any response outside the retryable status set
    Attempting -> Retrying  : transport error / retryable status, budget left
    Attempting -> Failed    : budget exhausted, deadline gone, cancelled

    - no attempt starts once the deadline has passed
    - backoff is min(max_delay, base_delay * 2**(n-1)) and the sleep is
      interrupted by the cancellation signal
    - non-replayable bodies get exactly one attempt
    - when the budget runs out the last response is returned as-is; a last
      transport error is raised as RetriesExhausted
    """

    def __init__(
        self,
        policy: RetryPolicy,
        context: ExecutionContext,
        *,
        replayable: bool = True,
        label: str = "",
    ):
        if not replayable and policy.max_attempts > 1:
            logger.debug("retries disabled for %s: request body is not replayable", label or "request")
            policy = dataclasses.replace(policy, max_attempts=1)
        self.policy = policy
        self.context = context
        self.label = label
        self._wait = wait_exponential(multiplier=policy.base_delay, max=policy.max_delay, exp_base=2)

    # --- classification ---

    def classify(self, retry_state: RetryCallState) -> Optional[str]:
        """Reason string when the outcome is retryable, None otherwise."""
        outcome = retry_state.outcome
        if outcome is None:
            return None
        if outcome.failed:
            exc = outcome.exception()
            if isinstance(exc, RequestConnectionError):
                return f"transport error ({exc.message})"
            return None
        status = getattr(outcome.result(), "status_code", None)
        if status in self.policy.retryable_statuses:
            return f"HTTP {status}"
        return None

    def decide(self, retry_state: RetryCallState) -> RetryDecision:
        """
        Fresh decision for the attempt that just finished. Nothing is cached
        between attempts.
        """
        reason = self.classify(retry_state)
        if reason is None:
            return RetryDecision(False, 0.0, "not retryable")
        if retry_state.attempt_number >= self.policy.max_attempts:
            return RetryDecision(False, 0.0, f"{reason}; {retry_state.attempt_number} attempts used")

        delay = float(self._wait(retry_state))
        remaining = self.context.deadline.remaining()
        if remaining is not None and remaining <= delay:
            return RetryDecision(False, delay, f"{reason}; deadline leaves no room for backoff")
        return RetryDecision(True, delay, reason)

    # --- tenacity hooks ---

    def _retry(self, retry_state: RetryCallState) -> bool:
        return self.classify(retry_state) is not None

    def _stop(self, retry_state: RetryCallState) -> bool:
        return retry_state.attempt_number >= self.policy.max_attempts

    async def _before_sleep(self, retry_state: RetryCallState) -> None:
        decision = self.decide(retry_state)
        logger.info(
            "retrying %s after %s (attempt %s/%s, delay %.2fs)",
            self.label,
            decision.reason if decision.should_retry else self.classify(retry_state),
            retry_state.attempt_number,
            self.policy.max_attempts,
            retry_state.upcoming_sleep,
        )
        outcome = retry_state.outcome
        if outcome is not None and not outcome.failed:
            await _close_response(outcome.result())

    def _retry_error_callback(self, retry_state: RetryCallState) -> Any:
        outcome = retry_state.outcome
        attempts = retry_state.attempt_number
        if outcome.failed:
            exc = outcome.exception()
            if attempts > 1:
                logger.warning("giving up on %s after %s attempts: %s", self.label, attempts, exc)
                raise RetriesExhausted(attempts, exc, url=self.context.url) from exc
            raise exc
        response = outcome.result()
        if attempts > 1:
            logger.warning(
                "retry budget exhausted for %s after %s attempts; returning final response (status=%s)",
                self.label,
                attempts,
                getattr(response, "status_code", "?"),
            )
        return response

    # --- driver ---

    async def run(self, attempt: Callable[[], Awaitable[Any]]) -> Any:
        ctx = self.context

        async def _attempt() -> Any:
            ctx.check()
            ctx.attempt += 1
            return await attempt()

        retrying = AsyncRetrying(
            sleep=ctx.sleep,
            stop=self._stop,
            wait=self._wait,
            retry=self._retry,
            before_sleep=self._before_sleep,
            retry_error_callback=self._retry_error_callback,
            reraise=True,
        )
        return await retrying(_attempt)
