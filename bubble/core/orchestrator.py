"""
Request orchestration with timeout and exponential backoff.

Every call to the generative-content API (and every Supabase query) goes
through RequestOrchestrator.invoke, which enforces a hard deadline, retries
transient failures with doubling delays and classifies the final error.

Lifecycle of a single invoke:
    PENDING -> SUCCESS
    PENDING -> RETRYING -> PENDING   (transient failure, retries left)
    PENDING -> FAILED                (permanent failure, timeout, or retries exhausted)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from .errors import BubbleError, RequestTimeoutError, classify_error
from .usage import UsageCounters

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_TIMEOUT_MS = 60000

TIMEOUT_MESSAGE = "Request Timeout. The server took too long to respond."


class _DeadlineExceeded(Exception):
    """An attempt outlived the orchestrator's own deadline."""


class RequestState(Enum):
    PENDING = auto()
    RETRYING = auto()
    SUCCESS = auto()
    FAILED = auto()


@dataclass
class PendingRequest:
    """Retry state of one in-flight invoke. Never persisted."""
    operation: Callable[[], Awaitable[Any]]
    attempts_remaining: int
    backoff_ms: int
    timeout_ms: int
    attempt: int = 0
    state: RequestState = RequestState.PENDING
    last_error: Optional[BubbleError] = None
    delays_ms: List[int] = field(default_factory=list)

    def next_delay_ms(self) -> int:
        """Fixed doubling, no jitter: backoff * 2**attempt."""
        return self.backoff_ms * (2 ** self.attempt)


class RequestOrchestrator:
    """Runs async operations under a deadline with bounded retry.

    Args:
        usage: Counters incremented on every attempt, including retries
        sleep: Awaitable sleep, injectable for tests
        classifier: Maps raw exceptions onto the BubbleError taxonomy
        max_retries: Default retry budget per invoke
        initial_delay_ms: Default first backoff delay
        timeout_ms: Default per-attempt deadline
        on_state_change: Optional observer called after every transition
        on_warning: Optional sink for non-blocking warnings (soft limit)
    """

    def __init__(
        self,
        usage: Optional[UsageCounters] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        classifier: Callable[[BaseException], BubbleError] = classify_error,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        on_state_change: Optional[Callable[[PendingRequest], None]] = None,
        on_warning: Optional[Callable[[BubbleError], None]] = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be >= 0")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")

        self.usage = usage
        self.sleep = sleep
        self.classifier = classifier
        self.max_retries = max_retries
        self.initial_delay_ms = initial_delay_ms
        self.timeout_ms = timeout_ms
        self.on_state_change = on_state_change
        self.on_warning = on_warning

    async def invoke(
        self,
        op: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        initial_delay_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> T:
        """Run ``op`` with a timeout, retrying transient failures.

        Args:
            op: Zero-argument callable returning a fresh awaitable per attempt
            max_retries: Retry budget; total attempts are max_retries + 1
            initial_delay_ms: First backoff delay, doubled after each retry
            timeout_ms: Deadline for each attempt

        Returns:
            Whatever ``op`` resolves to

        Raises:
            RequestTimeoutError: If an attempt outlives the deadline. The
                attempt is cancelled, so the cancellation reaches the transport.
            BubbleError: The classified error of the last attempt
        """
        request = PendingRequest(
            operation=op,
            attempts_remaining=self.max_retries if max_retries is None else max_retries,
            backoff_ms=self.initial_delay_ms if initial_delay_ms is None else initial_delay_ms,
            timeout_ms=self.timeout_ms if timeout_ms is None else timeout_ms,
        )

        while True:
            self._count_attempt()
            try:
                result = await self._attempt(request)
            except _DeadlineExceeded as exc:
                error = RequestTimeoutError(TIMEOUT_MESSAGE)
                request.last_error = error
                self._transition(request, RequestState.FAILED)
                logger.error("Operation timed out after %dms", request.timeout_ms)
                raise error from exc
            except Exception as exc:
                error = self.classifier(exc)
                request.last_error = error

                if not (error.retryable and request.attempts_remaining > 0):
                    self._transition(request, RequestState.FAILED)
                    logger.error("Operation failed after %d attempt(s): %s", request.attempt + 1, error)
                    if error is exc:
                        raise
                    raise error from exc

                delay_ms = request.next_delay_ms()
                request.attempts_remaining -= 1
                request.delays_ms.append(delay_ms)
                self._transition(request, RequestState.RETRYING)
                logger.warning(
                    "Operation failed (%s). Retrying in %dms (%d left)",
                    error, delay_ms, request.attempts_remaining,
                )
                await self.sleep(delay_ms / 1000)
                request.attempt += 1
                self._transition(request, RequestState.PENDING)
                continue

            self._transition(request, RequestState.SUCCESS)
            return result

    async def _attempt(self, request: PendingRequest) -> Any:
        """One attempt as a task; only our deadline raises _DeadlineExceeded.

        A TimeoutError raised by the operation itself (a socket read timeout,
        say) propagates untouched and is classified like any
        other network fault.
        """
        task = asyncio.ensure_future(request.operation())
        try:
            done, _ = await asyncio.wait({task}, timeout=request.timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            await asyncio.wait({task})
            raise _DeadlineExceeded()
        return task.result()

    def _count_attempt(self) -> None:
        if self.usage is None:
            return
        warning = self.usage.record_attempt()
        if warning is not None and self.on_warning is not None:
            self.on_warning(warning)

    def _transition(self, request: PendingRequest, state: RequestState) -> None:
        request.state = state
        if self.on_state_change is not None:
            self.on_state_change(request)
