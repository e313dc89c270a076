"""
Unit tests for request orchestration.

Tests timeout, backoff, error classification and usage counting.
"""

import asyncio
from datetime import date

import httpx
import pytest

from bubble.core.errors import (
    AuthenticationError,
    QuotaExhaustedError,
    RequestTimeoutError,
    TransientServiceError,
    ValidationError,
)
from bubble.core.orchestrator import PendingRequest, RequestOrchestrator, RequestState
from bubble.core.usage import InMemoryStore, UsageCounters


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class HTTPFailure(Exception):
    """Stands in for an SDK error carrying an HTTP status code."""

    def __init__(self, code, message="request failed"):
        super().__init__(f"{code} {message}")
        self.code = code


class ScriptedOperation:
    """Raises the scripted errors in order, then returns ``result``."""

    def __init__(self, errors=(), result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestRetryPolicy:
    """Test which failures are retried and how long we wait."""

    def setup_method(self):
        self.sleep = FakeSleep()
        self.orchestrator = RequestOrchestrator(sleep=self.sleep)

    def test_success_first_attempt(self):
        """Test a healthy operation runs once with no backoff."""
        op = ScriptedOperation(result={"answer": 42})

        result = asyncio.run(self.orchestrator.invoke(op))

        assert result == {"answer": 42}
        assert op.calls == 1
        assert self.sleep.calls == []

    def test_429_twice_then_success(self):
        """Test two rate-limit failures are absorbed with 100ms and 200ms waits."""
        op = ScriptedOperation(errors=[HTTPFailure(429), HTTPFailure(429)], result="solved")

        result = asyncio.run(self.orchestrator.invoke(op, max_retries=3, initial_delay_ms=100))

        assert result == "solved"
        assert op.calls == 3
        assert self.sleep.calls == [0.1, 0.2]

    def test_transient_failures_exhaust_retries(self):
        """Test 5xx failures are retried max_retries times with doubling delays."""
        op = ScriptedOperation(errors=[HTTPFailure(503)] * 10)

        with pytest.raises(TransientServiceError) as excinfo:
            asyncio.run(self.orchestrator.invoke(op, max_retries=3, initial_delay_ms=1000))

        assert op.calls == 4
        assert self.sleep.calls == [1.0, 2.0, 4.0]
        assert excinfo.value.status == 503
        assert "Service Overloaded (503)" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, HTTPFailure)

    def test_delays_strictly_increase(self):
        """Test every backoff delay is double the previous one."""
        op = ScriptedOperation(errors=[HTTPFailure(500)] * 5)

        with pytest.raises(TransientServiceError):
            asyncio.run(self.orchestrator.invoke(op, max_retries=4, initial_delay_ms=50))

        delays = self.sleep.calls
        assert len(delays) == 4
        for previous, current in zip(delays, delays[1:]):
            assert current == previous * 2

    def test_quota_error_surfaces_after_exhaustion(self):
        """Test exhausted 429 retries surface as a quota error."""
        op = ScriptedOperation(errors=[HTTPFailure(429)] * 3)

        with pytest.raises(QuotaExhaustedError, match="Rate Limit Exceeded"):
            asyncio.run(self.orchestrator.invoke(op, max_retries=2, initial_delay_ms=10))

        assert op.calls == 3

    def test_401_fails_immediately(self):
        """Test authentication failures are never retried."""
        op = ScriptedOperation(errors=[HTTPFailure(401)])

        with pytest.raises(AuthenticationError, match="Unauthorized"):
            asyncio.run(self.orchestrator.invoke(op))

        assert op.calls == 1
        assert self.sleep.calls == []

    def test_400_fails_immediately(self):
        """Test other client errors are not retried."""
        op = ScriptedOperation(errors=[HTTPFailure(400)])

        with pytest.raises(Exception, match="Invalid Request"):
            asyncio.run(self.orchestrator.invoke(op))

        assert op.calls == 1

    def test_network_fault_is_retried(self):
        """Test transport-level errors count as transient."""
        op = ScriptedOperation(errors=[httpx.ConnectError("connection refused")], result="back")

        result = asyncio.run(self.orchestrator.invoke(op, initial_delay_ms=5))

        assert result == "back"
        assert op.calls == 2

    def test_validation_error_not_retried(self):
        """Test malformed responses propagate unchanged."""
        error = ValidationError("Validation Failed: Empty Question Text")
        op = ScriptedOperation(errors=[error])

        with pytest.raises(ValidationError) as excinfo:
            asyncio.run(self.orchestrator.invoke(op))

        assert excinfo.value is error
        assert op.calls == 1

    def test_zero_retries(self):
        """Test max_retries=0 makes exactly one attempt."""
        op = ScriptedOperation(errors=[HTTPFailure(500)])

        with pytest.raises(TransientServiceError):
            asyncio.run(self.orchestrator.invoke(op, max_retries=0))

        assert op.calls == 1

    def test_invalid_defaults_rejected(self):
        """Test constructor validation."""
        with pytest.raises(ValueError, match="max_retries"):
            RequestOrchestrator(max_retries=-1)
        with pytest.raises(ValueError, match="timeout_ms"):
            RequestOrchestrator(timeout_ms=0)


class TestTimeout:
    """Test the per-attempt deadline."""

    def test_timeout_raises(self):
        """Test a slow operation fails with a timeout error."""
        orchestrator = RequestOrchestrator(sleep=FakeSleep())

        async def slow():
            await asyncio.sleep(1)
            return "late"

        with pytest.raises(RequestTimeoutError, match="Request Timeout"):
            asyncio.run(orchestrator.invoke(slow, timeout_ms=20))

    def test_timeout_wins_even_if_operation_would_succeed(self):
        """Test the late result is never delivered and the attempt is cancelled."""
        orchestrator = RequestOrchestrator(sleep=FakeSleep())
        finished = []

        async def slow():
            await asyncio.sleep(0.2)
            finished.append(True)
            return "late"

        async def scenario():
            with pytest.raises(RequestTimeoutError):
                await orchestrator.invoke(slow, timeout_ms=20)
            await asyncio.sleep(0.3)

        asyncio.run(scenario())
        assert finished == []

    def test_timeout_not_retried(self):
        """Test a timeout ends the invoke without backoff."""
        sleep = FakeSleep()
        orchestrator = RequestOrchestrator(sleep=sleep)
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(1)

        with pytest.raises(RequestTimeoutError):
            asyncio.run(orchestrator.invoke(slow, timeout_ms=10, max_retries=3))

        assert len(calls) == 1
        assert sleep.calls == []

    def test_operation_timeout_error_is_retried(self):
        """Test a TimeoutError from the transport is a network fault, not our deadline."""
        sleep = FakeSleep()
        orchestrator = RequestOrchestrator(sleep=sleep)
        op = ScriptedOperation(errors=[TimeoutError("The read operation timed out")], result="ok")

        result = asyncio.run(orchestrator.invoke(op, timeout_ms=60000, initial_delay_ms=100))

        assert result == "ok"
        assert op.calls == 2
        assert sleep.calls == [0.1]

    def test_cancelling_invoke_cancels_attempt(self):
        orchestrator = RequestOrchestrator(sleep=FakeSleep())
        cancelled = []

        async def slow():
            try:
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        async def scenario():
            task = asyncio.ensure_future(orchestrator.invoke(slow, timeout_ms=5000))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await asyncio.sleep(0.01)

        asyncio.run(scenario())
        assert cancelled == [True]


class TestStateMachine:
    """Test lifecycle transitions reported to observers."""

    def test_retry_then_success_transitions(self):
        """Test PENDING -> RETRYING -> PENDING -> SUCCESS."""
        seen = []
        orchestrator = RequestOrchestrator(
            sleep=FakeSleep(),
            on_state_change=lambda request: seen.append(request.state),
        )
        op = ScriptedOperation(errors=[HTTPFailure(502)])

        asyncio.run(orchestrator.invoke(op, initial_delay_ms=1))

        assert seen == [RequestState.RETRYING, RequestState.PENDING, RequestState.SUCCESS]

    def test_failure_transition_records_error(self):
        """Test FAILED state keeps the last error."""
        requests = []
        orchestrator = RequestOrchestrator(sleep=FakeSleep(), on_state_change=requests.append)

        with pytest.raises(AuthenticationError):
            asyncio.run(orchestrator.invoke(ScriptedOperation(errors=[HTTPFailure(403)])))

        final = requests[-1]
        assert final.state == RequestState.FAILED
        assert isinstance(final.last_error, AuthenticationError)

    def test_pending_request_delay(self):
        """Test fixed doubling without jitter."""
        request = PendingRequest(operation=lambda: None, attempts_remaining=3, backoff_ms=250, timeout_ms=1000)
        assert request.next_delay_ms() == 250
        request.attempt = 2
        assert request.next_delay_ms() == 1000


class TestUsageCounting:
    """Test usage counters are charged per attempt."""

    def setup_method(self):
        self.store = InMemoryStore()
        self.today = date(2026, 3, 14)
        self.usage = UsageCounters(self.store, clock=lambda: self.today).load()
        self.orchestrator = RequestOrchestrator(usage=self.usage, sleep=FakeSleep())

    def test_five_invokes_count_five(self):
        """Test mixed successes and permanent failures count once each."""
        ops = [
            ScriptedOperation(),
            ScriptedOperation(errors=[HTTPFailure(401)]),
            ScriptedOperation(),
            ScriptedOperation(errors=[HTTPFailure(400)]),
            ScriptedOperation(),
        ]

        async def run_all():
            for op in ops:
                try:
                    await self.orchestrator.invoke(op)
                except Exception:
                    pass

        asyncio.run(run_all())

        assert self.usage.lifetime_count == 5
        assert self.usage.daily_count == 5

        reloaded = UsageCounters(self.store, clock=lambda: self.today).load()
        assert reloaded.daily_count == 5
        assert reloaded.lifetime_count == 5

        tomorrow = UsageCounters(self.store, clock=lambda: date(2026, 3, 15)).load()
        assert tomorrow.daily_count == 0
        assert tomorrow.lifetime_count == 5

    def test_retries_are_counted(self):
        """Test every retried attempt is charged."""
        op = ScriptedOperation(errors=[HTTPFailure(500), HTTPFailure(500)])

        asyncio.run(self.orchestrator.invoke(op, initial_delay_ms=1))

        assert self.usage.daily_count == 3

    def test_soft_limit_warns_without_blocking(self):
        """Test reaching the limit reports a warning and still runs the call."""
        warnings = []
        self.usage.update_daily_limit(2)
        orchestrator = RequestOrchestrator(usage=self.usage, sleep=FakeSleep(), on_warning=warnings.append)

        async def run_three():
            return [await orchestrator.invoke(ScriptedOperation(result=i)) for i in range(3)]

        assert asyncio.run(run_three()) == [0, 1, 2]
        assert len(warnings) == 2
        assert all(isinstance(w, QuotaExhaustedError) for w in warnings)
