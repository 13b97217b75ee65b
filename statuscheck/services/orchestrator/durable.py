"""Durable execution primitives for one run.

`DurableContext` journals the outcome of every external call under a
deterministic step key. A replayed run (after a crash or restart) gets the
journaled outcome back instead of calling the collaborator again, so results
are recorded once no matter how often a step is attempted.

Failures of the journal itself are substrate errors and surface as
`InternalFailure`.
"""

import asyncio
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from statuscheck.common.logging import logger
from statuscheck.common.metrics import external_calls_total, replayed_steps_total
from statuscheck.common.retry import RetryPolicy, call_with_retry
from statuscheck.services.orchestrator.errors import InternalFailure
from statuscheck.services.orchestrator.store import RunStore


class StepOutcome(BaseModel):
    """Journaled result of one step: a value on success, an error message otherwise."""

    ok: bool
    value: Any = None
    error: str | None = None


def describe_error(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__


class DurableContext:
    """Step journal, scoped state and sub-task spawning for one run."""

    def __init__(
        self,
        run_id: str,
        store: RunStore,
        policy: RetryPolicy,
        *,
        service_name: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self.policy = policy
        self.service_name = service_name
        self.sleep = sleep

    def idempotency_key(self, step_key: str) -> str:
        """Key forwarded to collaborators so a re-sent call is recognised."""

        return f"{self.run_id}:{step_key}"

    def _journal(self, op: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except InternalFailure:
            raise
        except Exception as exc:
            raise InternalFailure(f"journal {op} failed for run {self.run_id}: {exc}") from exc

    async def invoke(
        self,
        step_key: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        dependency: str,
    ) -> StepOutcome:
        """Run `fn` with retries unless `step_key` already has a journaled outcome.

        Exhausted and non-retryable failures are journaled too: a replay
        reports the same failure instead of trying again.
        """

        cached = self._journal("read", lambda: self.store.load_step(self.run_id, step_key))
        if cached is not None:
            replayed_steps_total.labels(service=self.service_name).inc()
            return StepOutcome.model_validate(cached)

        try:
            value = await call_with_retry(
                fn,
                self.policy,
                dependency=dependency,
                service_name=self.service_name,
                sleep=self.sleep,
            )
            outcome = StepOutcome(ok=True, value=value)
        except Exception as exc:
            logger.warning("step failed step=%s dependency=%s error=%s", step_key, dependency, exc)
            outcome = StepOutcome(ok=False, error=describe_error(exc))
        external_calls_total.labels(
            service=self.service_name,
            dependency=dependency,
            outcome="ok" if outcome.ok else "error",
        ).inc()

        stored = self._journal(
            "write",
            lambda: self.store.save_step(self.run_id, step_key, outcome.model_dump(mode="json")),
        )
        return StepOutcome.model_validate(stored)

    async def run_parallel(
        self,
        calls: list[tuple[str, Callable[[], Awaitable[Any]], str]],
    ) -> list[StepOutcome]:
        """Invoke `(step_key, fn, dependency)` calls concurrently.

        Outcomes come back in call order. Every call settles before an internal
        failure from any of them is re-raised.
        """

        settled = await asyncio.gather(
            *(self.invoke(step_key, fn, dependency=dependency) for step_key, fn, dependency in calls),
            return_exceptions=True,
        )
        for item in settled:
            if isinstance(item, BaseException):
                raise item
        return list(settled)

    def get_state(self, key: str) -> Any | None:
        return self._journal("state read", lambda: self.store.load_state(self.run_id, key))

    def set_state(self, key: str, value: Any) -> None:
        self._journal("state write", lambda: self.store.save_state(self.run_id, key, value))

    def spawn(self, name: str, fn: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Start a concurrent sub-run sharing this run's journal."""

        return asyncio.create_task(fn(), name=f"{self.run_id}/{name}")
