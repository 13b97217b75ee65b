"""In-process collaborators that record every call."""

import asyncio

from statuscheck.services.orchestrator.clients import (
    Collaborators,
    GatewayLookupClient,
    NotifierClient,
    StatusCheckClient,
)
from statuscheck.services.orchestrator.domain import RunConfig
from statuscheck.services.orchestrator.errors import LookupFailure, NotifyFailure, StatusCheckFailure


def fast_config(**overrides) -> RunConfig:
    values = {
        "lookup_batch_size": 3,
        "chunk_size": 2,
        "max_attempts": 3,
        "initial_backoff": 0.0,
        "backoff_multiplier": 1.0,
        "max_backoff": 0.0,
        "per_call_timeout": 5.0,
    }
    values.update(overrides)
    return RunConfig(**values)


async def no_sleep(_: float) -> None:
    return None


async def settle(predicate, rounds: int = 2000) -> None:
    """Yield to the loop until `predicate()` holds."""

    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class FakeLookup(GatewayLookupClient):
    """Resolves ids from a fixed map; ids missing from it are not found."""

    def __init__(self, gateways: dict[str, str], delay: float = 0.0, flaky: dict[str, int] | None = None) -> None:
        self.gateways = gateways
        self.delay = delay
        self.flaky = dict(flaky or {})
        self.always_failing: set[str] = set()
        self.blocked: set[str] = set()
        self.release = asyncio.Event()
        self.calls: list[str] = []
        self.keys: list[str] = []
        self.events: list[tuple[str, str]] = []

    async def lookup(self, payment_id: str, idempotency_key: str) -> str:
        self.calls.append(payment_id)
        self.keys.append(idempotency_key)
        self.events.append(("start", payment_id))
        try:
            await asyncio.sleep(self.delay)
            if payment_id in self.blocked:
                await self.release.wait()
            if payment_id in self.always_failing:
                raise LookupFailure("lookup index unavailable")
            if self.flaky.get(payment_id, 0) > 0:
                self.flaky[payment_id] -= 1
                raise LookupFailure("lookup index flaked")
            if payment_id not in self.gateways:
                raise LookupFailure(f"payment {payment_id} not found in lookup index", retryable=False)
            return self.gateways[payment_id]
        finally:
            self.events.append(("end", payment_id))


class FakeNotifier(NotifierClient):
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.failing_ids: set[str] = set()
        self.block_keys: set[str] = set()
        self.reached = asyncio.Event()
        self.calls: list[tuple[str, list[str], str]] = []
        self.in_flight: dict[str, int] = {}
        self.max_in_flight_per_gateway = 0
        self.max_in_flight_total = 0

    async def notify(self, gateway: str, payment_ids: list[str], idempotency_key: str) -> None:
        self.calls.append((gateway, list(payment_ids), idempotency_key))
        self.in_flight[gateway] = self.in_flight.get(gateway, 0) + 1
        self.max_in_flight_per_gateway = max(self.max_in_flight_per_gateway, self.in_flight[gateway])
        self.max_in_flight_total = max(self.max_in_flight_total, sum(self.in_flight.values()))
        try:
            if any(idempotency_key.endswith(suffix) for suffix in self.block_keys):
                self.reached.set()
                await asyncio.Event().wait()
            await asyncio.sleep(self.delay)
            if self.failing_ids.intersection(payment_ids):
                raise NotifyFailure("notifier returned 503")
        finally:
            self.in_flight[gateway] -= 1


class FakeStatusChecker(StatusCheckClient):
    def __init__(self) -> None:
        self.failing_ids: set[str] = set()
        self.rejected_ids: set[str] = set()
        self.flaky: dict[str, int] = {}
        self.calls: list[tuple[str, str, str]] = []

    async def check(self, gateway: str, payment_id: str, idempotency_key: str) -> str | None:
        self.calls.append((gateway, payment_id, idempotency_key))
        await asyncio.sleep(0)
        if payment_id in self.rejected_ids:
            raise StatusCheckFailure("status check returned 422", retryable=False)
        if payment_id in self.failing_ids:
            raise StatusCheckFailure("status check returned 503")
        if self.flaky.get(payment_id, 0) > 0:
            self.flaky[payment_id] -= 1
            raise StatusCheckFailure("status check returned 503")
        return "SETTLED"

    def checked_ids(self) -> list[str]:
        return [payment_id for _, payment_id, _ in self.calls]


def fake_collaborators(gateways: dict[str, str]) -> tuple[Collaborators, FakeLookup, FakeNotifier, FakeStatusChecker]:
    lookup = FakeLookup(gateways)
    notifier = FakeNotifier()
    checker = FakeStatusChecker()
    return Collaborators(lookup, notifier, checker), lookup, notifier, checker
