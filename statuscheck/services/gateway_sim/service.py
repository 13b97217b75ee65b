"""In-memory simulation of the lookup index, notifier and status checker.

Outcomes are deterministic for ids carrying a fault prefix:

- `unknown-`            lookup answers 404
- `force-lookup-fail`   lookup answers 503 on every attempt
- `force-notify-fail`   notify answers 503 for any chunk containing the id
- `force-status-fail`   status check answers 503 on every attempt
- `force-status-reject` status check answers 422 (not retryable)
- `force-flaky`         status check answers 503 on the first attempt only

Everything else succeeds, except for an optional random failure rate.
Responses are recorded per `Idempotency-Key` and replayed for duplicates.
"""

import hashlib
import random

from statuscheck.common.logging import logger
from statuscheck.common.metrics import sim_requests_total

STATUSES = ["SETTLED", "PENDING", "REFUNDED", "DECLINED"]


class SimulatedError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class GatewaySimulator:
    """Answers the three collaborator contracts from hashed payment ids."""

    def __init__(
        self,
        gateways: list[str],
        failure_rate: float = 0.0,
        service_name: str = "gateway-sim",
        rng: random.Random | None = None,
    ) -> None:
        if not gateways:
            raise ValueError("at least one simulated gateway is required")
        self.gateways = gateways
        self.failure_rate = failure_rate
        self.service_name = service_name
        self.rng = rng or random.Random()
        self.responses: dict[str, dict] = {}
        self.notifications: list[dict] = []
        self.status_attempts: dict[str, int] = {}

    def _digest(self, payment_id: str) -> int:
        return int(hashlib.sha256(payment_id.encode()).hexdigest(), 16)

    def _count(self, endpoint: str, outcome: str) -> None:
        sim_requests_total.labels(service=self.service_name, endpoint=endpoint, outcome=outcome).inc()

    def _maybe_fail_randomly(self, endpoint: str) -> None:
        if self.failure_rate > 0 and self.rng.random() < self.failure_rate:
            self._count(endpoint, "random_failure")
            raise SimulatedError(503, f"{endpoint} temporarily unavailable")

    def _replayed(self, endpoint: str, idempotency_key: str | None) -> dict | None:
        if idempotency_key is None or idempotency_key not in self.responses:
            return None
        logger.info("duplicate request replayed endpoint=%s key=%s", endpoint, idempotency_key)
        self._count(endpoint, "replayed")
        return self.responses[idempotency_key]

    def _remember(self, idempotency_key: str | None, response: dict) -> dict:
        if idempotency_key is not None:
            self.responses[idempotency_key] = response
        return response

    def gateway_for(self, payment_id: str, idempotency_key: str | None = None) -> dict:
        replayed = self._replayed("lookup", idempotency_key)
        if replayed is not None:
            return replayed
        if payment_id.startswith("unknown-"):
            self._count("lookup", "not_found")
            raise SimulatedError(404, f"payment {payment_id} is not indexed")
        if payment_id.startswith("force-lookup-fail"):
            self._count("lookup", "forced_failure")
            raise SimulatedError(503, "lookup index unavailable")
        self._maybe_fail_randomly("lookup")
        gateway = self.gateways[self._digest(payment_id) % len(self.gateways)]
        self._count("lookup", "ok")
        return self._remember(idempotency_key, {"paymentId": payment_id, "gatewayName": gateway})

    def notify(self, gateway: str, payment_ids: list[str], idempotency_key: str | None = None) -> dict:
        replayed = self._replayed("notify", idempotency_key)
        if replayed is not None:
            return replayed
        if any(payment_id.startswith("force-notify-fail") for payment_id in payment_ids):
            self._count("notify", "forced_failure")
            raise SimulatedError(503, f"notifier rejected chunk for {gateway}")
        self._maybe_fail_randomly("notify")
        self.notifications.append({"gatewayName": gateway, "paymentIds": list(payment_ids)})
        self._count("notify", "ok")
        return self._remember(idempotency_key, {"accepted": len(payment_ids)})

    def check_status(self, gateway: str, payment_id: str, idempotency_key: str | None = None) -> dict:
        replayed = self._replayed("status_check", idempotency_key)
        if replayed is not None:
            return replayed
        attempt = self.status_attempts.get(payment_id, 0) + 1
        self.status_attempts[payment_id] = attempt
        if payment_id.startswith("force-status-reject"):
            self._count("status_check", "rejected")
            raise SimulatedError(422, f"{gateway} rejected status check for {payment_id}")
        if payment_id.startswith("force-status-fail"):
            self._count("status_check", "forced_failure")
            raise SimulatedError(503, f"{gateway} status endpoint unavailable")
        if payment_id.startswith("force-flaky") and attempt == 1:
            self._count("status_check", "forced_failure")
            raise SimulatedError(503, f"{gateway} status endpoint flaked")
        self._maybe_fail_randomly("status_check")
        status = STATUSES[self._digest(payment_id) % len(STATUSES)]
        self._count("status_check", "ok")
        return self._remember(
            idempotency_key,
            {"paymentId": payment_id, "gatewayName": gateway, "status": status},
        )
