"""Downstream collaborator contracts and their HTTP adapters.

The orchestration core only depends on the abstract clients. Transport
details (paths, headers, status mapping) live in the `Http*` adapters.
5xx responses, 429 and transport errors are retryable; other 4xx are not.
"""

from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx

from statuscheck.common.config import CommonSettings
from statuscheck.services.orchestrator.errors import (
    CollaboratorError,
    LookupFailure,
    NotifyFailure,
    StatusCheckFailure,
)


class GatewayLookupClient(ABC):
    @abstractmethod
    async def lookup(self, payment_id: str, idempotency_key: str) -> str:
        """Return the name of the gateway that owns `payment_id`."""


class NotifierClient(ABC):
    @abstractmethod
    async def notify(self, gateway: str, payment_ids: list[str], idempotency_key: str) -> None:
        """Tell the notifier a chunk of payments is about to be checked."""


class StatusCheckClient(ABC):
    @abstractmethod
    async def check(self, gateway: str, payment_id: str, idempotency_key: str) -> str | None:
        """Query definitive status for one payment; returns the reported status."""


class HttpCollaborator:
    """Shared httpx plumbing: one pooled client per adapter."""

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _send(
        self,
        error_cls: type[CollaboratorError],
        method: str,
        path: str,
        **kwargs,
    ) -> httpx.Response:
        try:
            resp = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise error_cls(f"{error_cls.dependency} transport error: {exc!r}") from exc
        if resp.status_code >= 400:
            retryable = resp.status_code >= 500 or resp.status_code == 429
            raise error_cls(
                f"{error_cls.dependency} returned {resp.status_code}: {resp.text[:200]}",
                retryable=retryable,
                status_code=resp.status_code,
            )
        return resp

    async def close(self) -> None:
        await self.client.aclose()


class HttpLookupClient(HttpCollaborator, GatewayLookupClient):
    async def lookup(self, payment_id: str, idempotency_key: str) -> str:
        try:
            resp = await self._send(
                LookupFailure,
                "GET",
                f"/payments/{quote(payment_id, safe='')}/gateway",
                headers={"Idempotency-Key": idempotency_key},
            )
        except LookupFailure as exc:
            if exc.status_code == 404:
                raise LookupFailure(f"payment {payment_id} not found in lookup index", retryable=False) from exc
            raise
        gateway = resp.json().get("gatewayName")
        if not isinstance(gateway, str) or not gateway:
            raise LookupFailure("lookup response malformed (missing gatewayName)", retryable=False)
        return gateway


class HttpNotifierClient(HttpCollaborator, NotifierClient):
    async def notify(self, gateway: str, payment_ids: list[str], idempotency_key: str) -> None:
        await self._send(
            NotifyFailure,
            "POST",
            "/notifications",
            json={"gatewayName": gateway, "paymentIds": list(payment_ids)},
            headers={"Idempotency-Key": idempotency_key},
        )


class HttpStatusCheckClient(HttpCollaborator, StatusCheckClient):
    async def check(self, gateway: str, payment_id: str, idempotency_key: str) -> str | None:
        resp = await self._send(
            StatusCheckFailure,
            "POST",
            f"/payments/{quote(payment_id, safe='')}/status-check",
            headers={"X-Gateway": gateway, "Idempotency-Key": idempotency_key},
        )
        if not resp.content:
            return None
        status = resp.json().get("status")
        return status if isinstance(status, str) else None


class Collaborators:
    """The three downstream clients a run needs."""

    def __init__(
        self,
        lookup: GatewayLookupClient,
        notifier: NotifierClient,
        status_checker: StatusCheckClient,
    ) -> None:
        self.lookup = lookup
        self.notifier = notifier
        self.status_checker = status_checker

    async def close(self) -> None:
        for client in (self.lookup, self.notifier, self.status_checker):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_http_collaborators(settings: CommonSettings) -> Collaborators:
    timeout = settings.per_call_timeout_seconds
    return Collaborators(
        lookup=HttpLookupClient(settings.lookup_url, timeout=timeout),
        notifier=HttpNotifierClient(settings.notifier_url, timeout=timeout),
        status_checker=HttpStatusCheckClient(settings.status_check_url, timeout=timeout),
    )
