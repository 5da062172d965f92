"""
leafpledge.services.fulfillment — Fulfillment API Client
=========================================================

Synchronous httpx client for the tree-planting fulfillment API.

Transport discipline:

* fixed request timeout (30 s by default)
* up to ``max_attempts`` attempts (3 by default), sleeping
  ``backoff_base ** attempt`` seconds between them (2 s, 4 s, 8 s …)
* 4xx responses raise :class:`~leafpledge.errors.PermanentFulfillmentError`
  straight away; 5xx responses and network failures are retried and end
  in :class:`~leafpledge.errors.TransientFulfillmentError`

Every request carries ``X-Request-Id`` (stable across the retries of one
call), ``X-Source`` and ``X-Tenant-Id``, plus a bearer token when the
tenant has a linked account.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from leafpledge.config import LeafpledgeConfig
from leafpledge.engine.allocator import AllocationEntry
from leafpledge.errors import PermanentFulfillmentError, TransientFulfillmentError

logger = logging.getLogger(__name__)

__all__ = ["FulfillmentClient", "OrderReceipt", "PledgeReceipt", "client_for_tenant"]


@dataclass(frozen=True, slots=True)
class PledgeReceipt:
    pledge_id: str
    status: str | None = None


@dataclass(frozen=True, slots=True)
class OrderReceipt:
    order_id: str
    status: str | None = None
    external_ref: str | None = None


class FulfillmentClient:
    """One tenant's view of the fulfillment API."""

    def __init__(
        self,
        base_url: str,
        *,
        tenant_id: str,
        source: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.tenant_id = tenant_id
        self.source = source
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep

        headers = {
            "Accept": "application/json",
            "X-Source": source,
            "X-Tenant-Id": tenant_id,
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> FulfillmentClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        request_id = f"{self.source}-{uuid.uuid4().hex[:12]}"
        last_error: TransientFulfillmentError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._http.request(
                    method, path, json=body, headers={"X-Request-Id": request_id}
                )
            except httpx.TransportError as exc:
                last_error = TransientFulfillmentError(
                    f"{method} {path} failed: {exc}",
                    request_id=request_id,
                    attempts=attempt,
                )
            else:
                if response.is_success:
                    return self._decode(method, path, response, request_id, attempt)
                message = f"{method} {path} → HTTP {response.status_code}: {response.text[:200]}"
                if response.is_client_error:
                    raise PermanentFulfillmentError(
                        message,
                        status_code=response.status_code,
                        request_id=request_id,
                        attempts=attempt,
                    )
                last_error = TransientFulfillmentError(
                    message,
                    status_code=response.status_code,
                    request_id=request_id,
                    attempts=attempt,
                )

            logger.warning(
                "Fulfillment attempt %d/%d failed: %s", attempt, self.max_attempts, last_error
            )
            if attempt < self.max_attempts:
                self._sleep(self.backoff_base ** attempt)

        raise last_error

    @staticmethod
    def _decode(
        method: str,
        path: str,
        response: httpx.Response,
        request_id: str,
        attempt: int,
    ) -> dict[str, Any]:
        """JSON object body of a 2xx response; ``{}`` when the body is empty.

        An unreadable body raises a permanent error and is never retried.
        """
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise PermanentFulfillmentError(
                f"{method} {path} → HTTP {response.status_code} with unreadable body: "
                f"{response.text[:200]}",
                status_code=response.status_code,
                request_id=request_id,
                attempts=attempt,
            )
        return data

    # ------------------------------------------------------------------
    # Pledges & orders
    # ------------------------------------------------------------------
    def create_pledge(
        self,
        *,
        period: str,
        total_trees: int,
        total_leaves: int,
        allocations: Iterable[AllocationEntry],
        evidence: dict[str, Any],
    ) -> PledgeReceipt:
        data = self._request("POST", "/v1/pledges", {
            "source": self.source,
            "tenantId": self.tenant_id,
            "period": period,
            "totalTrees": total_trees,
            "totalLeaves": total_leaves,
            "allocations": [{"projectId": a.project_id, "trees": a.trees} for a in allocations],
            "evidence": evidence,
            "metadata": {"createdAt": datetime.now(UTC).isoformat()},
        })
        return PledgeReceipt(pledge_id=str(data.get("id")), status=data.get("status"))

    def create_instant_order(
        self,
        *,
        project_id: str,
        trees: int,
        issue_id: str,
        issue_key: str | None,
        award_id: str,
    ) -> OrderReceipt:
        data = self._request("POST", "/v1/orders/plant", {
            "source": self.source,
            "tenantId": self.tenant_id,
            "projectId": project_id,
            "trees": trees,
            "reference": {"issueKey": issue_key, "issueId": issue_id, "awardId": award_id},
            "metadata": {"createdAt": datetime.now(UTC).isoformat()},
        })
        return OrderReceipt(
            order_id=str(data.get("id")),
            status=data.get("status"),
            external_ref=data.get("externalRef") or data.get("treeId"),
        )

    def get_pledge_status(self, pledge_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/pledges/{pledge_id}")

    def get_order_status(self, order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/orders/{order_id}")


def client_for_tenant(
    config: LeafpledgeConfig,
    tenant_id: str,
    account: dict[str, Any] | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FulfillmentClient:
    """Build a client from infrastructure config and the tenant's linked account."""
    return FulfillmentClient(
        config.fulfillment_base_url,
        tenant_id=tenant_id,
        source=config.source_name,
        api_key=(account or {}).get("apiKey"),
        timeout=config.request_timeout_seconds,
        max_attempts=config.max_attempts,
        backoff_base=config.backoff_base_seconds,
        transport=transport,
        sleep=sleep,
    )
