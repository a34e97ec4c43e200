"""Order execution: admit, sign, submit, classify."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from ..errors import TransportError
from ..utils.logging import log_json
from ..utils.monitoring import order_latency_histogram, order_outcome_counter
from ..utils.net import RetryPolicy
from .classifier import (
    DEFAULT_RULES,
    FailureKind,
    OrderResult,
    Outcome,
    Rule,
    classify_cancel_response,
    classify_response,
    classify_transport_error,
)
from .order_manager import OrderIntent, OrderManager, OrderState, TrackedOrder
from .rate_limiter import RateLimiter
from .signing import l2_headers, random_salt, sign_order
from .transport import Transport, TransportRequest, TransportResponse
from .validators import validate_intent

SUBMIT_BUCKETS: Tuple[str, ...] = ("clob-post-order", "clob-post-order-sustained")
CANCEL_BUCKETS: Tuple[str, ...] = ("clob-delete-order", "clob-delete-order-sustained")

_FINAL_STATE = {
    Outcome.ACCEPTED: OrderState.ACCEPTED,
    Outcome.REJECTED: OrderState.REJECTED,
    Outcome.TRANSPORT_FAILED: OrderState.TRANSPORT_FAILED,
}


class OrderExecutionPipeline:
    """Turn an :class:`OrderIntent` into exactly one classified result.

    Every request is admitted through the rate limiter first; submit waits
    for both the burst and the sustained post-order bucket, cancel for the
    delete-order pair.  Retries are bounded by ``retry`` and only happen when
    the exchange cannot have seen the order (connection never established)
    or answered HTTP 429.  A signed order is reused across retries so the
    exchange sees a single order hash.

    Parameters
    ----------
    limiter:
        Shared :class:`RateLimiter`.
    base_url:
        Exchange REST root.
    chain_id:
        Chain id bound into signed orders.
    retry:
        Attempt budget per call; the default never retries.
    credentials:
        Optional object with ``api_key``, ``secret`` and ``passphrase``.
        When given, requests carry HMAC headers and ``owner`` is the API key.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        base_url: str = "https://clob.polymarket.com",
        chain_id: int = 137,
        retry: RetryPolicy | None = None,
        credentials: Any = None,
        order_manager: OrderManager | None = None,
        rules: Sequence[Rule] = DEFAULT_RULES,
        salt_factory: Callable[[], int] = random_salt,
        logger: logging.Logger | None = None,
    ) -> None:
        self.limiter = limiter
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.retry = retry or RetryPolicy()
        self.credentials = credentials
        self.orders = order_manager or OrderManager()
        self.rules = tuple(rules)
        self._salt_factory = salt_factory
        self._log = logger or logging.getLogger("polyexec.pipeline")

    async def _admit(self, buckets: Sequence[str]) -> None:
        for name in buckets:
            await self.limiter.admit(name)

    def _headers(self, address: str, method: str, path: str, body: Any) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.credentials is not None:
            headers.update(l2_headers(self.credentials, address, method, path, body))
        return headers

    async def submit(
        self,
        intent: OrderIntent,
        signer: Any,
        transport: Transport,
        funder: str,
    ) -> OrderResult:
        """Place ``intent`` for the Safe ``funder`` signed by ``signer``.

        Raises ``ValueError`` for structurally invalid intents before any
        request is admitted.  Every other failure is returned as a classified
        :class:`OrderResult`; callers wanting exceptions use
        :meth:`OrderResult.raise_for_outcome`.
        """

        validate_intent(intent)
        tracked = self.orders.create(intent)
        try:
            return await self._submit(tracked, intent, signer, transport, funder)
        finally:
            if not tracked.terminal:
                self.orders.discard(tracked.client_id)

    async def _submit(
        self,
        tracked: TrackedOrder,
        intent: OrderIntent,
        signer: Any,
        transport: Transport,
        funder: str,
    ) -> OrderResult:
        signed: Optional[Dict[str, Any]] = None
        path = "/order"

        attempt = 0
        while True:
            attempt += 1
            await self._admit(SUBMIT_BUCKETS)
            self.orders.advance(tracked.client_id, OrderState.ADMITTED)
            if signed is None:
                signed = sign_order(intent, signer, funder, self.chain_id, self._salt_factory)
                self.orders.advance(tracked.client_id, OrderState.SIGNED)

            body = {
                "order": signed,
                "owner": self.credentials.api_key if self.credentials is not None else signer.address,
                "orderType": intent.order_type,
            }
            request = TransportRequest("POST", self.base_url + path, self._headers(signer.address, "POST", path, body), body)
            result, retryable = await self._send(
                tracked, request, transport, lambda resp: classify_response(resp, funder, signer.address, self.rules)
            )
            if retryable and attempt < self.retry.max_attempts:
                await self._before_retry(tracked, result, attempt)
                continue
            return self._finish(tracked, result, "submit", token_id=intent.token_id, side=intent.side.value)

    async def cancel(self, order_id: str, signer: Any, transport: Transport) -> OrderResult:
        """Cancel ``order_id``; accepted only if the exchange lists it as canceled."""
        if not order_id or not str(order_id).strip():
            raise ValueError("order id is required")
        tracked = self.orders.create(kind="cancel", target_order_id=order_id)
        try:
            return await self._cancel(tracked, order_id, signer, transport)
        finally:
            if not tracked.terminal:
                self.orders.discard(tracked.client_id)

    async def _cancel(self, tracked: TrackedOrder, order_id: str, signer: Any, transport: Transport) -> OrderResult:
        path = "/order"
        body = {"orderID": order_id}

        attempt = 0
        while True:
            attempt += 1
            await self._admit(CANCEL_BUCKETS)
            self.orders.advance(tracked.client_id, OrderState.ADMITTED)
            request = TransportRequest("DELETE", self.base_url + path, self._headers(signer.address, "DELETE", path, body), body)
            result, retryable = await self._send(
                tracked, request, transport, lambda resp: classify_cancel_response(resp, order_id, self.rules)
            )
            if retryable and attempt < self.retry.max_attempts:
                await self._before_retry(tracked, result, attempt)
                continue
            return self._finish(tracked, result, "cancel")

    async def _send(
        self,
        tracked: TrackedOrder,
        request: TransportRequest,
        transport: Transport,
        classify: Callable[[TransportResponse], OrderResult],
    ) -> Tuple[OrderResult, bool]:
        self.orders.advance(tracked.client_id, OrderState.SUBMITTED)
        start = time.perf_counter()
        try:
            response = await transport.send(request)
        except TransportError as exc:
            return classify_transport_error(exc), not exc.request_sent
        finally:
            order_latency_histogram.observe(time.perf_counter() - start)
        result = classify(response)
        retryable = result.reason is FailureKind.THROTTLED and response.status == 429
        return result, retryable

    async def _before_retry(self, tracked: TrackedOrder, result: OrderResult, attempt: int) -> None:
        delay = self.retry.delay(attempt)
        log_json(
            self._log,
            "order_retry",
            level=logging.WARNING,
            client_order_id=tracked.client_id,
            kind=tracked.kind,
            attempt=attempt,
            reason=result.reason,
            delay_s=delay,
        )
        await asyncio.sleep(delay)

    def _finish(self, tracked: TrackedOrder, result: OrderResult, operation: str, **fields: Any) -> OrderResult:
        self.orders.advance(tracked.client_id, _FINAL_STATE[result.outcome], order_id=result.order_id)
        reason = result.reason.value if result.reason is not None else "none"
        order_outcome_counter.labels(operation=operation, outcome=result.outcome.value, reason=reason).inc()
        log_json(
            self._log,
            f"order_{operation}_result",
            level=logging.INFO if result.accepted else logging.WARNING,
            client_order_id=tracked.client_id,
            order_id=result.order_id,
            outcome=result.outcome,
            reason=result.reason,
            http_status=result.http_status,
            attempts=tracked.attempts,
            message=result.message or None,
            **fields,
        )
        return replace(result, client_order_id=tracked.client_id)


__all__ = ["CANCEL_BUCKETS", "SUBMIT_BUCKETS", "OrderExecutionPipeline"]
