"""Relay for Safe multisig transactions (Safe Transaction Service API)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from ..errors import AuthorizationRejected, TransportError
from ..execution.transport import Transport, TransportRequest


@dataclass(frozen=True)
class RelayStatus:
    """Snapshot of a relayed transaction."""

    executed: bool
    successful: Optional[bool] = None
    confirmations: int = 0
    tx_hash: Optional[str] = None


class TransactionRelay(Protocol):
    async def submit(self, payload: Dict[str, Any]) -> str: ...

    async def get_status(self, relay_tx_id: str) -> RelayStatus: ...


class SafeTransactionServiceRelay:
    """:class:`TransactionRelay` talking to a Safe Transaction Service.

    ``payload`` must carry the Safe address under ``"safe"`` and the
    ``contractTransactionHash``; the rest is posted as-is.
    """

    def __init__(self, base_url: str, transport: Transport) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport

    async def submit(self, payload: Dict[str, Any]) -> str:
        body = {k: v for k, v in payload.items() if k != "safe"}
        url = f"{self.base_url}/api/v1/safes/{payload['safe']}/multisig-transactions/"
        resp = await self.transport.send(
            TransportRequest("POST", url, {"Content-Type": "application/json"}, body)
        )
        if not resp.ok:
            raise AuthorizationRejected(
                f"Safe Transaction Service refused the transaction ({resp.status}): {resp.body}"
            )
        if isinstance(resp.body, dict):
            relay_id = resp.body.get("safeTxHash") or resp.body.get("txHash")
            if relay_id:
                return str(relay_id)
        return str(payload["contractTransactionHash"])

    async def get_status(self, relay_tx_id: str) -> RelayStatus:
        url = f"{self.base_url}/api/v1/multisig-transactions/{relay_tx_id}/"
        resp = await self.transport.send(TransportRequest("GET", url))
        if resp.status == 404:
            # not indexed yet right after submission
            return RelayStatus(executed=False)
        if not resp.ok or not isinstance(resp.body, dict):
            raise TransportError(
                f"Safe Transaction Service status error ({resp.status}): {resp.body}", reason="http"
            )
        data = resp.body
        return RelayStatus(
            executed=bool(data.get("isExecuted")),
            successful=data.get("isSuccessful"),
            confirmations=len(data.get("confirmations") or []),
            tx_hash=data.get("transactionHash") or data.get("txHash"),
        )


__all__ = ["RelayStatus", "TransactionRelay", "SafeTransactionServiceRelay"]
