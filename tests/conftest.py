from __future__ import annotations

from collections import deque
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import decode
from eth_utils import to_checksum_address

from polyexec.errors import TransportError
from polyexec.execution.rate_limiter import RateLimiter
from polyexec.execution.transport import TransportRequest, TransportResponse
from polyexec.wallet.deriver import WalletDeriver
from polyexec.wallet.relay import RelayStatus

MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
USER = "0xabc0000000000000000000000000000000000abc"
TOKEN_ID = "71321045679252212594626385532706912750332728571942532289631379312455583992563"
EXEC_TYPES = ["address", "uint256", "bytes", "uint8", "uint256", "uint256", "uint256", "address", "address", "bytes"]


class FakeTransport:
    """Replays queued responses (or raises queued exceptions) and records requests."""

    def __init__(self, *replies: Any) -> None:
        self.replies = deque(replies)
        self.requests: List[TransportRequest] = []

    async def send(self, request: TransportRequest) -> TransportResponse:
        self.requests.append(request)
        reply = self.replies.popleft() if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeChain:
    """In-memory Safes; executed owner additions update ``owners`` unless ``revert`` is set."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.revert = False
        self.mined = True
        self.code: Dict[str, bytes] = {}
        self.owners: Dict[str, List[str]] = {}
        self.thresholds: Dict[str, int] = {}
        self.nonces: Dict[str, int] = {}

    def deploy(self, wallet: str, owners: List[str], threshold: int = 1, nonce: int = 0) -> None:
        key = wallet.lower()
        self.code[key] = b"\x60\x80"
        self.owners[key] = list(owners)
        self.thresholds[key] = threshold
        self.nonces[key] = nonce

    async def get_code(self, address: str) -> bytes:
        return self.code.get(address.lower(), b"")

    async def get_owners(self, wallet_address: str) -> List[str]:
        return list(self.owners.get(wallet_address.lower(), []))

    async def get_threshold(self, wallet_address: str) -> int:
        return self.thresholds.get(wallet_address.lower(), 1)

    async def get_nonce(self, wallet_address: str) -> int:
        return self.nonces.get(wallet_address.lower(), 0)

    async def send_transaction(self, sender: Any, to: str, data: str) -> str:
        self.sent.append({"sender": sender.address, "to": to, "data": data})
        if not self.revert:
            inner = decode(EXEC_TYPES, bytes.fromhex(data[10:]))[2]
            self.owners[to.lower()].append(to_checksum_address(inner[16:36]))
        return "0x" + format(len(self.sent), "064x")

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool:
        if not self.mined:
            raise TransportError("no receipt", reason="timeout")
        return not self.revert


class FakeRelay:
    """Relay whose polling answers come from ``statuses`` in order; the last one repeats."""

    def __init__(self, *statuses: Any, chain: Optional[FakeChain] = None) -> None:
        self.statuses = deque(statuses or [RelayStatus(executed=True, successful=True, tx_hash="0xdone")])
        self.submitted: List[Dict[str, Any]] = []
        self.polls = 0
        self.chain = chain

    async def submit(self, payload: Dict[str, Any]) -> str:
        self.submitted.append(payload)
        return payload["contractTransactionHash"]

    async def get_status(self, relay_tx_id: str) -> RelayStatus:
        self.polls += 1
        status = self.statuses.popleft() if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, BaseException):
            raise status
        if status.executed and status.successful is not False and self.chain is not None:
            payload = self.submitted[-1]
            new_owner = "0x" + payload["data"][-104:-64]
            self.chain.owners[payload["safe"].lower()].append(new_owner)
        return status


class MemoryUserStore:
    def __init__(self, wallets: Optional[Dict[str, str]] = None) -> None:
        self.wallets = dict(wallets or {})

    async def get_wallet_address(self, identity: str) -> Optional[str]:
        return self.wallets.get(identity.lower())

    async def set_wallet_address(self, identity: str, address: str) -> None:
        self.wallets[identity.lower()] = address


@pytest.fixture(scope="session")
def deriver() -> WalletDeriver:
    return WalletDeriver(MNEMONIC)


@pytest.fixture
def signer(deriver):
    return deriver.derive_signer(USER)


@pytest.fixture
def limiter() -> RateLimiter:
    rl = RateLimiter()
    rl.register_bucket("clob-post-order", 2400, 10, burst_allowance=2400)
    rl.register_bucket("clob-post-order-sustained", 2400, 60)
    rl.register_bucket("clob-delete-order", 2400, 10, burst_allowance=2400)
    rl.register_bucket("clob-delete-order-sustained", 2400, 60)
    return rl


def ok_order(order_id: str = "O1", status: str = "submitted") -> TransportResponse:
    return TransportResponse(200, {"success": True, "errorMsg": "", "orderId": order_id, "status": status})


@pytest.fixture
def approver(deriver):
    """Existing Safe owner key used to approve owner additions."""
    return deriver.derive_signer("0x" + "0a" * 20)
