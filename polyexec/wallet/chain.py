"""Chain access used by the ownership coordinator: Safe reads and owner transactions."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Protocol

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TimeExhausted, Web3Exception

from ..errors import TransportError
from ..utils.net import RetryPolicy, retry_async

SAFE_READ_ABI = [
    {
        "name": "getOwners",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address[]"}],
    },
    {
        "name": "getThreshold",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "nonce",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class ChainClient(Protocol):
    """What the coordinator needs to know about the chain."""

    async def get_code(self, address: str) -> bytes: ...

    async def get_owners(self, wallet_address: str) -> List[str]: ...

    async def get_threshold(self, wallet_address: str) -> int: ...

    async def get_nonce(self, wallet_address: str) -> int: ...

    async def send_transaction(self, sender: Any, to: str, data: str) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool: ...


class Web3ChainClient:
    """:class:`ChainClient` backed by ``web3.AsyncWeb3`` over HTTP JSON-RPC.

    Reads retry transport failures under ``retry``.  Sending a transaction
    is never retried; the caller owns the outcome of a broadcast.
    """

    def __init__(self, rpc_url: str, timeout: float = 15.0, retry: RetryPolicy | None = None) -> None:
        self.rpc_url = rpc_url
        self.retry = retry or RetryPolicy(max_attempts=3)
        provider = AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)})
        self.w3 = AsyncWeb3(provider)

    def _safe(self, wallet_address: str):
        return self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(wallet_address), abi=SAFE_READ_ABI
        )

    async def _guard(self, call):
        try:
            return await call()
        except asyncio.TimeoutError as exc:
            raise TransportError(f"RPC timeout at {self.rpc_url}", reason="timeout") from exc
        except aiohttp.ClientConnectorError as exc:
            raise TransportError(
                f"cannot reach RPC at {self.rpc_url}: {exc}", reason="network", request_sent=False
            ) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"RPC failure at {self.rpc_url}: {exc}") from exc
        except TimeExhausted as exc:
            raise TransportError(f"no receipt from {self.rpc_url}: {exc}", reason="timeout") from exc
        except Web3Exception as exc:
            raise TransportError(f"RPC error: {exc}", reason="http") from exc

    async def _read(self, call):
        # reason="http" is a node or contract error, not a flaky connection
        return await retry_async(
            self._guard,
            call,
            policy=self.retry,
            retry_on=(TransportError,),
            should_retry=lambda exc: exc.reason != "http",
        )

    async def get_code(self, address: str) -> bytes:
        code = await self._read(lambda: self.w3.eth.get_code(AsyncWeb3.to_checksum_address(address)))
        return bytes(code)

    async def get_owners(self, wallet_address: str) -> List[str]:
        owners = await self._read(self._safe(wallet_address).functions.getOwners().call)
        return [AsyncWeb3.to_checksum_address(o) for o in owners]

    async def get_threshold(self, wallet_address: str) -> int:
        return int(await self._read(self._safe(wallet_address).functions.getThreshold().call))

    async def get_nonce(self, wallet_address: str) -> int:
        return int(await self._read(self._safe(wallet_address).functions.nonce().call))

    async def send_transaction(self, sender: Any, to: str, data: str) -> str:
        """Sign with ``sender`` and broadcast a call to ``to``; returns the tx hash."""

        async def _broadcast():
            tx: Dict[str, Any] = {
                "from": sender.address,
                "to": AsyncWeb3.to_checksum_address(to),
                "data": data,
                "value": 0,
                "chainId": await self.w3.eth.chain_id,
                "nonce": await self.w3.eth.get_transaction_count(sender.address, "pending"),
                "gasPrice": await self.w3.eth.gas_price,
            }
            tx["gas"] = await self.w3.eth.estimate_gas(tx)
            return await self.w3.eth.send_raw_transaction(sender.sign_transaction(tx))

        return AsyncWeb3.to_hex(await self._guard(_broadcast))

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool:
        """Wait for ``tx_hash`` to be mined; ``True`` when it did not revert."""
        receipt = await self._guard(
            lambda: self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        )
        return receipt["status"] == 1


__all__ = ["ChainClient", "Web3ChainClient", "SAFE_READ_ABI"]
