"""Safe address prediction and the owner-add authorization protocol."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from ..config import SafeNetworkParams
from ..errors import (
    AuthorizationError,
    AuthorizationRejected,
    AuthorizationTimeout,
    ConfigurationError,
    InvariantViolation,
    TransportError,
)
from ..utils.logging import log_json
from ..utils.monitoring import authorization_counter
from .chain import ChainClient
from .deriver import DerivedSigner
from .relay import TransactionRelay

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SETUP_SELECTOR = function_signature_to_4byte_selector(
    "setup(address[],uint256,address,bytes,address,address,uint256,address)"
)
ADD_OWNER_SELECTOR = function_signature_to_4byte_selector("addOwnerWithThreshold(address,uint256)")
EXEC_TRANSACTION_SELECTOR = function_signature_to_4byte_selector(
    "execTransaction(address,uint256,bytes,uint8,uint256,uint256,uint256,address,address,bytes)"
)

_PRIVATE_KEY = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


SAFE_TX_TYPES = {
    "EIP712Domain": [
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "SafeTx": [
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "data", "type": "bytes"},
        {"name": "operation", "type": "uint8"},
        {"name": "safeTxGas", "type": "uint256"},
        {"name": "baseGas", "type": "uint256"},
        {"name": "gasPrice", "type": "uint256"},
        {"name": "gasToken", "type": "address"},
        {"name": "refundReceiver", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ],
}


class AuthorizationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"
    FAILED = "failed"


class OwnerSigner(Protocol):
    """Existing Safe owner able to confirm and execute an owner change."""

    address: str

    def sign_hash(self, digest: bytes) -> str: ...

    def sign_transaction(self, tx: Dict[str, Any]) -> bytes: ...


@dataclass(frozen=True)
class OwnerAccount:
    """Key of an existing Safe owner, loaded from configuration."""

    address: str
    account: LocalAccount = field(repr=False, compare=False)

    @classmethod
    def from_key(cls, private_key: str) -> "OwnerAccount":
        key = (private_key or "").strip()
        if not _PRIVATE_KEY.match(key):
            raise ConfigurationError("SAFE_OWNER_PRIVATE_KEY is not a 32-byte hex private key")
        try:
            account = Account.from_key(key)
        except ValueError as exc:
            raise ConfigurationError("SAFE_OWNER_PRIVATE_KEY is not a valid private key") from exc
        return cls(account.address, account)

    def sign_hash(self, digest: bytes) -> str:
        return "0x" + bytes(self.account.unsafe_sign_hash(digest).signature).hex()

    def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        return bytes(self.account.sign_transaction(tx).raw_transaction)


@dataclass
class AuthorizationTransaction:
    """Request to add ``new_owner`` to ``wallet`` with ``threshold``.

    ``required_signatures`` is the wallet's threshold before the change: the
    number of owner signatures ``execTransaction`` needs.
    """

    wallet: str
    new_owner: str
    threshold: int
    data: str
    nonce: int
    safe_tx_hash: str
    required_signatures: int = 1
    sender: Optional[str] = None
    signature: Optional[str] = None
    relay_tx_id: Optional[str] = None
    status: AuthorizationStatus = AuthorizationStatus.PENDING
    confirmations: int = 0
    tx_hash: Optional[str] = None

    def attach_confirmation(self, sender: str, signature: str) -> None:
        """Attach an owner's signature over :attr:`safe_tx_hash`."""
        self.sender = to_checksum_address(sender)
        self.signature = signature
        self.confirmations = max(self.confirmations, 1)

    def to_relay_payload(self) -> Dict[str, Any]:
        return {
            "safe": self.wallet,
            "to": self.wallet,
            "value": "0",
            "data": self.data,
            "operation": 0,
            "safeTxGas": "0",
            "baseGas": "0",
            "gasPrice": "0",
            "gasToken": ZERO_ADDRESS,
            "refundReceiver": ZERO_ADDRESS,
            "nonce": self.nonce,
            "contractTransactionHash": self.safe_tx_hash,
            "sender": self.sender,
            "signature": self.signature,
            "origin": "polyexec",
        }

    def exec_calldata(self) -> str:
        if self.signature is None:
            raise AuthorizationError(
                f"owner-add for {self.wallet} carries no owner signature", transaction=self
            )
        return encode_exec_transaction(self.wallet, self.data, self.signature)


def encode_setup(owners: Sequence[str], threshold: int, fallback_handler: str) -> bytes:
    """Calldata of ``Safe.setup`` as a deployer would send it."""
    args = encode(
        ["address[]", "uint256", "address", "bytes", "address", "address", "uint256", "address"],
        [
            [to_checksum_address(o) for o in owners],
            threshold,
            ZERO_ADDRESS,
            b"",
            to_checksum_address(fallback_handler),
            ZERO_ADDRESS,
            0,
            ZERO_ADDRESS,
        ],
    )
    return SETUP_SELECTOR + args


def encode_add_owner(owner: str, threshold: int) -> str:
    """Hex calldata of ``addOwnerWithThreshold(owner, threshold)``."""
    payload = ADD_OWNER_SELECTOR + encode(["address", "uint256"], [to_checksum_address(owner), threshold])
    return "0x" + payload.hex()


def encode_exec_transaction(wallet: str, data: str, signatures: str) -> str:
    """Hex calldata of ``execTransaction`` for a zero-value, zero-gas self call."""
    args = encode(
        ["address", "uint256", "bytes", "uint8", "uint256", "uint256", "uint256", "address", "address", "bytes"],
        [
            to_checksum_address(wallet),
            0,
            bytes.fromhex(data.removeprefix("0x")),
            0,
            0,
            0,
            0,
            ZERO_ADDRESS,
            ZERO_ADDRESS,
            bytes.fromhex(signatures.removeprefix("0x")),
        ],
    )
    return "0x" + (EXEC_TRANSACTION_SELECTOR + args).hex()


def create2_address(deployer: str, salt: bytes, init_code: bytes) -> str:
    factory = bytes.fromhex(deployer.removeprefix("0x"))
    digest = keccak(b"\xff" + factory + salt + keccak(init_code))
    return to_checksum_address(digest[12:])


def safe_tx_hash(wallet: str, data: str, nonce: int, chain_id: int) -> bytes:
    """EIP-712 hash of a zero-value, zero-gas ``SafeTx`` call to ``wallet``."""
    typed = {
        "types": SAFE_TX_TYPES,
        "primaryType": "SafeTx",
        "domain": {"chainId": chain_id, "verifyingContract": to_checksum_address(wallet)},
        "message": {
            "to": to_checksum_address(wallet),
            "value": 0,
            "data": bytes.fromhex(data.removeprefix("0x")),
            "operation": 0,
            "safeTxGas": 0,
            "baseGas": 0,
            "gasPrice": 0,
            "gasToken": ZERO_ADDRESS,
            "refundReceiver": ZERO_ADDRESS,
            "nonce": nonce,
        },
    }
    signable = encode_typed_data(full_message=typed)
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


class SafeOwnershipCoordinator:
    """Make a derived signer a co-owner of a user's Safe.

    The coordinator predicts addresses, answers read-only ownership
    questions and drives the one-time ``addOwnerWithThreshold`` transaction.
    An existing owner (the approver) signs the Safe transaction.  When that
    signature alone meets the wallet's threshold the approver executes it on
    chain; otherwise it is proposed to the relay, where the remaining owners
    confirm and execute it.  It does not deduplicate concurrent
    authorizations of the same wallet; callers check :meth:`is_owner` first
    and serialize.

    Parameters
    ----------
    chain:
        Chain access: Safe reads and transaction broadcast.
    relay:
        Transaction relay that collects confirmations from other owners.
    network:
        Deployment parameters used for address prediction and hashing.
    poll_interval, timeout:
        Relay polling cadence and hard wall-clock limit, in seconds.  The
        timeout also bounds the wait for an on-chain receipt.
    max_poll_errors:
        Transport errors tolerated while polling before giving up.
    """

    def __init__(
        self,
        chain: ChainClient,
        relay: TransactionRelay,
        network: SafeNetworkParams | None = None,
        poll_interval: float = 2.0,
        timeout: float = 60.0,
        max_poll_errors: int = 5,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.chain = chain
        self.relay = relay
        self.network = network or SafeNetworkParams()
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_poll_errors = max_poll_errors
        self._clock = clock
        self._log = logger or logging.getLogger("polyexec.safe")

    # -- prediction ---------------------------------------------------------

    def predict_address_for(self, owners: Sequence[str], threshold: int) -> str:
        """CREATE2 address of a Safe deployed through the proxy factory."""
        if not owners:
            raise ValueError("a Safe needs at least one owner")
        if not 1 <= threshold <= len(owners):
            raise ValueError("threshold must be between 1 and the owner count")
        net = self.network
        initializer = encode_setup(owners, threshold, net.fallback_handler)
        salt = keccak(keccak(initializer) + net.salt_nonce.to_bytes(32, "big"))
        init_code = bytes.fromhex(net.proxy_creation_code.removeprefix("0x")) + encode(
            ["address"], [to_checksum_address(net.singleton)]
        )
        address = create2_address(net.proxy_factory, salt, init_code)
        if address.lower() == net.singleton.lower():
            raise InvariantViolation(
                f"predicted Safe address {address} is the singleton; derivation is corrupt"
            )
        return address

    def predict_wallet_address(self, signer: DerivedSigner) -> str:
        """Address of the Safe a deployer creates with ``owners=[signer]``, threshold 1."""
        return self.predict_address_for([signer.address], 1)

    # -- read-only queries --------------------------------------------------

    async def is_deployed(self, address: str) -> bool:
        code = await self.chain.get_code(to_checksum_address(address))
        return len(code.lstrip(b"\x00")) > 0

    async def get_owners(self, wallet: str) -> List[str]:
        return await self.chain.get_owners(to_checksum_address(wallet))

    async def is_owner(self, wallet: str, address: str) -> bool:
        wanted = address.lower()
        return any(o.lower() == wanted for o in await self.get_owners(wallet))

    # -- authorization ------------------------------------------------------

    async def build_authorization(
        self,
        wallet: str,
        signer: DerivedSigner,
        threshold: int | None = None,
        approver: OwnerSigner | None = None,
    ) -> AuthorizationTransaction:
        """Encode the owner-add call and, with ``approver``, sign it."""
        wallet = to_checksum_address(wallet)
        owners = await self.chain.get_owners(wallet)
        if any(o.lower() == signer.address.lower() for o in owners):
            raise ValueError(f"{signer.address} is already an owner of {wallet}")
        current = await self.chain.get_threshold(wallet)
        target = current if threshold is None else threshold
        if not 1 <= target <= len(owners) + 1:
            raise ValueError(f"threshold {target} invalid for {len(owners) + 1} owners")
        if target < current:
            raise ValueError("authorization may keep or raise the threshold, never lower it")

        data = encode_add_owner(signer.address, target)
        nonce = await self.chain.get_nonce(wallet)
        digest = safe_tx_hash(wallet, data, nonce, self.network.chain_id)
        tx = AuthorizationTransaction(
            wallet=wallet,
            new_owner=signer.address,
            threshold=target,
            data=data,
            nonce=nonce,
            safe_tx_hash="0x" + digest.hex(),
            required_signatures=current,
        )
        if approver is not None:
            if not any(o.lower() == approver.address.lower() for o in owners):
                raise AuthorizationError(f"approver {approver.address} is not an owner of {wallet}")
            tx.attach_confirmation(approver.address, approver.sign_hash(digest))
        return tx

    async def execute_authorization(
        self, tx: AuthorizationTransaction, executor: OwnerSigner
    ) -> AuthorizationTransaction:
        """Run a fully signed ``tx`` through ``execTransaction`` and wait for the receipt."""
        return await self._counted(self._execute(tx, executor))

    async def submit_authorization(self, tx: AuthorizationTransaction) -> AuthorizationTransaction:
        """Propose a signed ``tx`` to the relay and wait until other owners execute it."""
        return await self._counted(self._propose(tx))

    async def authorize_signer(
        self,
        wallet: str,
        signer: DerivedSigner,
        threshold: int | None = None,
        approver: OwnerSigner | None = None,
    ) -> AuthorizationTransaction:
        """Add ``signer`` as owner of ``wallet`` and wait until executed.

        Raises
        ------
        AuthorizationError
            No ``approver`` was given, or it is not an owner of ``wallet``.
        AuthorizationRejected
            The relay refused the transaction, it reverted on chain, or the
            signer is still not an owner afterwards.
        AuthorizationTimeout
            Not executed within :attr:`timeout` seconds.
        TransportError
            Submission failed, or polling failed more than
            :attr:`max_poll_errors` times.
        """
        if approver is None:
            raise AuthorizationError(
                f"adding {signer.address} to {wallet} needs an existing owner key "
                "(set SAFE_OWNER_PRIVATE_KEY)"
            )
        tx = await self.build_authorization(wallet, signer, threshold, approver)
        if tx.confirmations >= tx.required_signatures:
            return await self.execute_authorization(tx, approver)
        return await self.submit_authorization(tx)

    async def ensure_signer_authorized(
        self, wallet: str, signer: DerivedSigner, approver: OwnerSigner | None = None
    ) -> Optional[AuthorizationTransaction]:
        """Authorize ``signer`` unless it already owns ``wallet``."""
        if await self.is_owner(wallet, signer.address):
            return None
        return await self.authorize_signer(wallet, signer, approver=approver)

    async def _counted(self, pending: Awaitable[AuthorizationTransaction]) -> AuthorizationTransaction:
        try:
            tx = await pending
        except AuthorizationError as exc:
            authorization_counter.labels(result=type(exc).__name__).inc()
            raise
        authorization_counter.labels(result="executed").inc()
        return tx

    async def _execute(self, tx: AuthorizationTransaction, executor: OwnerSigner) -> AuthorizationTransaction:
        calldata = tx.exec_calldata()
        tx.tx_hash = await self.chain.send_transaction(executor, tx.wallet, calldata)
        log_json(
            self._log,
            "safe_authorization_sent",
            wallet=tx.wallet,
            new_owner=tx.new_owner,
            threshold=tx.threshold,
            tx_hash=tx.tx_hash,
        )
        try:
            succeeded = await self.chain.wait_for_receipt(tx.tx_hash, self.timeout)
        except TransportError as exc:
            if exc.reason != "timeout":
                raise
            raise AuthorizationTimeout(
                f"owner-add transaction {tx.tx_hash} not mined after {self.timeout}s", transaction=tx
            ) from exc
        if not succeeded:
            tx.status = AuthorizationStatus.FAILED
            raise AuthorizationRejected(f"owner-add transaction {tx.tx_hash} reverted", transaction=tx)
        return await self._confirm_owner(tx)

    async def _propose(self, tx: AuthorizationTransaction) -> AuthorizationTransaction:
        if tx.signature is None:
            raise AuthorizationError(
                f"owner-add for {tx.wallet} carries no owner signature", transaction=tx
            )
        tx.relay_tx_id = await self.relay.submit(tx.to_relay_payload())
        log_json(
            self._log,
            "safe_authorization_submitted",
            wallet=tx.wallet,
            new_owner=tx.new_owner,
            threshold=tx.threshold,
            relay_tx_id=tx.relay_tx_id,
        )
        await self._wait_for_execution(tx)
        return await self._confirm_owner(tx)

    async def _confirm_owner(self, tx: AuthorizationTransaction) -> AuthorizationTransaction:
        if not await self.is_owner(tx.wallet, tx.new_owner):
            tx.status = AuthorizationStatus.FAILED
            raise AuthorizationRejected(
                f"{tx.new_owner} is not an owner of {tx.wallet} after {tx.tx_hash}", transaction=tx
            )
        tx.status = AuthorizationStatus.EXECUTED
        log_json(
            self._log,
            "safe_authorization_executed",
            wallet=tx.wallet,
            new_owner=tx.new_owner,
            tx_hash=tx.tx_hash,
        )
        return tx

    async def _wait_for_execution(self, tx: AuthorizationTransaction) -> AuthorizationTransaction:
        if tx.relay_tx_id is None:
            raise InvariantViolation("polling an authorization that was never relayed")
        deadline = self._clock() + self.timeout
        poll_errors = 0
        while True:
            try:
                status = await self.relay.get_status(tx.relay_tx_id)
            except TransportError as exc:
                poll_errors += 1
                log_json(
                    self._log,
                    "safe_authorization_poll_error",
                    level=logging.WARNING,
                    relay_tx_id=tx.relay_tx_id,
                    attempt=poll_errors,
                    error=str(exc),
                )
                if poll_errors > self.max_poll_errors:
                    raise
            else:
                tx.confirmations = max(tx.confirmations, status.confirmations)
                if status.executed:
                    tx.tx_hash = status.tx_hash
                    if status.successful is False:
                        tx.status = AuthorizationStatus.FAILED
                        raise AuthorizationRejected(
                            f"owner-add transaction {status.tx_hash} reverted", transaction=tx
                        )
                    return tx
                if tx.confirmations > 0:
                    tx.status = AuthorizationStatus.CONFIRMED

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise AuthorizationTimeout(
                    f"owner-add transaction {tx.relay_tx_id} not executed after {self.timeout}s",
                    transaction=tx,
                )
            await asyncio.sleep(min(self.poll_interval, remaining))


__all__ = [
    "AuthorizationStatus",
    "AuthorizationTransaction",
    "OwnerAccount",
    "OwnerSigner",
    "SafeOwnershipCoordinator",
    "create2_address",
    "encode_add_owner",
    "encode_exec_transaction",
    "encode_setup",
    "safe_tx_hash",
]
