"""Central orchestration: user identity to signed, submitted order."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set, Tuple

from .config import Settings, build_rate_limiter
from .errors import ConfigurationError, WalletNotDeployed
from .execution.classifier import FailureKind, OrderResult
from .execution.order_manager import OrderIntent
from .execution.pipeline import OrderExecutionPipeline
from .execution.transport import AiohttpTransport, Transport
from .utils.logging import get_logger, log_json
from .utils.net import RetryPolicy
from .wallet.chain import Web3ChainClient
from .wallet.deriver import DerivedSigner, WalletDeriver
from .wallet.relay import SafeTransactionServiceRelay
from .wallet.safe import AuthorizationTransaction, OwnerAccount, OwnerSigner, SafeOwnershipCoordinator


class UserStore(Protocol):
    """Persistence for the user to Safe mapping."""

    async def get_wallet_address(self, identity: str) -> Optional[str]: ...

    async def set_wallet_address(self, identity: str, address: str) -> None: ...


@dataclass(frozen=True)
class TradingAccount:
    """Everything needed to trade for one user."""

    identity: str
    signer: DerivedSigner
    wallet: str
    authorization: Optional[AuthorizationTransaction] = None


@dataclass
class ExecutionOrchestrator:
    """High level entry point tying derivation, authorization and execution.

    Parameters
    ----------
    deriver : WalletDeriver
        Produces the per-user signer.
    coordinator : SafeOwnershipCoordinator
        Checks deployment and authorizes the signer on the user's Safe.
    pipeline : OrderExecutionPipeline
        Signs, submits and classifies orders.
    transport : Transport
        Outbound channel for exchange requests.
    user_store : UserStore
        Source of recorded wallet addresses.
    approver : OwnerSigner, optional
        Existing Safe owner that signs and executes owner additions.  Without
        it a signer that is not yet an owner cannot be authorized.

    Authorization runs at most once per wallet at a time: concurrent
    ``prepare`` calls for the same Safe wait on a shared lock, and wallets
    known to be authorized are remembered until the exchange rejects one of
    their orders with an invalid signature, which sends the next order back
    through authorization.
    """

    deriver: WalletDeriver
    coordinator: SafeOwnershipCoordinator
    pipeline: OrderExecutionPipeline
    transport: Transport
    user_store: UserStore
    approver: Optional[OwnerSigner] = None
    logger: logging.Logger = field(default_factory=lambda: get_logger("polyexec.orchestrator"))
    _locks: Dict[str, asyncio.Lock] = field(default_factory=dict, init=False, repr=False)
    _authorized: Set[Tuple[str, str]] = field(default_factory=set, init=False, repr=False)

    def _lock_for(self, wallet: str) -> asyncio.Lock:
        return self._locks.setdefault(wallet.lower(), asyncio.Lock())

    async def resolve_wallet(self, identity: str, signer: DerivedSigner) -> str:
        wallet = await self.user_store.get_wallet_address(identity)
        if not wallet:
            wallet = self.coordinator.predict_wallet_address(signer)
            await self.user_store.set_wallet_address(identity, wallet)
        return wallet

    async def prepare(self, identity: str, approver: OwnerSigner | None = None) -> TradingAccount:
        """Derive the signer and make sure it may trade for the user's Safe."""
        signer = self.deriver.derive_signer(identity)
        wallet = await self.resolve_wallet(identity, signer)
        key = (wallet.lower(), signer.address.lower())
        if key in self._authorized:
            return TradingAccount(identity, signer, wallet)

        if not await self.coordinator.is_deployed(wallet):
            raise WalletNotDeployed(f"Safe {wallet} for {identity} is not deployed")

        async with self._lock_for(wallet):
            tx = None
            if key not in self._authorized:
                tx = await self.coordinator.ensure_signer_authorized(
                    wallet, signer, approver=approver or self.approver
                )
                self._authorized.add(key)
                log_json(
                    self.logger,
                    "account_ready",
                    identity=signer.identity,
                    wallet=wallet,
                    signer=signer.address,
                    authorized_now=tx is not None,
                )
        return TradingAccount(identity, signer, wallet, tx)

    def _check_signature(self, account: TradingAccount, result: OrderResult) -> OrderResult:
        if result.reason is FailureKind.INVALID_SIGNATURE:
            self._authorized.discard((account.wallet.lower(), account.signer.address.lower()))
            log_json(
                self.logger,
                "account_reauthorize",
                level=logging.WARNING,
                identity=account.identity,
                wallet=account.wallet,
                signer=account.signer.address,
            )
        return result

    async def place_order(self, identity: str, intent: OrderIntent) -> OrderResult:
        account = await self.prepare(identity)
        result = await self.pipeline.submit(intent, account.signer, self.transport, account.wallet)
        return self._check_signature(account, result)

    async def cancel_order(self, identity: str, order_id: str) -> OrderResult:
        account = await self.prepare(identity)
        result = await self.pipeline.cancel(order_id, account.signer, self.transport)
        return self._check_signature(account, result)


def build_orchestrator(
    settings: Settings,
    user_store: UserStore,
    transport: Transport | None = None,
    **kwargs: Any,
) -> ExecutionOrchestrator:
    """Wire the production collaborators from ``settings``.

    ``transport`` defaults to a plain :class:`AiohttpTransport`; pass a
    proxy-aware implementation to route exchange traffic elsewhere.
    """

    if not settings.rpc_url:
        raise ConfigurationError("POLYGON_RPC_URL is not configured")
    exchange = settings.exchange
    transport = transport or AiohttpTransport(
        timeout=exchange.request_timeout, max_redirects=exchange.max_redirects
    )
    coordinator = SafeOwnershipCoordinator(
        Web3ChainClient(settings.rpc_url),
        SafeTransactionServiceRelay(settings.relay_url, transport),
        network=settings.safe,
        poll_interval=settings.authorization.poll_interval,
        timeout=settings.authorization.timeout,
        max_poll_errors=settings.authorization.max_poll_errors,
    )
    pipeline = OrderExecutionPipeline(
        build_rate_limiter(settings),
        base_url=exchange.clob_url,
        chain_id=exchange.chain_id,
        retry=RetryPolicy(max_attempts=exchange.submit_attempts, backoff=exchange.retry_backoff),
        credentials=settings.credentials,
    )
    if settings.safe_owner_key and "approver" not in kwargs:
        kwargs["approver"] = OwnerAccount.from_key(settings.safe_owner_key)
    return ExecutionOrchestrator(
        WalletDeriver(settings.require_master_secret()),
        coordinator,
        pipeline,
        transport,
        user_store,
        **kwargs,
    )


__all__ = ["ExecutionOrchestrator", "TradingAccount", "UserStore", "build_orchestrator"]
