import asyncio

import pytest
from eth_account import Account

from polyexec.config import Settings
from polyexec.errors import AuthorizationError, ConfigurationError, WalletNotDeployed
from polyexec.execution.classifier import FailureKind
from polyexec.execution.order_manager import OrderIntent
from polyexec.execution.pipeline import OrderExecutionPipeline
from polyexec.execution.transport import TransportResponse
from polyexec.orchestrator import ExecutionOrchestrator, build_orchestrator
from polyexec.wallet.safe import SafeOwnershipCoordinator

from conftest import MNEMONIC, TOKEN_ID, USER, FakeChain, FakeRelay, FakeTransport, MemoryUserStore, ok_order

OWNER = "0x1111111111111111111111111111111111111111"
KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def _orchestrator(deriver, limiter, chain, relay, transport, store, approver=None):
    coordinator = SafeOwnershipCoordinator(chain, relay, poll_interval=0.01, timeout=1.0)
    pipeline = OrderExecutionPipeline(limiter, base_url="https://clob.example")
    return ExecutionOrchestrator(deriver, coordinator, pipeline, transport, store, approver=approver)


@pytest.mark.asyncio
async def test_undeployed_wallet_is_reported(deriver, limiter):
    store = MemoryUserStore()
    orch = _orchestrator(deriver, limiter, FakeChain(), FakeRelay(), FakeTransport(ok_order()), store)
    with pytest.raises(WalletNotDeployed):
        await orch.prepare(USER)
    predicted = orch.coordinator.predict_wallet_address(deriver.derive_signer(USER))
    assert store.wallets[USER.lower()] == predicted


@pytest.mark.asyncio
async def test_place_order_authorizes_once(deriver, limiter, approver):
    wallet = "0x3333333333333333333333333333333333333333"
    chain = FakeChain()
    chain.deploy(wallet, [approver.address])
    relay = FakeRelay()
    transport = FakeTransport(ok_order("O1"))
    orch = _orchestrator(deriver, limiter, chain, relay, transport, MemoryUserStore({USER: wallet}), approver)

    intent = OrderIntent(TOKEN_ID, "BUY", 0.62, 10)
    results = await asyncio.gather(*(orch.place_order(USER, intent) for _ in range(5)))

    assert all(r.accepted and r.order_id == "O1" for r in results)
    assert len(chain.sent) == 1
    assert chain.sent[0]["sender"] == approver.address
    assert relay.submitted == []
    assert all(req.body["order"]["maker"] == wallet for req in transport.requests)

    account = await orch.prepare(USER)
    assert account.wallet == wallet
    assert account.authorization is None
    assert len(chain.sent) == 1


@pytest.mark.asyncio
async def test_authorization_without_owner_key_sends_nothing(deriver, limiter):
    wallet = "0x6666666666666666666666666666666666666666"
    chain = FakeChain()
    chain.deploy(wallet, [OWNER])
    relay = FakeRelay()
    transport = FakeTransport(ok_order())
    orch = _orchestrator(deriver, limiter, chain, relay, transport, MemoryUserStore({USER: wallet}))

    with pytest.raises(AuthorizationError):
        await orch.place_order(USER, OrderIntent(TOKEN_ID, "BUY", 0.5, 10))
    assert relay.submitted == []
    assert chain.sent == []
    assert transport.requests == []


@pytest.mark.asyncio
async def test_invalid_signature_triggers_reauthorization(deriver, limiter, approver):
    wallet = "0x7777777777777777777777777777777777777777"
    chain = FakeChain()
    chain.deploy(wallet, [approver.address])
    rejected = TransportResponse(400, {"error": "invalid signature"})
    transport = FakeTransport(ok_order("O1"), rejected, ok_order("O2"))
    orch = _orchestrator(deriver, limiter, chain, FakeRelay(), transport, MemoryUserStore({USER: wallet}), approver)
    intent = OrderIntent(TOKEN_ID, "BUY", 0.5, 10)

    assert (await orch.place_order(USER, intent)).accepted
    assert len(chain.sent) == 1

    chain.owners[wallet.lower()] = [approver.address]
    second = await orch.place_order(USER, intent)
    assert second.reason is FailureKind.INVALID_SIGNATURE
    assert len(chain.sent) == 1

    third = await orch.place_order(USER, intent)
    assert third.accepted and third.order_id == "O2"
    assert len(chain.sent) == 2


@pytest.mark.asyncio
async def test_existing_owner_skips_authorization(deriver, limiter):
    wallet = "0x4444444444444444444444444444444444444444"
    signer = deriver.derive_signer(USER)
    chain = FakeChain()
    chain.deploy(wallet, [OWNER, signer.address])
    relay = FakeRelay()
    orch = _orchestrator(deriver, limiter, chain, relay, FakeTransport(ok_order()), MemoryUserStore({USER: wallet}))

    account = await orch.prepare(USER)
    assert account.signer.address == signer.address
    assert account.authorization is None
    assert relay.submitted == []
    assert chain.sent == []


@pytest.mark.asyncio
async def test_cancel_order(deriver, limiter):
    wallet = "0x5555555555555555555555555555555555555555"
    signer = deriver.derive_signer(USER)
    chain = FakeChain()
    chain.deploy(wallet, [signer.address])
    transport = FakeTransport(TransportResponse(200, {"canceled": ["O1"]}))
    orch = _orchestrator(deriver, limiter, chain, FakeRelay(), transport, MemoryUserStore({USER: wallet}))

    result = await orch.cancel_order(USER, "O1")
    assert result.accepted
    assert transport.requests[0].method == "DELETE"


def test_build_orchestrator_wires_owner_key():
    settings = Settings(master_secret=MNEMONIC, rpc_url="http://127.0.0.1:8545", safe_owner_key=KEY)
    orch = build_orchestrator(settings, MemoryUserStore(), transport=FakeTransport(ok_order()))
    assert orch.approver.address == Account.from_key(KEY).address

    with pytest.raises(ConfigurationError):
        build_orchestrator(Settings(master_secret=MNEMONIC), MemoryUserStore())
    with pytest.raises(ConfigurationError):
        build_orchestrator(
            Settings(master_secret=MNEMONIC, rpc_url="http://127.0.0.1:8545", safe_owner_key="0x12"),
            MemoryUserStore(),
            transport=FakeTransport(ok_order()),
        )
