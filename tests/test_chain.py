import pytest
from web3.exceptions import TimeExhausted, Web3Exception

from polyexec.errors import TransportError
from polyexec.utils.net import RetryPolicy
from polyexec.wallet.chain import Web3ChainClient

SAFE = "0x2222222222222222222222222222222222222222"


@pytest.mark.asyncio
async def test_reads_retry_transient_failures(monkeypatch):
    client = Web3ChainClient("http://127.0.0.1:8545", retry=RetryPolicy(max_attempts=3, backoff=0))
    calls = {"n": 0}

    async def flaky(address):
        calls["n"] += 1
        if calls["n"] < 3:
            raise OSError("connection reset")
        return b"\x60\x80"

    monkeypatch.setattr(client.w3.eth, "get_code", flaky)
    assert await client.get_code(SAFE) == b"\x60\x80"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_node_errors_are_not_retried(monkeypatch):
    client = Web3ChainClient("http://127.0.0.1:8545", retry=RetryPolicy(max_attempts=3, backoff=0))
    calls = {"n": 0}

    async def broken(address):
        calls["n"] += 1
        raise Web3Exception("execution reverted")

    monkeypatch.setattr(client.w3.eth, "get_code", broken)
    with pytest.raises(TransportError) as info:
        await client.get_code(SAFE)
    assert info.value.reason == "http"
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_receipt_status_reports_revert(monkeypatch):
    client = Web3ChainClient("http://127.0.0.1:8545")
    receipts = {"0x01": {"status": 1}, "0x02": {"status": 0}}

    async def receipt(tx_hash, timeout):
        return receipts[tx_hash]

    monkeypatch.setattr(client.w3.eth, "wait_for_transaction_receipt", receipt)
    assert await client.wait_for_receipt("0x01", timeout=5) is True
    assert await client.wait_for_receipt("0x02", timeout=5) is False


@pytest.mark.asyncio
async def test_missing_receipt_is_a_timeout(monkeypatch):
    client = Web3ChainClient("http://127.0.0.1:8545")

    async def never_mined(tx_hash, timeout):
        raise TimeExhausted(f"{tx_hash} not mined after {timeout}s")

    monkeypatch.setattr(client.w3.eth, "wait_for_transaction_receipt", never_mined)
    with pytest.raises(TransportError) as info:
        await client.wait_for_receipt("0x03", timeout=1)
    assert info.value.reason == "timeout"
