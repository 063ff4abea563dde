import time

import pytest

from conftest import CONTRACT, make_orchestrator
from onchain_indexer.config import ChainId, SubscriptionTier
from onchain_indexer.services.contract_fetcher import ContractFetcher
from onchain_indexer.utils.exceptions import AllProvidersExhausted, ChunkTimeout, SessionCancelled


@pytest.fixture
def fetcher(fake_chain):
    return ContractFetcher(make_orchestrator(fake_chain), ChainId.ETHEREUM, SubscriptionTier.PRO)


def test_fetch_chunk_collects_records_and_metrics(fake_chain, fetcher):
    first = fake_chain.add_transaction(block=150, value=2 * 10**18, gas_used=21000, log_count=2)
    second = fake_chain.add_transaction(block=180, value=10**18, sender="0x" + "b2" * 20, status=0, gas_used=30000)
    fake_chain.add_transaction(block=200)

    data = fetcher.fetch_chunk(CONTRACT, 100, 200)

    assert data.tx_hashes == [first, second]
    assert len(data.logs) == 3
    assert data.blocks == {150, 180}
    assert set(data.transactions) == {first, second}
    assert data.accounts == {"0x" + "a1" * 20, "0x" + "b2" * 20, CONTRACT}

    metrics = data.metrics
    assert metrics.tx_count == 2
    assert metrics.log_count == 3
    assert metrics.failed_tx_count == 1
    assert metrics.total_value_wei == 3 * 10**18
    assert metrics.total_gas_used == 51000
    assert metrics.unique_accounts == 3
    assert metrics.unique_blocks == 2
    assert metrics.first_activity == fake_chain.timestamp(150)
    assert metrics.last_activity == fake_chain.timestamp(180)


def test_log_queries_are_inclusive_and_windowed(fake_chain):
    fetcher = ContractFetcher(make_orchestrator(fake_chain), ChainId.ETHEREUM, log_query_span=30)

    fetcher.fetch_chunk(CONTRACT, 100, 200)

    windows = [(int(c[2][0]["fromBlock"], 16), int(c[2][0]["toBlock"], 16)) for c in fake_chain.calls_for("eth_getLogs")]
    assert windows == [(100, 129), (130, 159), (160, 189), (190, 199)]


def test_removed_logs_are_dropped(fake_chain, fetcher):
    tx_hash = fake_chain.add_transaction(block=150)
    fake_chain.logs[0]["removed"] = True

    data = fetcher.fetch_chunk(CONTRACT, 100, 200)

    assert tx_hash not in data.tx_hashes
    assert data.metrics.tx_count == 0
    assert data.metrics.first_activity is None


def test_missing_receipt_fails_the_fetch(fake_chain, fetcher):
    tx_hash = fake_chain.add_transaction(block=150)
    del fake_chain.receipts[tx_hash]

    with pytest.raises(AllProvidersExhausted):
        fetcher.fetch_chunk(CONTRACT, 100, 200)


def test_detail_batches_follow_tier(fake_chain):
    fetcher = ContractFetcher(make_orchestrator(fake_chain), ChainId.ETHEREUM, SubscriptionTier.FREE)
    assert fetcher.batch_width == 5
    assert fetcher.max_workers == 2

    for block in range(100, 112):
        fake_chain.add_transaction(block=block)

    data = fetcher.fetch_chunk(CONTRACT, 100, 200)

    assert len(data.transactions) == 12
    assert len(fake_chain.calls_for("eth_getTransactionReceipt")) == 12


def test_cancelled_before_fetch(fake_chain, fetcher):
    import threading

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(SessionCancelled):
        fetcher.fetch_chunk(CONTRACT, 100, 200, cancel_event=cancel)
    assert not fake_chain.calls_for("eth_getLogs")


def test_deadline_exceeded(fake_chain, fetcher):
    with pytest.raises(ChunkTimeout):
        fetcher.fetch_chunk(CONTRACT, 100, 200, deadline=time.monotonic() - 1)


def test_malformed_value_fails_over_and_is_not_cached(fake_chain, fetcher):
    tx_hash = fake_chain.add_transaction(block=150, value=7)
    fake_chain.transactions[tx_hash]["value"] = "0xzz"

    with pytest.raises(AllProvidersExhausted) as exc_info:
        fetcher.fetch_chunk(CONTRACT, 100, 200)

    assert set(exc_info.value.failures) == {"primary", "backup"}
    assert "0xzz" in exc_info.value.failures["primary"]

    fake_chain.transactions[tx_hash]["value"] = hex(7)
    data = fetcher.fetch_chunk(CONTRACT, 100, 200)
    assert data.metrics.total_value_wei == 7


def test_malformed_log_fails_over(fake_chain, fetcher):
    tx_hash = fake_chain.add_transaction(block=150)
    fake_chain.logs[0]["transactionHash"] = 12345

    with pytest.raises(AllProvidersExhausted, match="transactionHash"):
        fetcher.fetch_chunk(CONTRACT, 100, 200)

    fake_chain.logs[0]["transactionHash"] = tx_hash
    assert fetcher.fetch_chunk(CONTRACT, 100, 200).tx_hashes == [tx_hash]
