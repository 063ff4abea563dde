import threading

import pytest

from conftest import CONTRACT, make_orchestrator
from onchain_indexer.config import ChainId, SubscriptionTier
from onchain_indexer.models.session import ChunkStatus, IndexingSession, SessionStatus, chunk_key, session_key
from onchain_indexer.services.chunk_indexer import ChunkIndexer
from onchain_indexer.services.error_handler import ErrorHandler
from onchain_indexer.services.notifications import InMemoryProgressChannel
from onchain_indexer.services.session_store import MemoryRecordStore
from onchain_indexer.services.tail_monitor import TailMonitor, TailOutcome
from onchain_indexer.services.tier_range import StaticSubscriptionLookup, TierRangeCalculator

SESSION_ID = session_key(ChainId.ETHEREUM, CONTRACT, "sub")


@pytest.fixture
def lookup():
    return StaticSubscriptionLookup({"sub": SubscriptionTier.ENTERPRISE})


@pytest.fixture
def channel():
    return InMemoryProgressChannel(history_size=1000)


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def indexer(fake_chain, store, channel):
    return ChunkIndexer(
        make_orchestrator(fake_chain),
        store,
        channel,
        error_handler=ErrorHandler(max_retries=1, retry_delay=0),
        chunk_size=100,
    )


@pytest.fixture
def tail(indexer, lookup):
    return TailMonitor(indexer.orchestrator, indexer, TierRangeCalculator(lookup), polling_interval=0.01)


@pytest.fixture
def session(fake_chain, indexer):
    fake_chain.add_transaction(block=150, value=1)
    fake_chain.add_transaction(block=650, value=2)
    session = IndexingSession(
        session_id=SESSION_ID,
        contract_address=CONTRACT,
        chain=ChainId.ETHEREUM,
        subscriber_id="sub",
        tier=SubscriptionTier.ENTERPRISE,
        historical_days=730,
        continuous_sync=True,
        start_block=100,
        end_block=1000,
    )
    return indexer.index(session)


def test_idle_when_head_unchanged(tail, session):
    assert tail.poll_once(session) == TailOutcome.IDLE
    assert session.end_block == 1000


def test_extends_with_new_blocks(fake_chain, tail, session, channel, store):
    tx_hash = fake_chain.add_transaction(block=1010, value=4)
    fake_chain.head = 1025

    assert tail.poll_once(session) == TailOutcome.EXTENDED

    assert session.status == SessionStatus.COMPLETED
    assert session.end_block == 1025
    assert (session.chunks[-1].start_block, session.chunks[-1].end_block) == (1000, 1025)
    assert session.chunks[-1].status == ChunkStatus.DONE
    assert tx_hash in session.metrics.seen_tx_hashes
    assert session.metrics.total_value_wei == 7
    assert channel.latest(SESSION_ID).step == "tail_extended"
    assert store.load_session(SESSION_ID).end_block == 1025


def test_consecutive_ticks_tile_without_gaps(fake_chain, tail, session):
    for head in (1003, 1004, 1100):
        fake_chain.head = head
        assert tail.poll_once(session) == TailOutcome.EXTENDED

    tail_chunks = session.chunks[-3:]
    assert [(c.start_block, c.end_block) for c in tail_chunks] == [(1000, 1003), (1003, 1004), (1004, 1100)]


def test_fetch_failure_retries_next_tick(fake_chain, tail, session, channel, store):
    fake_chain.head = 1050
    fake_chain.fail_methods.add("eth_getLogs")

    assert tail.poll_once(session) == TailOutcome.RETRY

    assert session.status == SessionStatus.COMPLETED
    assert session.end_block == 1000
    assert len(session.chunks) == 9
    assert chunk_key(SESSION_ID, 1000) not in {chunk_key(SESSION_ID, c.start_block) for c in store.load_session(SESSION_ID).chunks}
    assert channel.latest(SESSION_ID).step == "tail_retry"

    fake_chain.fail_methods.clear()
    assert tail.poll_once(session) == TailOutcome.EXTENDED
    assert session.end_block == 1050


def test_head_unavailable_retries(fake_chain, tail, session):
    fake_chain.head = 1050
    fake_chain.fail_methods.add("eth_blockNumber")
    assert tail.poll_once(session) == TailOutcome.RETRY
    assert session.end_block == 1000


def test_downgrade_stops_tailing(tail, session, lookup, channel):
    lookup.set_tier("sub", SubscriptionTier.FREE)

    assert tail.poll_once(session) == TailOutcome.STOPPED

    assert session.continuous_sync is False
    assert session.status == SessionStatus.COMPLETED
    assert channel.latest(SESSION_ID).step == "tailing_stopped"


def test_lookup_failure_stops_tailing(tail, session, lookup):
    lookup.tiers.clear()
    assert tail.poll_once(session) == TailOutcome.STOPPED
    assert session.tier_degraded is True


def test_tier_change_applies_new_limits(fake_chain, tail, session, lookup, indexer):
    lookup.set_tier("sub", SubscriptionTier.PRO)
    fake_chain.head = 1010

    assert tail.poll_once(session) == TailOutcome.EXTENDED

    assert session.tier == SubscriptionTier.PRO
    assert session.historical_days == 365
    for provider in indexer.orchestrator.providers(ChainId.ETHEREUM):
        assert provider.transport.queue.max_concurrent == 5


def test_not_completed_session_is_not_tailed(tail, session):
    session.status = SessionStatus.ERROR
    assert tail.poll_once(session) == TailOutcome.STOPPED


def test_boundary_violation_stops_tailing(fake_chain, tail, session):
    fake_chain.add_transaction(block=1051)
    fake_chain.head = 1051
    fake_chain.leak_upper_block = True

    assert tail.poll_once(session) == TailOutcome.STOPPED
    assert session.status == SessionStatus.ERROR
    assert session.error_kind == "out_of_range"


def test_slide_window_drops_whole_chunks(tail, session, store):
    session.historical_days = 1
    # window is 7200 blocks, so everything ending at or before block 300 falls out
    dropped = tail.slide_window(session, 7500)

    assert [(c.start_block, c.end_block) for c in dropped] == [(100, 200), (200, 300)]
    assert session.start_block == 300
    assert session.metrics.tx_count == 1
    assert session.metrics.total_value_wei == 2
    assert [c.start_block for c in store.load_session(SESSION_ID).chunks][0] == 300


def test_slide_window_keeps_newest_chunk(tail, session):
    session.historical_days = 1
    tail.slide_window(session, 10**7)
    assert len(session.chunks) == 1
    assert session.start_block == 900
    assert session.chunks[0].end_block == session.end_block


def test_slide_window_noop_inside_window(tail, session):
    assert tail.slide_window(session, 1000) == []
    assert session.start_block == 100


def test_run_until_cancelled(fake_chain, tail, session):
    cancel = threading.Event()
    fake_chain.head = 1100
    tail.run(session, cancel, max_ticks=3)
    assert session.end_block == 1100

    cancel.set()
    fake_chain.head = 1200
    tail.run(session, cancel)
    assert session.end_block == 1100


def test_run_stops_on_downgrade(tail, session, lookup):
    lookup.set_tier("sub", SubscriptionTier.FREE)
    tail.run(session, threading.Event())
    assert session.continuous_sync is False
