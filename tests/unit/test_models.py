from onchain_indexer.config import ChainId
from onchain_indexer.models.session import (
    Chunk,
    ChunkMetrics,
    ChunkStatus,
    IndexingSession,
    SessionMetrics,
    SessionStatus,
    chunk_key,
    session_key,
)


def _session():
    session = IndexingSession(
        session_id=session_key(ChainId.ETHEREUM, "0xABC", "sub-1"),
        contract_address="0xabc",
        chain=ChainId.ETHEREUM,
        subscriber_id="sub-1",
        start_block=100,
        end_block=400,
    )
    session.chunks = [Chunk(0, 100, 200), Chunk(1, 200, 300), Chunk(2, 300, 400)]
    return session


def test_keys():
    assert session_key(ChainId.LISK, "0xABC", "sub") == "lisk:0xabc:sub"
    assert chunk_key("lisk:0xabc:sub", 500) == "lisk:0xabc:sub#500"


def test_chunk_metrics_round_trip_keeps_large_wei():
    metrics = ChunkMetrics(tx_count=2, total_value_wei=10**30, first_activity=5)
    data = metrics.to_dict()
    assert data["total_value_wei"] == str(10**30)
    assert ChunkMetrics.from_dict(data) == metrics
    assert ChunkMetrics.from_dict(None) == ChunkMetrics()


def test_session_metrics_merge():
    metrics = SessionMetrics()
    metrics.merge(ChunkMetrics(tx_count=2, total_value_wei=5, first_activity=20, last_activity=30), ["0x1", "0x2"], ["0xa"])
    metrics.merge(ChunkMetrics(tx_count=1, total_value_wei=7, first_activity=10, last_activity=25), ["0x3"], ["0xa", "0xb"])

    assert metrics.tx_count == 3
    assert metrics.total_value_wei == 12
    assert metrics.first_activity == 10
    assert metrics.last_activity == 30
    assert metrics.seen_tx_hashes == {"0x1", "0x2", "0x3"}
    assert metrics.snapshot()["unique_accounts"] == 2


def test_rebuild_uses_done_chunks_only():
    session = _session()
    first, second, _ = session.chunks
    first.status = ChunkStatus.DONE
    first.metrics = ChunkMetrics(tx_count=4)
    first.tx_hashes = ["0x1"]
    second.status = ChunkStatus.FETCHING
    second.metrics = ChunkMetrics(tx_count=9)

    metrics = SessionMetrics.rebuild(session.chunks)

    assert metrics.tx_count == 4
    assert metrics.seen_tx_hashes == {"0x1"}


def test_progress_and_cursor():
    session = _session()
    assert session.progress_percent == 0.0
    assert session.current_chunk_index == 0
    assert session.covered_until == 100

    session.chunks[0].status = ChunkStatus.DONE
    assert session.progress_percent == 33.33
    assert session.current_chunk_index == 1
    assert session.covered_until == 200

    for chunk in session.chunks:
        chunk.status = ChunkStatus.DONE
    assert session.progress_percent == 100.0
    assert session.current_chunk_index is None


def test_empty_range_progress():
    session = IndexingSession("s", "0xabc", ChainId.ETHEREUM, "sub", start_block=10, end_block=10)
    assert session.progress_percent == 100.0


def test_previous_done_chunk():
    session = _session()
    first, second, third = session.chunks
    assert session.previous_done_chunk(first) is None
    first.status = ChunkStatus.DONE
    assert session.previous_done_chunk(third) is first


def test_chunk_reset_keeps_attempts():
    chunk = Chunk(0, 0, 10, status=ChunkStatus.FETCHING, attempts=2, tx_hashes=["0x1"])
    chunk.reset()
    assert chunk.status == ChunkStatus.PENDING
    assert chunk.attempts == 2
    assert chunk.tx_hashes == []


def test_describe():
    session = _session()
    session.status = SessionStatus.RUNNING
    described = session.describe()
    assert described["session_id"] == "ethereum:0xabc:sub-1"
    assert described["status"] == "running"
    assert described["total_chunks"] == 3
    assert described["tier"] == "FREE"
    assert described["completed_at"] is None
