import random

import pytest

from onchain_indexer.config import ChainId
from onchain_indexer.models.session import Chunk, ChunkData, ChunkMetrics, ChunkStatus, IndexingSession
from onchain_indexer.services.boundary_validator import BoundaryValidator
from onchain_indexer.services.chunk_indexer import plan_chunks
from onchain_indexer.utils.exceptions import BoundaryViolationKind


def _session(start=0, end=400_000, boundaries=(0, 200_000, 400_000)):
    session = IndexingSession(
        session_id="ethereum:0xabc:sub",
        contract_address="0xabc",
        chain=ChainId.ETHEREUM,
        subscriber_id="sub",
        start_block=start,
        end_block=end,
    )
    session.chunks = [Chunk(i, a, b) for i, (a, b) in enumerate(zip(boundaries, boundaries[1:]))]
    return session


def _log(block, tx_hash, log_index=0):
    return {"blockNumber": hex(block), "transactionHash": tx_hash, "logIndex": hex(log_index)}


def _data(chunk, logs=(), tx_hashes=None):
    logs = list(logs)
    if tx_hashes is None:
        tx_hashes = list(dict.fromkeys(log["transactionHash"] for log in logs))
    return ChunkData(chunk.start_block, chunk.end_block, logs=logs, tx_hashes=tx_hashes)


def _complete(session, chunk, tx_hashes=()):
    chunk.status = ChunkStatus.DONE
    chunk.tx_hashes = list(tx_hashes)
    session.metrics.merge(ChunkMetrics(tx_count=len(tx_hashes)), tx_hashes, [])


@pytest.fixture
def validator():
    return BoundaryValidator()


def test_first_chunk_valid(validator):
    session = _session()
    chunk = session.chunks[0]
    result = validator.validate(session, chunk, _data(chunk, [_log(0, "0x1"), _log(199_999, "0x2")]))
    assert result.is_valid


def test_seam_transaction_lands_in_next_chunk(validator):
    session = _session()
    first, second = session.chunks
    assert validator.validate(session, first, _data(first, [_log(199_999, "0xa")]))
    _complete(session, first, ["0xa"])

    result = validator.validate(session, second, _data(second, [_log(200_000, "0xb")]))
    assert result.is_valid


def test_seam_block_in_first_chunk_is_out_of_range(validator):
    session = _session()
    first = session.chunks[0]
    result = validator.validate(session, first, _data(first, [_log(200_000, "0xb")]))
    assert not result
    assert result.kind == BoundaryViolationKind.OUT_OF_RANGE


def test_log_below_range(validator):
    session = _session()
    first, second = session.chunks
    _complete(session, first)
    result = validator.validate(session, second, _data(second, [_log(199_999, "0xb")]))
    assert result.kind == BoundaryViolationKind.OUT_OF_RANGE


def test_gap(validator):
    session = _session()
    first, second = session.chunks
    _complete(session, first)
    second.start_block = 200_001
    result = validator.validate(session, second, _data(second))
    assert result.kind == BoundaryViolationKind.GAP


def test_gap_when_previous_chunk_not_done(validator):
    session = _session()
    second = session.chunks[1]
    result = validator.validate(session, second, _data(second))
    assert result.kind == BoundaryViolationKind.GAP


def test_overlap(validator):
    session = _session()
    first, second = session.chunks
    _complete(session, first)
    second.start_block = 199_990
    result = validator.validate(session, second, _data(second))
    assert result.kind == BoundaryViolationKind.OVERLAP


def test_first_chunk_must_start_at_session_start(validator):
    session = _session(start=10, boundaries=(20, 200_000, 400_000))
    chunk = session.chunks[0]
    assert validator.validate(session, chunk, _data(chunk)).kind == BoundaryViolationKind.GAP


def test_last_chunk_end_mismatch(validator):
    session = _session()
    first, second = session.chunks
    _complete(session, first)
    second.end_block = 399_999
    result = validator.validate(session, second, _data(second))
    assert result.kind == BoundaryViolationKind.END_MISMATCH


def test_empty_chunk(validator):
    session = _session(start=0, end=0, boundaries=(0, 0))
    chunk = session.chunks[0]
    assert validator.validate(session, chunk, _data(chunk)).kind == BoundaryViolationKind.OUT_OF_RANGE


def test_duplicate_transaction_across_chunks(validator):
    session = _session()
    first, second = session.chunks
    _complete(session, first, ["0xa"])
    result = validator.validate(session, second, _data(second, [_log(250_000, "0xa")]))
    assert result.kind == BoundaryViolationKind.DUPLICATE_TRANSACTION


def test_duplicate_log(validator):
    session = _session()
    chunk = session.chunks[0]
    logs = [_log(10, "0xa", 0), _log(10, "0xA", 0)]
    result = validator.validate(session, chunk, _data(chunk, logs, ["0xa"]))
    assert result.kind == BoundaryViolationKind.DUPLICATE_LOG


def test_multiple_logs_of_one_transaction_allowed(validator):
    session = _session()
    chunk = session.chunks[0]
    logs = [_log(10, "0xa", 0), _log(10, "0xa", 1)]
    assert validator.validate(session, chunk, _data(chunk, logs))


def test_non_monotonic_blocks(validator):
    session = _session()
    chunk = session.chunks[0]
    result = validator.validate(session, chunk, _data(chunk, [_log(20, "0xa"), _log(10, "0xb")]))
    assert result.kind == BoundaryViolationKind.NON_MONOTONIC_BLOCKS


def test_verify_tiling(validator):
    session = _session()
    first, second = session.chunks
    _complete(session, first, ["0xa"])
    _complete(session, second, ["0xb"])
    assert validator.verify_tiling(session)


def test_verify_tiling_detects_missing_chunk(validator):
    session = _session()
    _complete(session, session.chunks[1])
    assert validator.verify_tiling(session).kind == BoundaryViolationKind.GAP


def test_verify_tiling_detects_short_coverage(validator):
    session = _session()
    _complete(session, session.chunks[0])
    assert validator.verify_tiling(session).kind == BoundaryViolationKind.END_MISMATCH


def test_verify_tiling_detects_shared_transactions(validator):
    session = _session()
    first, second = session.chunks
    _complete(session, first, ["0xa"])
    _complete(session, second, ["0xa"])
    assert validator.verify_tiling(session).kind == BoundaryViolationKind.DUPLICATE_TRANSACTION


def test_verify_tiling_empty_session(validator):
    session = _session(start=500, end=500, boundaries=(500,))
    assert session.chunks == []
    assert validator.verify_tiling(session)


def _random_ranges(seed=20240611, count=40):
    rng = random.Random(seed)
    cases = []
    for _ in range(count):
        start = rng.randrange(0, 2_000_000)
        length = rng.choice([0, 1, rng.randrange(2, 50), rng.randrange(50, 20_000)])
        chunk_size = rng.choice([rng.randrange(1, 10), rng.randrange(10, 1000), rng.randrange(1000, 50_000)])
        cases.append((start, start + length, chunk_size))
    return cases


@pytest.mark.parametrize(
    "start,end,chunk_size",
    [(0, 1, 1), (10, 11, 500), (100, 1000, 100), (100, 1001, 100), (7, 8, 1)] + _random_ranges(),
)
def test_planned_chunks_always_tile_the_range(validator, start, end, chunk_size):
    session = _session(start=start, end=end, boundaries=(start,))
    session.chunks = plan_chunks(start, end, chunk_size)

    assert [c.index for c in session.chunks] == list(range(len(session.chunks)))
    assert all(0 < c.end_block - c.start_block <= chunk_size for c in session.chunks)
    assert len(session.chunks) == -(-(end - start) // chunk_size)
    for chunk in session.chunks:
        _complete(session, chunk, [f"0x{chunk.index:x}"])

    assert validator.verify_tiling(session)

    if len(session.chunks) > 1:
        session.chunks[1].status = ChunkStatus.PENDING
        assert not validator.verify_tiling(session)
