"""
Chunk boundary and content validation.

A chunk must start exactly where the previous DONE chunk ended (or at the
session start), the last chunk must end at the session end, its records must
lie inside its range in non-decreasing block order, and none of its
transactions may already belong to an earlier chunk.
"""

from collections import Counter
from typing import Set

import structlog

from onchain_indexer.models.session import Chunk, ChunkData, IndexingSession
from onchain_indexer.utils.blocks import from_hex
from onchain_indexer.utils.exceptions import BoundaryViolationKind, ValidationResult

logger = structlog.get_logger()


class BoundaryValidator:
    def validate(self, session: IndexingSession, chunk: Chunk, data: ChunkData) -> ValidationResult:
        result = self._check_seam(session, chunk)
        if result:
            result = self._check_records(session, chunk, data)
        if not result:
            logger.warning(
                "Chunk failed validation",
                session_id=session.session_id,
                start_block=chunk.start_block,
                end_block=chunk.end_block,
                kind=result.error_code,
                detail=result.error_message,
            )
        return result

    def _check_seam(self, session: IndexingSession, chunk: Chunk) -> ValidationResult:
        previous = session.previous_done_chunk(chunk)
        expected_start = previous.end_block if previous else session.start_block

        if chunk.start_block > expected_start:
            return ValidationResult.violation(
                BoundaryViolationKind.GAP,
                f"chunk starts at {chunk.start_block}, expected {expected_start} (blocks missing)",
            )
        if chunk.start_block < expected_start:
            return ValidationResult.violation(
                BoundaryViolationKind.OVERLAP,
                f"chunk starts at {chunk.start_block}, expected {expected_start} (blocks repeated)",
            )
        if chunk.end_block <= chunk.start_block:
            return ValidationResult.violation(
                BoundaryViolationKind.OUT_OF_RANGE, f"empty chunk [{chunk.start_block}, {chunk.end_block})"
            )
        if session.chunks and session.chunks[-1] is chunk and chunk.end_block != session.end_block:
            return ValidationResult.violation(
                BoundaryViolationKind.END_MISMATCH,
                f"last chunk ends at {chunk.end_block}, session ends at {session.end_block}",
            )
        return ValidationResult.ok()

    def _check_records(self, session: IndexingSession, chunk: Chunk, data: ChunkData) -> ValidationResult:
        last_block = None
        log_ids: Set[tuple] = set()
        for log in data.logs:
            block_number = from_hex(log.get("blockNumber"))
            if block_number is None or not chunk.start_block <= block_number < chunk.end_block:
                return ValidationResult.violation(
                    BoundaryViolationKind.OUT_OF_RANGE,
                    f"log at block {block_number} outside [{chunk.start_block}, {chunk.end_block})",
                )
            if last_block is not None and block_number < last_block:
                return ValidationResult.violation(
                    BoundaryViolationKind.NON_MONOTONIC_BLOCKS,
                    f"block {block_number} follows block {last_block}",
                )
            last_block = block_number

            log_id = ((log.get("transactionHash") or "").lower(), from_hex(log.get("logIndex")))
            if log_id in log_ids:
                return ValidationResult.violation(
                    BoundaryViolationKind.DUPLICATE_LOG, f"log {log_id[1]} of {log_id[0]} returned twice"
                )
            log_ids.add(log_id)

        duplicates = [h for h in data.tx_hashes if h in session.metrics.seen_tx_hashes]
        if duplicates:
            return ValidationResult.violation(
                BoundaryViolationKind.DUPLICATE_TRANSACTION,
                f"{len(duplicates)} transaction(s) already indexed, first {duplicates[0]}",
            )
        return ValidationResult.ok()

    def verify_tiling(self, session: IndexingSession) -> ValidationResult:
        """Check that the DONE chunks exactly tile ``[start_block, end_block)`` with no shared transactions."""
        done = sorted(session.done_chunks, key=lambda c: c.start_block)
        if not done:
            if session.start_block == session.end_block:
                return ValidationResult.ok()
            return ValidationResult.violation(BoundaryViolationKind.GAP, "no completed chunks")

        expected = session.start_block
        for chunk in done:
            if chunk.start_block > expected:
                return ValidationResult.violation(
                    BoundaryViolationKind.GAP, f"blocks [{expected}, {chunk.start_block}) not covered"
                )
            if chunk.start_block < expected:
                return ValidationResult.violation(
                    BoundaryViolationKind.OVERLAP, f"blocks [{chunk.start_block}, {expected}) covered twice"
                )
            expected = chunk.end_block

        if expected != session.end_block:
            return ValidationResult.violation(
                BoundaryViolationKind.END_MISMATCH, f"coverage ends at {expected}, session ends at {session.end_block}"
            )

        counts = Counter(h for chunk in done for h in chunk.tx_hashes)
        repeated = [h for h, n in counts.items() if n > 1]
        if repeated:
            return ValidationResult.violation(
                BoundaryViolationKind.DUPLICATE_TRANSACTION, f"{len(repeated)} transaction(s) in more than one chunk"
            )
        return ValidationResult.ok()
