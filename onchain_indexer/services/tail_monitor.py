"""
Incremental indexing of new blocks after a session's backfill completes.
"""

import threading
from enum import Enum
from typing import List, Optional

import structlog

from onchain_indexer.config import get_chain_config, settings
from onchain_indexer.models.session import Chunk, IndexingSession, SessionMetrics, SessionStatus
from onchain_indexer.services.chunk_indexer import ChunkIndexer
from onchain_indexer.services.provider_orchestrator import ProviderOrchestrator
from onchain_indexer.services.tier_range import TierRangeCalculator
from onchain_indexer.utils.exceptions import BoundaryViolation, IndexerError, SessionCancelled

logger = structlog.get_logger()


class TailOutcome(str, Enum):
    IDLE = "idle"  # head has not moved
    EXTENDED = "extended"
    RETRY = "retry"  # transient failure, try again next tick
    STOPPED = "stopped"  # downgrade, cancellation or not eligible


class TailMonitor:
    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        indexer: ChunkIndexer,
        calculator: TierRangeCalculator,
        polling_interval: float = None,
    ):
        self.orchestrator = orchestrator
        self.indexer = indexer
        self.calculator = calculator
        self.polling_interval = polling_interval or settings.POLLING_INTERVAL

    def _head(self, session: IndexingSession) -> int:
        return self.orchestrator.execute_with_failover(
            session.chain, lambda p: p.transport.get_block_number(), "eth_blockNumber"
        )

    def slide_window(self, session: IndexingSession, head: int) -> List[Chunk]:
        """
        Drop whole chunks that ended at or before ``head - window``.

        The newest chunk is always kept. The accumulator is rebuilt from the
        remaining chunks and ``start_block`` moves to the first of them.
        """
        window = session.historical_days * get_chain_config(session.chain).blocks_per_day
        cutoff = head - window
        dropped = []
        while len(session.chunks) > 1 and session.chunks[0].end_block <= cutoff:
            dropped.append(session.chunks.pop(0))

        if not dropped:
            return dropped

        for chunk in dropped:
            self.indexer.store.delete_chunk(session.session_id, chunk)
        session.start_block = session.chunks[0].start_block
        session.metrics = SessionMetrics.rebuild(session.chunks)
        logger.info(
            "Sliding window advanced",
            session_id=session.session_id,
            dropped_chunks=len(dropped),
            start_block=session.start_block,
            end_block=session.end_block,
        )
        return dropped

    def poll_once(self, session: IndexingSession, cancel_event: threading.Event = None) -> TailOutcome:
        if session.status != SessionStatus.COMPLETED:
            logger.warning("Tailing requires a completed session", session_id=session.session_id, status=session.status.value)
            return TailOutcome.STOPPED

        tier_config, degraded = self.calculator.resolve_tier(session.subscriber_id)
        if not tier_config.continuous_sync:
            session.continuous_sync = False
            session.tier_degraded = degraded
            self.indexer.store.save_session(session)
            self.indexer.emit(session, "tailing_stopped", message=f"tier {tier_config.name} has no continuous sync")
            logger.info(
                "Subscriber no longer eligible for continuous sync, tailing stopped",
                session_id=session.session_id,
                tier=tier_config.name,
                tier_degraded=degraded,
            )
            return TailOutcome.STOPPED
        if tier_config.historical_days != session.historical_days or tier_config.tier != session.tier:
            session.tier = tier_config.tier
            session.historical_days = tier_config.historical_days
            self.orchestrator.set_tier(tier_config.tier)

        try:
            head = self._head(session)
        except IndexerError as e:
            logger.warning("Chain head unavailable, retrying next tick", session_id=session.session_id, error=str(e))
            return TailOutcome.RETRY

        if head <= session.end_block:
            return TailOutcome.IDLE

        session.status = SessionStatus.TAILING
        self.indexer.store.save_session(session)
        try:
            self.indexer.process_tail_chunk(session, head, cancel_event)
        except BoundaryViolation:
            # Session already moved to ERROR
            return TailOutcome.STOPPED
        except SessionCancelled:
            session.status = SessionStatus.COMPLETED
            self.indexer.store.save_session(session)
            return TailOutcome.STOPPED
        except IndexerError as e:
            session.status = SessionStatus.COMPLETED
            session.last_error = str(e)
            self.indexer.store.save_session(session)
            self.indexer.emit(session, "tail_retry", message=str(e))
            logger.warning(
                "Tail chunk failed, retrying next tick",
                session_id=session.session_id,
                head=head,
                end_block=session.end_block,
                error=str(e),
            )
            return TailOutcome.RETRY

        self.slide_window(session, head)
        session.status = SessionStatus.COMPLETED
        session.last_error = None
        self.indexer.store.save_session(session)
        self.indexer.emit(session, "tail_extended")
        return TailOutcome.EXTENDED

    def run(self, session: IndexingSession, cancel_event: threading.Event, max_ticks: Optional[int] = None) -> None:
        """Poll every ``polling_interval`` seconds until stopped or cancelled."""
        ticks = 0
        logger.info("Tailing started", session_id=session.session_id, interval=self.polling_interval)
        while not cancel_event.is_set():
            outcome = self.poll_once(session, cancel_event)
            ticks += 1
            if outcome == TailOutcome.STOPPED:
                break
            if max_ticks is not None and ticks >= max_ticks:
                break
            if cancel_event.wait(self.polling_interval):
                break
        logger.info("Tailing finished", session_id=session.session_id, status=session.status.value, ticks=ticks)
