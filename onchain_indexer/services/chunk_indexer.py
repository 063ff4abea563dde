"""
Chunked, resumable indexing of a session's block range.

Chunks are processed in ascending order so the DONE chunks always form a
contiguous prefix of the range. A chunk is merged into the session accumulator
and checkpointed only after it passes validation.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional

import structlog

from onchain_indexer.config import settings
from onchain_indexer.models.session import (
    Chunk,
    ChunkData,
    ChunkStatus,
    IndexingSession,
    SessionMetrics,
    SessionStatus,
)
from onchain_indexer.services.boundary_validator import BoundaryValidator
from onchain_indexer.services.contract_fetcher import ContractFetcher
from onchain_indexer.services.error_handler import ErrorHandler
from onchain_indexer.services.monitoring import IndexerMonitor
from onchain_indexer.services.notifications import ProgressChannel, ProgressEvent
from onchain_indexer.services.provider_orchestrator import ProviderOrchestrator
from onchain_indexer.services.session_store import RecordStore
from onchain_indexer.utils.exceptions import BoundaryViolation, SessionCancelled, SessionStalled

logger = structlog.get_logger()


def plan_chunks(start_block: int, end_block: int, chunk_size: int, first_index: int = 0) -> List[Chunk]:
    """Partition ``[start_block, end_block)`` into consecutive chunks of ``chunk_size`` blocks."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    chunks = []
    index = first_index
    for chunk_start in range(start_block, end_block, chunk_size):
        chunks.append(Chunk(index=index, start_block=chunk_start, end_block=min(chunk_start + chunk_size, end_block)))
        index += 1
    return chunks


class _AnyEvent:
    """Set when either of two events is set"""

    def __init__(self, first: threading.Event, second: threading.Event):
        self.first = first
        self.second = second

    def is_set(self) -> bool:
        return self.first.is_set() or self.second.is_set()


class ChunkIndexer:
    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        store: RecordStore,
        channel: ProgressChannel,
        validator: BoundaryValidator = None,
        error_handler: ErrorHandler = None,
        monitor: IndexerMonitor = None,
        chunk_size: int = None,
        chunk_timeout: float = None,
        max_concurrent_chunks: int = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.channel = channel
        self.validator = validator or BoundaryValidator()
        self.error_handler = error_handler or ErrorHandler()
        self.monitor = monitor or IndexerMonitor()
        self.chunk_size = chunk_size or settings.CHUNK_SIZE
        self.chunk_timeout = chunk_timeout or settings.CHUNK_TIMEOUT
        self.max_concurrent_chunks = max_concurrent_chunks or settings.MAX_CONCURRENT_CHUNKS

    def fetcher_for(self, session: IndexingSession) -> ContractFetcher:
        return ContractFetcher(self.orchestrator, session.chain, session.tier)

    def plan_chunks(self, session: IndexingSession) -> List[Chunk]:
        if not session.chunks:
            session.chunks = plan_chunks(session.start_block, session.end_block, self.chunk_size)
            logger.info(
                "Session range partitioned",
                session_id=session.session_id,
                start_block=session.start_block,
                end_block=session.end_block,
                chunks=len(session.chunks),
                chunk_size=self.chunk_size,
            )
        return session.chunks

    def emit(self, session: IndexingSession, step: str, chunk: Optional[Chunk] = None, message: str = None) -> None:
        event = ProgressEvent(
            session_id=session.session_id,
            progress_percent=session.progress_percent,
            step=step,
            metrics_snapshot=session.metrics.snapshot(),
            status=session.status.value,
            chunk_index=chunk.index if chunk else session.current_chunk_index,
            total_chunks=len(session.chunks),
            message=message,
        )
        self.channel.publish(event)

    def _save_session(self, session: IndexingSession) -> None:
        session.touch()
        self.store.save_session(session)

    def _set_chunk_status(self, session: IndexingSession, chunk: Chunk, status: ChunkStatus) -> None:
        chunk.status = status
        self.store.save_chunk(session.session_id, chunk)
        self.emit(session, f"chunk_{status.value}", chunk)

    def _prepare_resume(self, session: IndexingSession) -> None:
        resumed = 0
        for chunk in session.chunks:
            if chunk.status != ChunkStatus.DONE:
                if chunk.status != ChunkStatus.PENDING:
                    resumed += 1
                chunk.reset()
                chunk.attempts = 0
                chunk.error = None
        session.metrics = SessionMetrics.rebuild(session.chunks)
        session.last_error = None
        session.error_kind = None
        if session.done_chunks:
            logger.info(
                "Resuming session",
                session_id=session.session_id,
                done_chunks=len(session.done_chunks),
                total_chunks=len(session.chunks),
                resume_from=session.covered_until,
                reset_chunks=resumed,
            )

    def index(self, session: IndexingSession, cancel_event: threading.Event = None) -> IndexingSession:
        """
        Run the session to completion.

        Raises:
            BoundaryViolation: Session is left in ERROR
            SessionStalled: A chunk ran out of retries; session is left STALLED
            SessionCancelled: Session is left CANCELLED
        """
        cancel_event = cancel_event or threading.Event()
        fresh_plan = not session.chunks
        self.plan_chunks(session)
        self._prepare_resume(session)
        if fresh_plan:
            for chunk in session.chunks:
                self.store.save_chunk(session.session_id, chunk)

        session.status = SessionStatus.RUNNING
        self._save_session(session)
        self.emit(session, "started")
        self.monitor.session_started(session.session_id)

        fetcher = self.fetcher_for(session)
        pending = [c for c in session.chunks if c.status != ChunkStatus.DONE]
        try:
            if self.max_concurrent_chunks > 1 and len(pending) > 1:
                self._run_with_prefetch(session, pending, fetcher, cancel_event)
            else:
                for chunk in pending:
                    if cancel_event.is_set():
                        raise SessionCancelled(f"Session {session.session_id} cancelled")
                    self._run_chunk(session, chunk, fetcher, cancel_event)
        except SessionCancelled:
            session.status = SessionStatus.CANCELLED
            self._save_session(session)
            self.emit(session, "cancelled")
            logger.info("Session cancelled", session_id=session.session_id, covered_until=session.covered_until)
            raise
        finally:
            self.monitor.session_finished(session.session_id)

        result = self.validator.verify_tiling(session)
        if not result:
            self._fail_session(session, BoundaryViolation.from_result(result))

        session.status = SessionStatus.COMPLETED
        session.completed_at = datetime.utcnow()
        self._save_session(session)
        self.emit(session, "completed")
        logger.info(
            "Session completed",
            session_id=session.session_id,
            start_block=session.start_block,
            end_block=session.end_block,
            **session.metrics.snapshot(),
        )
        return session

    def _run_with_prefetch(self, session, pending: List[Chunk], fetcher: ContractFetcher, cancel_event) -> None:
        """Fetch up to ``max_concurrent_chunks`` chunks ahead; validate and commit strictly in order."""
        stop = threading.Event()
        either = _AnyEvent(cancel_event, stop)
        futures = {}
        with ThreadPoolExecutor(max_workers=self.max_concurrent_chunks, thread_name_prefix="chunk-prefetch") as pool:
            try:
                for position, chunk in enumerate(pending):
                    for ahead in pending[position : position + self.max_concurrent_chunks]:
                        if ahead.index not in futures:
                            futures[ahead.index] = pool.submit(self._fetch_data, session, ahead, fetcher, either)
                    if cancel_event.is_set():
                        raise SessionCancelled(f"Session {session.session_id} cancelled")
                    self._run_chunk(session, chunk, fetcher, cancel_event, prefetched=futures.pop(chunk.index))
            finally:
                stop.set()
                for future in futures.values():
                    future.cancel()

    def _fetch_data(self, session: IndexingSession, chunk: Chunk, fetcher: ContractFetcher, cancel_event) -> ChunkData:
        deadline = time.monotonic() + self.chunk_timeout
        return fetcher.fetch_chunk(
            session.contract_address, chunk.start_block, chunk.end_block, cancel_event=cancel_event, deadline=deadline
        )

    def _run_chunk(
        self,
        session: IndexingSession,
        chunk: Chunk,
        fetcher: ContractFetcher,
        cancel_event: threading.Event,
        prefetched: Optional[Future] = None,
    ) -> None:
        attempt = 0
        while True:
            attempt += 1
            chunk.attempts += 1
            started = time.monotonic()
            try:
                self._set_chunk_status(session, chunk, ChunkStatus.FETCHING)
                if prefetched is not None:
                    future, prefetched = prefetched, None
                    data = future.result()
                else:
                    data = self._fetch_data(session, chunk, fetcher, cancel_event)
                self._commit(session, chunk, data)
                self.monitor.record_chunk_processed(
                    session.session_id, chunk.start_block, chunk.end_block, time.monotonic() - started, chunk.metrics.tx_count
                )
                return
            except SessionCancelled:
                chunk.reset()
                self.store.save_chunk(session.session_id, chunk)
                raise
            except BoundaryViolation:
                raise
            except Exception as e:
                context = {
                    "session_id": session.session_id,
                    "chunk_index": chunk.index,
                    "start_block": chunk.start_block,
                    "end_block": chunk.end_block,
                    "attempt": attempt,
                }
                self.monitor.record_chunk_failed(session.session_id, chunk.start_block, chunk.end_block, str(e))
                chunk.error = str(e)
                if not self.error_handler.handle_chunk_error(e, context):
                    chunk.status = ChunkStatus.ERROR
                    self.store.save_chunk(session.session_id, chunk)
                    session.status = SessionStatus.FAILED
                    session.last_error = str(e)
                    self._save_session(session)
                    raise

                if not self.error_handler.should_retry(attempt):
                    chunk.status = ChunkStatus.ERROR
                    self.store.save_chunk(session.session_id, chunk)
                    session.status = SessionStatus.STALLED
                    session.last_error = str(e)
                    self._save_session(session)
                    self.emit(session, "stalled", chunk, message=str(e))
                    logger.error(
                        "Chunk retries exhausted, session stalled",
                        session_id=session.session_id,
                        chunk_index=chunk.index,
                        start_block=chunk.start_block,
                        end_block=chunk.end_block,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise SessionStalled(session.session_id, chunk.index, str(e)) from e

                chunk.reset()
                self.store.save_chunk(session.session_id, chunk)
                self.monitor.add_warning("Chunk retry scheduled", {**context, "error": str(e)})
                self.emit(session, "chunk_retry", chunk, message=str(e))
                if cancel_event.wait(self.error_handler.get_retry_delay(attempt)):
                    raise SessionCancelled(f"Session {session.session_id} cancelled during retry backoff")

    def _commit(self, session: IndexingSession, chunk: Chunk, data: ChunkData) -> None:
        self._set_chunk_status(session, chunk, ChunkStatus.VALIDATING)
        result = self.validator.validate(session, chunk, data)
        if not result:
            chunk.status = ChunkStatus.ERROR
            chunk.error = result.error_message
            self.store.save_chunk(session.session_id, chunk)
            self._fail_session(session, BoundaryViolation.from_result(result, (chunk.start_block, chunk.end_block)))

        chunk.metrics = data.metrics
        chunk.tx_hashes = list(data.tx_hashes)
        chunk.accounts = sorted(data.accounts)
        chunk.error = None
        chunk.completed_at = datetime.utcnow()
        session.metrics.merge(data.metrics, data.tx_hashes, data.accounts)
        chunk.status = ChunkStatus.DONE
        self.store.save_chunk(session.session_id, chunk)
        self._save_session(session)
        self.emit(session, "chunk_done", chunk)

    def _fail_session(self, session: IndexingSession, violation: BoundaryViolation) -> None:
        session.status = SessionStatus.ERROR
        session.error_kind = violation.kind.value
        session.last_error = str(violation)
        self._save_session(session)
        self.emit(session, "error", message=str(violation))
        logger.error(
            "Session halted on boundary violation",
            session_id=session.session_id,
            kind=violation.kind.value,
            chunk_range=violation.chunk_range,
            error=str(violation),
        )
        raise violation

    def process_tail_chunk(
        self, session: IndexingSession, new_head: int, cancel_event: threading.Event = None
    ) -> Optional[Chunk]:
        """
        Index ``[end_block, new_head)`` as one new chunk.

        On a fetch failure the chunk is discarded and ``end_block`` restored so the
        next attempt starts from the same place. A boundary violation leaves the
        session in ERROR.
        """
        if new_head <= session.end_block:
            return None

        cancel_event = cancel_event or threading.Event()
        previous_end = session.end_block
        next_index = session.chunks[-1].index + 1 if session.chunks else 0
        chunk = Chunk(index=next_index, start_block=previous_end, end_block=new_head)
        session.chunks.append(chunk)
        session.end_block = new_head
        started = time.monotonic()

        try:
            chunk.attempts = 1
            self._set_chunk_status(session, chunk, ChunkStatus.FETCHING)
            data = self._fetch_data(session, chunk, self.fetcher_for(session), cancel_event)
        except Exception as e:
            session.chunks.remove(chunk)
            session.end_block = previous_end
            self.store.delete_chunk(session.session_id, chunk)
            if not isinstance(e, SessionCancelled):
                self.monitor.record_chunk_failed(session.session_id, chunk.start_block, chunk.end_block, str(e))
            raise

        self._commit(session, chunk, data)
        self.monitor.record_chunk_processed(
            session.session_id, chunk.start_block, chunk.end_block, time.monotonic() - started, chunk.metrics.tx_count
        )
        return chunk
