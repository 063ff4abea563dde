"""
Persistence of indexing sessions and chunk checkpoints.

The store only needs atomic single-key writes: one session row per session id
and one chunk row per chunk id. A session's writes always come from the single
thread running that session.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from onchain_indexer.config import SubscriptionTier, parse_chain
from onchain_indexer.models.records import ChunkRecord, IndexingSessionRecord
from onchain_indexer.models.session import (
    Chunk,
    ChunkMetrics,
    ChunkStatus,
    IndexingSession,
    SessionMetrics,
    SessionStatus,
    chunk_key,
)

logger = structlog.get_logger()


class RecordStore(ABC):
    @abstractmethod
    def save_session(self, session: IndexingSession) -> None:
        """Create or update the session row (chunks are written separately)"""

    @abstractmethod
    def save_chunk(self, session_id: str, chunk: Chunk) -> None:
        """Create or update one chunk row"""

    @abstractmethod
    def delete_chunk(self, session_id: str, chunk: Chunk) -> None:
        pass

    @abstractmethod
    def load_session(self, session_id: str) -> Optional[IndexingSession]:
        """Read a session with its chunks ordered by start block, or None"""

    @abstractmethod
    def list_sessions(self, status: Optional[SessionStatus] = None) -> List[str]:
        pass

    def save_all(self, session: IndexingSession) -> None:
        self.save_session(session)
        for chunk in session.chunks:
            self.save_chunk(session.session_id, chunk)


def _session_from_record(record: IndexingSessionRecord, chunk_records: List[ChunkRecord]) -> IndexingSession:
    chunks = [
        Chunk(
            index=c.chunk_index,
            start_block=c.start_block,
            end_block=c.end_block,
            status=ChunkStatus(c.status),
            attempts=c.attempts or 0,
            metrics=ChunkMetrics.from_dict(c.metrics),
            tx_hashes=list(c.tx_hashes or []),
            accounts=list(c.accounts or []),
            error=c.error,
            completed_at=c.completed_at,
        )
        for c in sorted(chunk_records, key=lambda c: c.start_block)
    ]
    session = IndexingSession(
        session_id=record.session_id,
        contract_address=record.contract_address,
        chain=parse_chain(record.chain),
        subscriber_id=record.subscriber_id,
        tier=SubscriptionTier(record.tier),
        historical_days=record.historical_days,
        continuous_sync=record.continuous_sync,
        tier_degraded=record.tier_degraded,
        deployment_block=record.deployment_block,
        deployment_exact=record.deployment_exact,
        start_block=record.start_block,
        end_block=record.end_block,
        status=SessionStatus(record.status),
        chunks=chunks,
        last_error=record.last_error,
        error_kind=record.error_kind,
        completed_at=record.completed_at,
    )
    if record.created_at:
        session.created_at = record.created_at
    if record.updated_at:
        session.updated_at = record.updated_at
    session.metrics = SessionMetrics.rebuild(chunks)
    return session


class SqlRecordStore(RecordStore):
    """SQLAlchemy-backed store. Each write runs in its own short-lived session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _write(self, record, context: Dict[str, str]) -> None:
        db = self.session_factory()
        try:
            db.merge(record)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Record store write failed", error=str(e), **context)
            raise
        finally:
            db.close()

    def save_session(self, session: IndexingSession) -> None:
        record = IndexingSessionRecord(
            session_id=session.session_id,
            contract_address=session.contract_address,
            chain=session.chain.value,
            subscriber_id=session.subscriber_id,
            tier=int(session.tier),
            historical_days=session.historical_days,
            continuous_sync=session.continuous_sync,
            tier_degraded=session.tier_degraded,
            deployment_block=session.deployment_block,
            deployment_exact=session.deployment_exact,
            start_block=session.start_block,
            end_block=session.end_block,
            status=session.status.value,
            metrics=session.metrics.snapshot(),
            last_error=session.last_error,
            error_kind=session.error_kind,
            created_at=session.created_at,
            updated_at=session.updated_at,
            completed_at=session.completed_at,
        )
        self._write(record, {"session_id": session.session_id})

    def save_chunk(self, session_id: str, chunk: Chunk) -> None:
        record = ChunkRecord(
            chunk_id=chunk_key(session_id, chunk.start_block),
            session_id=session_id,
            chunk_index=chunk.index,
            start_block=chunk.start_block,
            end_block=chunk.end_block,
            status=chunk.status.value,
            attempts=chunk.attempts,
            metrics=chunk.metrics.to_dict(),
            tx_hashes=list(chunk.tx_hashes),
            accounts=list(chunk.accounts),
            error=chunk.error,
            completed_at=chunk.completed_at,
        )
        self._write(record, {"session_id": session_id, "chunk_start": str(chunk.start_block)})

    def delete_chunk(self, session_id: str, chunk: Chunk) -> None:
        db = self.session_factory()
        try:
            db.query(ChunkRecord).filter_by(chunk_id=chunk_key(session_id, chunk.start_block)).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Record store delete failed", session_id=session_id, chunk_start=chunk.start_block, error=str(e))
            raise
        finally:
            db.close()

    def load_session(self, session_id: str) -> Optional[IndexingSession]:
        db = self.session_factory()
        try:
            record = db.query(IndexingSessionRecord).filter_by(session_id=session_id).first()
            if record is None:
                return None
            chunk_records = db.query(ChunkRecord).filter_by(session_id=session_id).all()
            return _session_from_record(record, chunk_records)
        finally:
            db.close()

    def list_sessions(self, status: Optional[SessionStatus] = None) -> List[str]:
        db = self.session_factory()
        try:
            query = db.query(IndexingSessionRecord.session_id)
            if status is not None:
                query = query.filter(IndexingSessionRecord.status == status.value)
            return [row[0] for row in query.all()]
        finally:
            db.close()


class MemoryRecordStore(RecordStore):
    """Process-local store. Stores deep copies so callers cannot mutate saved state."""

    def __init__(self):
        self._sessions: Dict[str, IndexingSession] = {}
        self._chunks: Dict[str, Dict[str, Chunk]] = {}
        self._lock = threading.Lock()
        self.writes = 0

    def save_session(self, session: IndexingSession) -> None:
        snapshot = copy.copy(session)
        snapshot.chunks = []
        snapshot.metrics = SessionMetrics()
        with self._lock:
            self._sessions[session.session_id] = snapshot
            self.writes += 1

    def save_chunk(self, session_id: str, chunk: Chunk) -> None:
        with self._lock:
            self._chunks.setdefault(session_id, {})[chunk_key(session_id, chunk.start_block)] = copy.deepcopy(chunk)
            self.writes += 1

    def delete_chunk(self, session_id: str, chunk: Chunk) -> None:
        with self._lock:
            self._chunks.get(session_id, {}).pop(chunk_key(session_id, chunk.start_block), None)

    def load_session(self, session_id: str) -> Optional[IndexingSession]:
        with self._lock:
            stored = self._sessions.get(session_id)
            if stored is None:
                return None
            session = copy.copy(stored)
            chunks = [copy.deepcopy(c) for c in self._chunks.get(session_id, {}).values()]
        session.chunks = sorted(chunks, key=lambda c: c.start_block)
        session.metrics = SessionMetrics.rebuild(session.chunks)
        return session

    def list_sessions(self, status: Optional[SessionStatus] = None) -> List[str]:
        with self._lock:
            return [sid for sid, s in self._sessions.items() if status is None or s.status == status]
