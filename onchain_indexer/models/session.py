"""
In-memory domain types for indexing sessions and their chunks.

Ranges are half-open: a chunk covers ``[start_block, end_block)`` and a session
covers ``[start_block, end_block)`` where ``end_block`` is the chain head at the
time the range was calculated.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from onchain_indexer.config import ChainId, SubscriptionTier


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"
    ERROR = "error"
    CANCELLED = "cancelled"
    TAILING = "tailing"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    VALIDATING = "validating"
    DONE = "done"
    ERROR = "error"


# Sessions in these states can be picked up again by a new start request
RESUMABLE_STATUSES = {SessionStatus.PENDING, SessionStatus.RUNNING, SessionStatus.STALLED, SessionStatus.CANCELLED}


def session_key(chain: ChainId, contract_address: str, subscriber_id: str) -> str:
    """One session per (chain, contract, subscriber)."""
    return f"{chain.value}:{contract_address.lower()}:{subscriber_id}"


def chunk_key(session_id: str, start_block: int) -> str:
    return f"{session_id}#{start_block}"


@dataclass
class ChunkMetrics:
    """Per-chunk metrics delta"""

    tx_count: int = 0
    log_count: int = 0
    failed_tx_count: int = 0
    total_value_wei: int = 0
    total_gas_used: int = 0
    unique_accounts: int = 0
    unique_blocks: int = 0
    first_activity: Optional[int] = None
    last_activity: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_count": self.tx_count,
            "log_count": self.log_count,
            "failed_tx_count": self.failed_tx_count,
            # wei values overflow JSON number precision in most consumers
            "total_value_wei": str(self.total_value_wei),
            "total_gas_used": self.total_gas_used,
            "unique_accounts": self.unique_accounts,
            "unique_blocks": self.unique_blocks,
            "first_activity": self.first_activity,
            "last_activity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChunkMetrics":
        data = data or {}
        return cls(
            tx_count=int(data.get("tx_count", 0)),
            log_count=int(data.get("log_count", 0)),
            failed_tx_count=int(data.get("failed_tx_count", 0)),
            total_value_wei=int(data.get("total_value_wei", 0)),
            total_gas_used=int(data.get("total_gas_used", 0)),
            unique_accounts=int(data.get("unique_accounts", 0)),
            unique_blocks=int(data.get("unique_blocks", 0)),
            first_activity=data.get("first_activity"),
            last_activity=data.get("last_activity"),
        )


@dataclass
class SessionMetrics:
    """Cumulative accumulator, the sum of every validated chunk delta"""

    tx_count: int = 0
    log_count: int = 0
    failed_tx_count: int = 0
    total_value_wei: int = 0
    total_gas_used: int = 0
    unique_blocks: int = 0
    first_activity: Optional[int] = None
    last_activity: Optional[int] = None
    unique_accounts: Set[str] = field(default_factory=set)
    seen_tx_hashes: Set[str] = field(default_factory=set)

    def merge(self, delta: ChunkMetrics, tx_hashes: Iterable[str], accounts: Iterable[str]) -> None:
        self.tx_count += delta.tx_count
        self.log_count += delta.log_count
        self.failed_tx_count += delta.failed_tx_count
        self.total_value_wei += delta.total_value_wei
        self.total_gas_used += delta.total_gas_used
        self.unique_blocks += delta.unique_blocks
        if delta.first_activity is not None:
            if self.first_activity is None or delta.first_activity < self.first_activity:
                self.first_activity = delta.first_activity
        if delta.last_activity is not None:
            if self.last_activity is None or delta.last_activity > self.last_activity:
                self.last_activity = delta.last_activity
        self.seen_tx_hashes.update(tx_hashes)
        self.unique_accounts.update(accounts)

    @classmethod
    def rebuild(cls, chunks: Iterable["Chunk"]) -> "SessionMetrics":
        """Recompute the accumulator from persisted DONE chunks."""
        metrics = cls()
        for chunk in chunks:
            if chunk.status == ChunkStatus.DONE:
                metrics.merge(chunk.metrics, chunk.tx_hashes, chunk.accounts)
        return metrics

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tx_count": self.tx_count,
            "log_count": self.log_count,
            "failed_tx_count": self.failed_tx_count,
            "total_value_wei": str(self.total_value_wei),
            "total_gas_used": self.total_gas_used,
            "unique_accounts": len(self.unique_accounts),
            "unique_blocks": self.unique_blocks,
            "first_activity": self.first_activity,
            "last_activity": self.last_activity,
        }


@dataclass
class Chunk:
    index: int
    start_block: int
    end_block: int
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = 0
    metrics: ChunkMetrics = field(default_factory=ChunkMetrics)
    # Identifiers retained after the raw records are discarded
    tx_hashes: List[str] = field(default_factory=list)
    accounts: List[str] = field(default_factory=list)
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def size(self) -> int:
        return self.end_block - self.start_block

    def reset(self) -> None:
        self.status = ChunkStatus.PENDING
        self.metrics = ChunkMetrics()
        self.tx_hashes = []
        self.accounts = []
        self.completed_at = None

    def describe(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "start_block": self.start_block,
            "end_block": self.end_block,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class ChunkData:
    """Raw records fetched for one chunk. Discarded once the chunk is merged."""

    start_block: int
    end_block: int
    logs: List[Dict[str, Any]] = field(default_factory=list)
    transactions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    receipts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tx_hashes: List[str] = field(default_factory=list)
    accounts: Set[str] = field(default_factory=set)
    blocks: Set[int] = field(default_factory=set)
    metrics: ChunkMetrics = field(default_factory=ChunkMetrics)


@dataclass
class IndexingSession:
    session_id: str
    contract_address: str
    chain: ChainId
    subscriber_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    historical_days: int = 30
    continuous_sync: bool = False
    tier_degraded: bool = False
    deployment_block: int = 0
    deployment_exact: bool = True
    start_block: int = 0
    end_block: int = 0
    status: SessionStatus = SessionStatus.PENDING
    chunks: List[Chunk] = field(default_factory=list)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def done_chunks(self) -> List[Chunk]:
        return [c for c in self.chunks if c.status == ChunkStatus.DONE]

    @property
    def covered_until(self) -> int:
        """End of the contiguous DONE prefix"""
        covered = self.start_block
        for chunk in self.chunks:
            if chunk.status != ChunkStatus.DONE:
                break
            covered = chunk.end_block
        return covered

    @property
    def current_chunk_index(self) -> Optional[int]:
        for chunk in self.chunks:
            if chunk.status != ChunkStatus.DONE:
                return chunk.index
        return None

    @property
    def progress_percent(self) -> float:
        total = self.end_block - self.start_block
        if total <= 0:
            return 100.0 if self.status == SessionStatus.COMPLETED or not self.chunks else 0.0
        done = sum(c.size for c in self.done_chunks)
        return round(min(100.0, done * 100.0 / total), 2)

    def previous_done_chunk(self, chunk: Chunk) -> Optional[Chunk]:
        previous = None
        for candidate in self.chunks:
            if candidate is chunk:
                break
            if candidate.status == ChunkStatus.DONE:
                previous = candidate
        return previous

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()

    def describe(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "contract_address": self.contract_address,
            "chain": self.chain.value,
            "subscriber_id": self.subscriber_id,
            "tier": self.tier.name,
            "historical_days": self.historical_days,
            "continuous_sync": self.continuous_sync,
            "tier_degraded": self.tier_degraded,
            "deployment_block": self.deployment_block,
            "deployment_exact": self.deployment_exact,
            "start_block": self.start_block,
            "end_block": self.end_block,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "current_chunk_index": self.current_chunk_index,
            "total_chunks": len(self.chunks),
            "metrics": self.metrics.snapshot(),
            "last_error": self.last_error,
            "error_kind": self.error_kind,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
