"""
Monitoring and observability for the chunk indexer.

Tracks chunk processing times, throughput and error rates, and derives a health
status for the health endpoint.
"""

import threading
import time
import structlog
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from collections import deque


@dataclass
class HealthStatus:
    """Current health status of the indexer"""

    is_healthy: bool
    last_chunk_time: Optional[datetime]
    active_sessions: int
    error_rate: float
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class PerformanceMetrics:
    """Performance metrics for the indexer"""

    chunks_processed: int
    blocks_per_second: float
    transactions_per_second: float
    avg_chunk_processing_time: float
    error_rate: float
    uptime_seconds: float


class IndexerMonitor:
    """
    Monitor indexer health and performance.

    Fed by the chunk indexer after each chunk attempt.
    """

    def __init__(self, window: int = 1000, stale_after: timedelta = timedelta(minutes=30)):
        self.logger = structlog.get_logger()
        self.stale_after = stale_after

        self._start_time = time.time()
        self._chunk_processing_times = deque(maxlen=window)
        self._block_counts = deque(maxlen=window)
        self._transaction_counts = deque(maxlen=window)
        self._error_counts = deque(maxlen=window)

        self._last_chunk_processed: Optional[datetime] = None
        self._consecutive_errors = 0
        self._warnings = deque(maxlen=100)
        self._errors = deque(maxlen=100)
        self._active_sessions = set()
        self._lock = threading.Lock()

    def session_started(self, session_id: str) -> None:
        with self._lock:
            self._active_sessions.add(session_id)

    def session_finished(self, session_id: str) -> None:
        with self._lock:
            self._active_sessions.discard(session_id)

    def record_chunk_processed(
        self,
        session_id: str,
        start_block: int,
        end_block: int,
        processing_time: float,
        tx_count: int,
    ) -> None:
        with self._lock:
            self._chunk_processing_times.append(processing_time)
            self._block_counts.append(end_block - start_block)
            self._transaction_counts.append(tx_count)
            self._error_counts.append(0)
            self._last_chunk_processed = datetime.utcnow()
            self._consecutive_errors = 0

        self.logger.info(
            "Chunk processed",
            session_id=session_id,
            start_block=start_block,
            end_block=end_block,
            processing_time=round(processing_time, 3),
            tx_count=tx_count,
        )

    def record_chunk_failed(self, session_id: str, start_block: int, end_block: int, error: str) -> None:
        with self._lock:
            self._error_counts.append(1)
            self._consecutive_errors += 1
        self.add_error(
            "Chunk failed",
            {"session_id": session_id, "start_block": start_block, "end_block": end_block, "error": error},
        )

    def add_warning(self, message: str, context: Dict[str, Any] = None) -> None:
        """
        Add a warning to the monitoring system.

        Args:
            message: Warning message
            context: Additional context information
        """
        self._warnings.append({"timestamp": datetime.utcnow(), "message": message, "context": context or {}})
        self.logger.warning("Monitoring warning", message=message, context=context)

    def add_error(self, message: str, context: Dict[str, Any] = None) -> None:
        """
        Add an error to the monitoring system.

        Args:
            message: Error message
            context: Additional context information
        """
        self._errors.append({"timestamp": datetime.utcnow(), "message": message, "context": context or {}})
        self.logger.error("Monitoring error", message=message, context=context)

    def _error_rate(self) -> float:
        attempts = len(self._error_counts)
        return (sum(self._error_counts) / attempts) if attempts else 0.0

    def get_health_status(self) -> HealthStatus:
        with self._lock:
            error_rate = self._error_rate()
            consecutive_errors = self._consecutive_errors
            last_chunk = self._last_chunk_processed
            active_sessions = len(self._active_sessions)
            times = list(self._chunk_processing_times)

        is_healthy = True
        warnings = []
        errors = []

        if last_chunk and active_sessions:
            since_last = datetime.utcnow() - last_chunk
            if since_last > self.stale_after:
                is_healthy = False
                errors.append(f"No chunks processed in {since_last}")
            elif since_last > self.stale_after / 2:
                warnings.append(f"No chunks processed in {since_last}")

        if error_rate > 0.5:
            is_healthy = False
            errors.append(f"High error rate: {error_rate:.2%}")
        elif error_rate > 0.2:
            warnings.append(f"Elevated error rate: {error_rate:.2%}")

        if consecutive_errors > 10:
            is_healthy = False
            errors.append(f"Too many consecutive errors: {consecutive_errors}")
        elif consecutive_errors > 3:
            warnings.append(f"Multiple consecutive errors: {consecutive_errors}")

        if len(times) >= 10:
            recent_avg = sum(times[-10:]) / 10
            overall_avg = sum(times) / len(times)
            if recent_avg > overall_avg * 2:
                warnings.append(f"Performance degradation detected: {recent_avg:.2f}s vs {overall_avg:.2f}s avg")

        return HealthStatus(
            is_healthy=is_healthy,
            last_chunk_time=last_chunk,
            active_sessions=active_sessions,
            error_rate=error_rate,
            warnings=[w["message"] for w in list(self._warnings)[-10:]] + warnings,
            errors=[e["message"] for e in list(self._errors)[-10:]] + errors,
        )

    def get_performance_metrics(self) -> PerformanceMetrics:
        with self._lock:
            uptime = time.time() - self._start_time
            chunks = len(self._chunk_processing_times)
            blocks = sum(self._block_counts)
            transactions = sum(self._transaction_counts)
            avg_time = (sum(self._chunk_processing_times) / chunks) if chunks else 0.0
            error_rate = self._error_rate()

        return PerformanceMetrics(
            chunks_processed=chunks,
            blocks_per_second=blocks / uptime if uptime > 0 else 0.0,
            transactions_per_second=transactions / uptime if uptime > 0 else 0.0,
            avg_chunk_processing_time=avg_time,
            error_rate=error_rate,
            uptime_seconds=uptime,
        )

    def export_metrics(self) -> Dict[str, Any]:
        health = self.get_health_status()
        health_dict = asdict(health)
        if health.last_chunk_time:
            health_dict["last_chunk_time"] = health.last_chunk_time.isoformat()
        return {
            "timestamp": datetime.utcnow().isoformat(),
            "health": health_dict,
            "performance": asdict(self.get_performance_metrics()),
        }
