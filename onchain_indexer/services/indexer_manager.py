"""
Background session management.

One worker thread per (chain, contract, subscriber). A second start request for
a running key attaches to the running session's progress stream instead of
spawning a duplicate.
"""

import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from onchain_indexer.config import ChainId, SubscriptionTier, parse_chain
from onchain_indexer.models.session import RESUMABLE_STATUSES, IndexingSession, SessionStatus, session_key
from onchain_indexer.services.chunk_indexer import ChunkIndexer
from onchain_indexer.services.deployment_locator import DeploymentLocator
from onchain_indexer.services.monitoring import IndexerMonitor
from onchain_indexer.services.notifications import (
    FanoutProgressChannel,
    InMemoryProgressChannel,
    ProgressChannel,
    ProgressEvent,
)
from onchain_indexer.services.provider_orchestrator import ProviderOrchestrator, build_orchestrator
from onchain_indexer.services.session_store import RecordStore
from onchain_indexer.services.tail_monitor import TailMonitor
from onchain_indexer.services.tier_range import TierRangeCalculator
from onchain_indexer.utils.blocks import normalize_address
from onchain_indexer.utils.exceptions import BoundaryViolation, SessionCancelled, SessionStalled
from onchain_indexer.utils.logging import bind_session_context, clear_session_context

logger = structlog.get_logger()

OrchestratorFactory = Callable[[ChainId, SubscriptionTier], ProviderOrchestrator]


def default_orchestrator_factory(chain: ChainId, tier: SubscriptionTier) -> ProviderOrchestrator:
    return build_orchestrator([chain], tier)


@dataclass
class SessionHandle:
    session_id: str
    attached: bool
    events: queue.Queue


@dataclass
class _Worker:
    session_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    session: Optional[IndexingSession] = None
    orchestrator: Optional[ProviderOrchestrator] = None


class IndexerManager:
    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        store: RecordStore,
        calculator: TierRangeCalculator,
        locator: DeploymentLocator,
        progress_hub: InMemoryProgressChannel = None,
        extra_channels: Optional[List[ProgressChannel]] = None,
        orchestrator_factory: Optional[OrchestratorFactory] = None,
        monitor: IndexerMonitor = None,
        indexer_options: Optional[Dict[str, Any]] = None,
        polling_interval: float = None,
        enable_tailing: bool = True,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.calculator = calculator
        self.locator = locator
        self.progress_hub = progress_hub or InMemoryProgressChannel()
        self.channel: ProgressChannel = (
            FanoutProgressChannel([self.progress_hub] + list(extra_channels)) if extra_channels else self.progress_hub
        )
        self.orchestrator_factory = orchestrator_factory or default_orchestrator_factory
        self.monitor = monitor or IndexerMonitor()
        self.indexer_options = dict(indexer_options or {})
        self.polling_interval = polling_interval
        self.enable_tailing = enable_tailing
        self._workers: Dict[str, _Worker] = {}
        self._lock = threading.Lock()

    def start_session(
        self, contract_address: str, chain: Any, subscriber_id: str, restart: bool = False
    ) -> SessionHandle:
        """
        Start (or resume) indexing, or attach to the running session for the same key.

        Raises:
            ValueError: On an invalid address or unsupported chain
        """
        chain_id = parse_chain(chain)
        address = normalize_address(contract_address)
        session_id = session_key(chain_id, address, subscriber_id)

        with self._lock:
            worker = self._workers.get(session_id)
            if worker and worker.thread and worker.thread.is_alive():
                logger.info("Attaching to running session", session_id=session_id)
                return SessionHandle(session_id, True, self.progress_hub.subscribe(session_id))

            worker = _Worker(session_id)
            events = self.progress_hub.subscribe(session_id)
            worker.thread = threading.Thread(
                target=self._run,
                args=(worker, address, chain_id, subscriber_id, restart),
                name=f"session-{session_id}",
                daemon=True,
            )
            self._workers[session_id] = worker
            worker.thread.start()

        logger.info("Session worker started", session_id=session_id, restart=restart)
        return SessionHandle(session_id, False, events)

    def _new_session(self, session_id: str, address: str, chain: ChainId, subscriber_id: str) -> IndexingSession:
        head = self.orchestrator.execute_with_failover(
            chain, lambda p: p.transport.get_block_number(), "eth_blockNumber"
        )
        deployment = self.locator.find_deployment_block(address, chain)
        deployment_block = min(deployment.block, head)
        block_range = self.calculator.calculate_range(subscriber_id, chain, deployment_block, head)
        session = IndexingSession(
            session_id=session_id,
            contract_address=address,
            chain=chain,
            subscriber_id=subscriber_id,
            tier=block_range.tier,
            historical_days=block_range.historical_days,
            continuous_sync=block_range.continuous_sync,
            tier_degraded=block_range.tier_degraded,
            deployment_block=deployment_block,
            deployment_exact=deployment.exact,
            start_block=block_range.start_block,
            end_block=block_range.end_block,
        )
        self.store.save_session(session)
        return session

    def _load_or_create(self, worker: _Worker, address: str, chain: ChainId, subscriber_id: str, restart: bool):
        session = self.store.load_session(worker.session_id)
        if session is not None and not restart:
            if session.status in (SessionStatus.ERROR, SessionStatus.FAILED):
                logger.warning(
                    "Session halted, restart required",
                    session_id=worker.session_id,
                    status=session.status.value,
                    last_error=session.last_error,
                )
                return session
            if session.status == SessionStatus.TAILING:
                session.status = SessionStatus.COMPLETED
            return session

        if session is not None:
            for chunk in session.chunks:
                self.store.delete_chunk(worker.session_id, chunk)
            logger.info("Restarting session from scratch", session_id=worker.session_id, previous=session.status.value)
        return self._new_session(worker.session_id, address, chain, subscriber_id)

    def _run(self, worker: _Worker, address: str, chain: ChainId, subscriber_id: str, restart: bool) -> None:
        bind_session_context(session_id=worker.session_id, chain=chain.value)
        session = None
        try:
            session = self._load_or_create(worker, address, chain, subscriber_id, restart)
            worker.session = session
            if session.status in (SessionStatus.ERROR, SessionStatus.FAILED):
                return

            worker.orchestrator = self.orchestrator_factory(chain, session.tier)
            if worker.orchestrator is not self.orchestrator:
                # Stopped by close() when the worker exits
                worker.orchestrator.start_health_checks()
            indexer = ChunkIndexer(worker.orchestrator, self.store, self.channel, monitor=self.monitor, **self.indexer_options)

            if session.status in RESUMABLE_STATUSES:
                indexer.index(session, worker.cancel_event)

            if self.enable_tailing and session.continuous_sync and session.status == SessionStatus.COMPLETED:
                tail = TailMonitor(worker.orchestrator, indexer, self.calculator, self.polling_interval)
                tail.run(session, worker.cancel_event)
        except (SessionCancelled, SessionStalled, BoundaryViolation) as e:
            # State already persisted by the indexer
            logger.info("Session worker stopped", session_id=worker.session_id, reason=type(e).__name__)
        except Exception as e:
            logger.error("Session failed", session_id=worker.session_id, error=str(e), exc_info=True)
            if session is not None:
                session.status = SessionStatus.FAILED
                session.last_error = str(e)
                session.touch()
                self.store.save_session(session)
            self.channel.publish(
                ProgressEvent(
                    session_id=worker.session_id,
                    progress_percent=session.progress_percent if session else 0.0,
                    step="failed",
                    metrics_snapshot=session.metrics.snapshot() if session else {},
                    status=SessionStatus.FAILED.value,
                    total_chunks=len(session.chunks) if session else 0,
                    message=str(e),
                )
            )
        finally:
            if worker.orchestrator is not None and worker.orchestrator is not self.orchestrator:
                worker.orchestrator.close()
            clear_session_context()

    def subscribe(self, session_id: str) -> queue.Queue:
        return self.progress_hub.subscribe(session_id)

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            worker = self._workers.get(session_id)
        if not worker or not worker.thread or not worker.thread.is_alive():
            return False
        worker.cancel_event.set()
        logger.info("Session cancellation requested", session_id=session_id)
        return True

    def wait(self, session_id: str, timeout: float = None) -> bool:
        """Block until the session's worker exits. Returns False on timeout."""
        with self._lock:
            worker = self._workers.get(session_id)
        if not worker or not worker.thread:
            return True
        worker.thread.join(timeout)
        return not worker.thread.is_alive()

    def get_session(self, session_id: str) -> Optional[IndexingSession]:
        with self._lock:
            worker = self._workers.get(session_id)
        if worker and worker.session is not None:
            return worker.session
        return self.store.load_session(session_id)

    def get_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self.get_session(session_id)
        if session is None:
            return None
        status = session.describe()
        status["active"] = session_id in self.active_sessions()
        return status

    def latest_progress(self, session_id: str) -> Optional[ProgressEvent]:
        return self.channel.latest(session_id)

    def active_sessions(self) -> List[str]:
        with self._lock:
            return [sid for sid, w in self._workers.items() if w.thread and w.thread.is_alive()]

    def session_orchestrator(self, session_id: str) -> Optional[ProviderOrchestrator]:
        with self._lock:
            worker = self._workers.get(session_id)
        return worker.orchestrator if worker else None

    def get_provider_health(self) -> Dict[str, Any]:
        return self.orchestrator.get_health_status()

    def get_session_provider_health(self) -> Dict[str, Any]:
        """Provider health of each running session's own orchestrator, keyed by session id"""
        with self._lock:
            workers = [w for w in self._workers.values() if w.thread and w.thread.is_alive()]
        return {
            w.session_id: w.orchestrator.get_health_status()
            for w in workers
            if w.orchestrator is not None and w.orchestrator is not self.orchestrator
        }

    def get_indexer_health(self) -> Dict[str, Any]:
        metrics = self.monitor.export_metrics()
        metrics["active_sessions"] = self.active_sessions()
        return metrics

    def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel every worker and wait for in-flight chunks to finish or fail."""
        with self._lock:
            workers = list(self._workers.values())
        logger.info("Shutting down indexer manager", workers=len(workers))
        for worker in workers:
            worker.cancel_event.set()
        for worker in workers:
            if worker.thread:
                worker.thread.join(timeout)
                if worker.thread.is_alive():
                    logger.warning("Session worker did not stop in time", session_id=worker.session_id)
        self.orchestrator.stop_health_checks()
