"""
Provider orchestration for one or more chains.

A provider is a named RPC source for one chain backed by its own RpcTransport.
Operations run against the healthiest provider by priority and fail over to the
next one when a provider gives up.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx
import structlog

from onchain_indexer.config import ChainConfig, ChainId, SubscriptionTier, get_chain_config, settings
from onchain_indexer.services.error_tracker import RpcErrorLog
from onchain_indexer.services.request_queue import TieredRequestQueue
from onchain_indexer.services.rpc_cache import ResponseCache
from onchain_indexer.services.rpc_transport import RetryPolicy, RpcTransport
from onchain_indexer.utils.exceptions import AllProvidersExhausted, ChainMismatchError, IndexerError

logger = structlog.get_logger()

T = TypeVar("T")


class Provider:
    def __init__(
        self,
        name: str,
        chain: ChainId,
        transport: RpcTransport,
        priority: int = 0,
        window: int = 20,
        min_success_rate: float = None,
    ):
        self.name = name
        self.chain = chain
        self.transport = transport
        self.priority = priority
        self.min_success_rate = settings.PROVIDER_MIN_SUCCESS_RATE if min_success_rate is None else min_success_rate
        self.probe_healthy = True
        self.rejected = False
        self.chain_verified = False
        self.last_probe_at: Optional[float] = None
        self.last_error: Optional[str] = None
        self.successes = 0
        self.failures = 0
        self._outcomes = deque(maxlen=window)
        self._lock = threading.Lock()

    @property
    def success_rate(self) -> float:
        with self._lock:
            if not self._outcomes:
                return 1.0
            return sum(self._outcomes) / len(self._outcomes)

    @property
    def is_healthy(self) -> bool:
        return not self.rejected and self.probe_healthy and self.success_rate >= self.min_success_rate

    def record_outcome(self, success: bool, error: Optional[str] = None) -> None:
        with self._lock:
            self._outcomes.append(1 if success else 0)
            if success:
                self.successes += 1
            else:
                self.failures += 1
                self.last_error = error

    def record_probe(self, healthy: bool, error: Optional[str] = None) -> None:
        with self._lock:
            self.probe_healthy = healthy
            self.last_probe_at = time.time()
            if healthy:
                # A passing probe starts a fresh window
                self._outcomes.clear()
            else:
                self.last_error = error

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "chain": self.chain.value,
            "priority": self.priority,
            "healthy": self.is_healthy,
            "probe_healthy": self.probe_healthy,
            "rejected": self.rejected,
            "chain_verified": self.chain_verified,
            "success_rate": self.success_rate,
            "successes": self.successes,
            "failures": self.failures,
            "last_error": self.last_error,
            "last_probe_at": self.last_probe_at,
            "transport": self.transport.get_stats(),
        }


class ProviderOrchestrator:
    """Execute logical operations against the first healthy provider of a chain"""

    def __init__(self, chain_configs: Optional[Dict[ChainId, ChainConfig]] = None, health_check_interval: float = None):
        self.chain_configs: Dict[ChainId, ChainConfig] = dict(chain_configs or {})
        self.health_check_interval = health_check_interval or settings.HEALTH_CHECK_INTERVAL
        self._providers: Dict[ChainId, List[Provider]] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._health_thread: Optional[threading.Thread] = None

    def _config_for(self, chain: ChainId) -> ChainConfig:
        if chain not in self.chain_configs:
            self.chain_configs[chain] = get_chain_config(chain)
        return self.chain_configs[chain]

    def register(self, provider: Provider, chain: Optional[ChainId] = None) -> None:
        expected = chain or provider.chain
        if provider.transport.chain_config.chain != expected or provider.chain != expected:
            raise ChainMismatchError(provider.name, expected.value, provider.transport.chain_config.chain.value)

        with self._lock:
            providers = self._providers.setdefault(expected, [])
            if any(p.name == provider.name for p in providers):
                raise ValueError(f"Provider {provider.name} already registered for {expected.value}")
            providers.append(provider)
            providers.sort(key=lambda p: p.priority)

        logger.info("Provider registered", provider=provider.name, chain=expected.value, priority=provider.priority)

    def providers(self, chain: ChainId) -> List[Provider]:
        with self._lock:
            return list(self._providers.get(chain, []))

    def set_tier(self, tier: SubscriptionTier) -> None:
        seen = set()
        for providers in list(self._providers.values()):
            for provider in providers:
                queue = provider.transport.queue
                if id(queue) not in seen:
                    seen.add(id(queue))
                    queue.set_tier(tier)

    def verify_chain(self, provider: Provider) -> None:
        """
        Check that the provider's endpoint serves the expected chain.

        Raises:
            ChainMismatchError: If the reported chain id differs. The provider is rejected.
        """
        expected = self._config_for(provider.chain).evm_chain_id
        actual = provider.transport.chain_id(cacheable=False)
        if actual != expected:
            provider.rejected = True
            logger.error(
                "Provider serves a different chain, rejecting",
                provider=provider.name,
                chain=provider.chain.value,
                expected_chain_id=expected,
                actual_chain_id=actual,
            )
            raise ChainMismatchError(provider.name, expected, actual)
        provider.chain_verified = True

    def _candidates(self, chain: ChainId) -> List[Provider]:
        providers = [p for p in self.providers(chain) if not p.rejected]
        healthy = [p for p in providers if p.is_healthy]
        unhealthy = [p for p in providers if not p.is_healthy]
        if healthy:
            return healthy
        if unhealthy:
            logger.warning("No healthy providers, trying unhealthy ones", chain=chain.value)
        return unhealthy

    def execute_with_failover(
        self,
        chain: ChainId,
        operation: Callable[[Provider], T],
        operation_name: str = "operation",
    ) -> T:
        """
        Run ``operation(provider)`` against providers in priority order.

        Args:
            chain: Chain to run against
            operation: Callable receiving a Provider
            operation_name: Label for logs and errors

        Returns:
            The operation's result from the first provider that succeeds

        Raises:
            AllProvidersExhausted: If every provider failed within this call
        """
        failures: Dict[str, str] = {}
        candidates = self._candidates(chain)

        for provider in candidates:
            try:
                if not provider.chain_verified:
                    self.verify_chain(provider)
                result = operation(provider)
            except ChainMismatchError as e:
                failures[provider.name] = str(e)
                continue
            except (IndexerError, httpx.HTTPError) as e:
                provider.record_outcome(False, str(e))
                failures[provider.name] = str(e)
                logger.warning(
                    "Provider failed, failing over",
                    provider=provider.name,
                    chain=chain.value,
                    operation=operation_name,
                    error=str(e),
                )
                continue

            provider.record_outcome(True)
            return result

        logger.error(
            "All providers failed",
            chain=chain.value,
            operation=operation_name,
            providers=len(candidates),
            failures=failures,
        )
        raise AllProvidersExhausted(chain.value, operation_name, failures)

    def check_health(self, chain: Optional[ChainId] = None) -> Dict[str, bool]:
        """Probe every provider with an uncached eth_chainId call"""
        results = {}
        chains = [chain] if chain else list(self._providers)
        for chain_id in chains:
            expected = self._config_for(chain_id).evm_chain_id
            for provider in self.providers(chain_id):
                if provider.rejected:
                    results[provider.name] = False
                    continue
                try:
                    actual = provider.transport.chain_id(cacheable=False)
                except IndexerError as e:
                    provider.record_probe(False, str(e))
                    results[provider.name] = False
                    logger.warning("Provider health probe failed", provider=provider.name, chain=chain_id.value, error=str(e))
                    continue

                if actual != expected:
                    provider.rejected = True
                    provider.record_probe(False, f"chain id {actual} != {expected}")
                    results[provider.name] = False
                    logger.error(
                        "Provider health probe reported wrong chain, rejecting",
                        provider=provider.name,
                        chain=chain_id.value,
                        expected_chain_id=expected,
                        actual_chain_id=actual,
                    )
                    continue

                provider.chain_verified = True
                provider.record_probe(True)
                results[provider.name] = True
        return results

    def _health_loop(self) -> None:
        while not self._stop_event.wait(self.health_check_interval):
            try:
                self.check_health()
            except Exception as e:
                logger.error("Health check loop error", error=str(e))

    def start_health_checks(self) -> None:
        if self._health_thread and self._health_thread.is_alive():
            return
        self._stop_event.clear()
        self._health_thread = threading.Thread(target=self._health_loop, name="provider-health", daemon=True)
        self._health_thread.start()
        logger.info("Provider health checks started", interval=self.health_check_interval)

    def stop_health_checks(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._health_thread:
            self._health_thread.join(timeout)
            self._health_thread = None
        logger.info("Provider health checks stopped")

    def get_health_status(self) -> Dict[str, Any]:
        status = {}
        for chain_id in list(self._providers):
            providers = self.providers(chain_id)
            status[chain_id.value] = {
                "healthy_providers": sum(1 for p in providers if p.is_healthy),
                "total_providers": len(providers),
                "providers": [p.describe() for p in providers],
            }
        return status

    def close(self) -> None:
        self.stop_health_checks()
        for chain_id in list(self._providers):
            for provider in self.providers(chain_id):
                provider.transport.close()


def build_orchestrator(
    chains: List[ChainId],
    tier: SubscriptionTier = SubscriptionTier.FREE,
    client: httpx.Client = None,
    retry_policy: RetryPolicy = None,
) -> ProviderOrchestrator:
    """
    Build an orchestrator with one provider per configured provider entry.

    Providers of a chain share one request queue so tier limits apply to the
    chain as a whole, and one error log for the chain's statistics.
    """
    configs = {chain: get_chain_config(chain) for chain in chains}
    orchestrator = ProviderOrchestrator(configs)
    for chain, config in configs.items():
        queue = TieredRequestQueue(tier)
        error_log = RpcErrorLog()
        for provider_config in config.providers:
            transport = RpcTransport(
                provider_config.urls,
                config,
                retry_policy=retry_policy,
                cache=ResponseCache(),
                queue=queue,
                error_log=error_log,
                client=client,
                name=f"{chain.value}/{provider_config.name}",
            )
            orchestrator.register(Provider(provider_config.name, chain, transport, provider_config.priority))
    return orchestrator
