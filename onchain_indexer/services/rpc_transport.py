"""
EVM JSON-RPC transport with endpoint rotation, retry, caching and rate limiting.
"""

import itertools
import random
import threading
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from onchain_indexer.config import ChainConfig, SubscriptionTier, settings
from onchain_indexer.services.error_tracker import RpcErrorLog
from onchain_indexer.services.request_queue import TieredRequestQueue
from onchain_indexer.services.rpc_cache import ResponseCache
from onchain_indexer.utils.blocks import block_tag, from_hex, to_hex
from onchain_indexer.utils.exceptions import EndpointFailure, IndexerError, RpcResponseError, TransportExhausted

logger = structlog.get_logger()

# Methods whose answers change from one call to the next
NON_CACHEABLE_METHODS = frozenset(
    {
        "eth_blockNumber",
        "eth_gasPrice",
        "eth_syncing",
        "eth_newFilter",
        "eth_newBlockFilter",
        "eth_newPendingTransactionFilter",
        "eth_getFilterChanges",
        "eth_getFilterLogs",
        "eth_uninstallFilter",
    }
)
LIVE_BLOCK_TAGS = frozenset({"latest", "pending", "safe", "finalized"})

LATENCY_SMOOTHING = 0.2


def _references_live_tag(params: Any) -> bool:
    if isinstance(params, str):
        return params in LIVE_BLOCK_TAGS
    if isinstance(params, dict):
        return any(_references_live_tag(v) for v in params.values())
    if isinstance(params, (list, tuple)):
        return any(_references_live_tag(v) for v in params)
    return False


def is_cacheable(method: str, params: Any) -> bool:
    return method not in NON_CACHEABLE_METHODS and not _references_live_tag(params)


def log_filter(address: str, from_block: int, to_block: int, topics: Optional[List[Any]] = None) -> Dict[str, Any]:
    params = {"address": address, "fromBlock": to_hex(from_block), "toBlock": to_hex(to_block)}
    if topics:
        params["topics"] = topics
    return params


class Endpoint:
    """A single RPC URL and its health bookkeeping. Mutated only by its transport."""

    def __init__(self, url: str):
        self.url = url
        self.avg_latency: Optional[float] = None
        self.healthy = True
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[float] = None
        self.total_requests = 0
        self.total_failures = 0

    def record_success(self, latency: float) -> None:
        self.total_requests += 1
        if self.avg_latency is None:
            self.avg_latency = latency
        else:
            self.avg_latency = (1 - LATENCY_SMOOTHING) * self.avg_latency + LATENCY_SMOOTHING * latency
        if not self.healthy:
            logger.info("RPC endpoint recovered", endpoint=self.url)
        self.healthy = True
        self.consecutive_failures = 0

    def record_failure(self, error: Exception, threshold: int) -> None:
        self.total_requests += 1
        self.total_failures += 1
        self.consecutive_failures += 1
        self.last_error = str(error)
        self.last_error_at = time.time()
        if self.healthy and self.consecutive_failures >= threshold:
            self.healthy = False
            logger.warning(
                "RPC endpoint marked unhealthy",
                endpoint=self.url,
                consecutive_failures=self.consecutive_failures,
                last_error=self.last_error,
            )

    def describe(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "healthy": self.healthy,
            "avg_latency": self.avg_latency,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at,
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
        }


class RetryPolicy:
    """
    Retry strategy shared by every chain client.

    ``retries`` is the number of passes over the endpoint list. Between passes the
    transport sleeps with exponential backoff plus jitter, capped at ``max_delay``.
    """

    def __init__(self, retries: int = None, base_delay: float = None, max_delay: float = None):
        self.retries = settings.RPC_RETRIES if retries is None else retries
        self.base_delay = settings.RPC_BACKOFF_BASE if base_delay is None else base_delay
        self.max_delay = settings.RPC_BACKOFF_MAX if max_delay is None else max_delay
        if self.retries < 1:
            raise ValueError("retries must be at least 1")

    def max_attempts(self, endpoint_count: int) -> int:
        return self.retries * endpoint_count

    def backoff(self, round_index: int) -> float:
        delay = min(self.base_delay * (2**round_index), self.max_delay)
        jitter = random.uniform(0, delay * 0.1)  # nosec B311
        return delay + jitter


class RpcTransport:
    """
    Per-chain JSON-RPC client over a list of endpoint URLs.

    Each call checks the response cache, waits for admission from the tiered
    queue, and walks the endpoints in round-robin order (healthy ones first) for
    up to ``retries`` passes before raising TransportExhausted.
    """

    def __init__(
        self,
        urls: Sequence[str],
        chain_config: ChainConfig,
        retry_policy: RetryPolicy = None,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        cache: ResponseCache = None,
        queue: TieredRequestQueue = None,
        error_log: RpcErrorLog = None,
        client: httpx.Client = None,
        timeout: float = None,
        failure_threshold: int = None,
        name: str = None,
    ):
        if not urls:
            raise ValueError("At least one RPC endpoint URL is required")

        self.chain_config = chain_config
        self.name = name or chain_config.chain.value
        self.endpoints: List[Endpoint] = [Endpoint(url) for url in urls]
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache or ResponseCache()
        self.queue = queue or TieredRequestQueue(tier)
        self.error_log = error_log or RpcErrorLog()
        self.timeout = settings.RPC_TIMEOUT if timeout is None else timeout
        self.failure_threshold = failure_threshold or settings.ENDPOINT_FAILURE_THRESHOLD
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=self.timeout)

        self._cursor = 0
        self._lock = threading.Lock()
        self._request_ids = itertools.count(1)

        self._timestamps: Dict[int, int] = {}
        self._estimated_timestamps: Dict[int, int] = {}

        for url in urls:
            if not url.startswith("https://"):
                logger.warning("Insecure RPC endpoint configured", transport=self.name, endpoint=url)

        logger.info(
            "RPC transport initialized",
            transport=self.name,
            chain=chain_config.chain.value,
            endpoints=len(self.endpoints),
            retries=self.retry_policy.retries,
        )

    @property
    def healthy(self) -> bool:
        return any(e.healthy for e in self.endpoints)

    def set_tier(self, tier: SubscriptionTier) -> None:
        self.queue.set_tier(tier)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _rotation(self) -> List[Endpoint]:
        """Endpoints starting at the cursor, healthy ones first (stable)."""
        with self._lock:
            start = self._cursor
        ordered = self.endpoints[start:] + self.endpoints[:start]
        return sorted(ordered, key=lambda e: not e.healthy)

    def _post(self, endpoint: Endpoint, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._request_ids), "method": method, "params": params}
        try:
            response = self.client.post(endpoint.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise EndpointFailure(endpoint.url, method, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise EndpointFailure(endpoint.url, method, f"invalid JSON response: {e}") from e

        if not isinstance(body, dict):
            raise EndpointFailure(endpoint.url, method, "unexpected response shape")
        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcResponseError(endpoint.url, method, error.get("code"), error.get("message", ""))
            raise RpcResponseError(endpoint.url, method, None, str(error))
        if "result" not in body:
            raise EndpointFailure(endpoint.url, method, "response has no result")
        return body["result"]

    def execute(self, method: str, params: Optional[List[Any]] = None, cacheable: Optional[bool] = None) -> Any:
        """
        Execute a JSON-RPC call.

        Args:
            method: JSON-RPC method name
            params: Positional parameters
            cacheable: Override the default cacheability of the call

        Returns:
            The ``result`` member of the response

        Raises:
            TransportExhausted: If every endpoint failed on every pass
        """
        params = list(params or [])
        use_cache = is_cacheable(method, params) if cacheable is None else cacheable
        cache_key = self.cache.generate_key(method, params) if use_cache else None

        if cache_key is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        attempt = 0
        errors: List[str] = []
        for round_index in range(self.retry_policy.retries):
            if round_index > 0:
                delay = self.retry_policy.backoff(round_index - 1)
                logger.info(
                    "All endpoints failed, backing off",
                    transport=self.name,
                    method=method,
                    round=round_index,
                    retry_delay=delay,
                )
                time.sleep(delay)

            for endpoint in self._rotation():
                attempt += 1
                started = time.monotonic()
                try:
                    with self.queue.slot():
                        result = self._post(endpoint, method, params)
                except EndpointFailure as e:
                    with self._lock:
                        endpoint.record_failure(e, self.failure_threshold)
                    self.error_log.record(endpoint.url, method, params, attempt, e, context={"transport": self.name})
                    errors.append(str(e))
                    logger.warning(
                        "RPC call failed",
                        transport=self.name,
                        endpoint=endpoint.url,
                        method=method,
                        attempt=attempt,
                        error=str(e),
                    )
                    continue

                latency = time.monotonic() - started
                with self._lock:
                    endpoint.record_success(latency)
                    self._cursor = (self.endpoints.index(endpoint) + 1) % len(self.endpoints)

                if cache_key is not None and result is not None:
                    self.cache.set(cache_key, result)
                return result

        logger.error(
            "RPC call failed on all endpoints",
            transport=self.name,
            method=method,
            attempts=attempt,
            last_error=errors[-1] if errors else None,
        )
        raise TransportExhausted(method, attempt, errors)

    def invalidate(self, method: str, params: Optional[List[Any]] = None) -> bool:
        """Drop a cached response, e.g. one that failed to decode"""
        dropped = self.cache.delete(self.cache.generate_key(method, list(params or [])))
        if dropped:
            logger.info("Cached response invalidated", transport=self.name, method=method)
        return dropped

    def chain_id(self, cacheable: Optional[bool] = None) -> int:
        return from_hex(self.execute("eth_chainId", [], cacheable=cacheable))

    def get_block_number(self) -> int:
        return from_hex(self.execute("eth_blockNumber", []))

    def get_code(self, address: str, block: Any = "latest") -> str:
        return self.execute("eth_getCode", [address, block_tag(block)])

    def get_logs(self, address: str, from_block: int, to_block: int, topics: Optional[List[Any]] = None) -> List[Dict]:
        """Logs emitted by ``address`` in the inclusive range ``[from_block, to_block]``"""
        return self.execute("eth_getLogs", [log_filter(address, from_block, to_block, topics)]) or []

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.execute("eth_getTransactionByHash", [tx_hash])

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.execute("eth_getTransactionReceipt", [tx_hash])

    def get_block(self, block: Any, full_transactions: bool = False) -> Optional[Dict[str, Any]]:
        result = self.execute("eth_getBlockByNumber", [block_tag(block), full_transactions])
        if result and isinstance(block, int) and result.get("timestamp") is not None:
            self.record_block_timestamp(block, from_hex(result["timestamp"]))
        return result

    def record_block_timestamp(self, block_number: int, timestamp: int) -> None:
        with self._lock:
            self._timestamps[block_number] = timestamp
            self._estimated_timestamps.pop(block_number, None)

    def is_estimated_timestamp(self, block_number: int) -> bool:
        return block_number in self._estimated_timestamps

    def get_block_timestamp(self, block_number: int) -> int:
        """
        Timestamp of a block, cached per block number.

        When the lookup fails the timestamp is extrapolated from the nearest block
        with a known timestamp using the chain's average block time, and the block
        is recorded as estimated.

        Raises:
            IndexerError: If the lookup failed and no reference block is known
        """
        if block_number in self._timestamps:
            return self._timestamps[block_number]

        try:
            block = self.get_block(block_number)
            if not block or block.get("timestamp") is None:
                raise EndpointFailure(self.name, "eth_getBlockByNumber", f"block {block_number} not available")
            return self._timestamps[block_number]
        except (TransportExhausted, EndpointFailure) as e:
            with self._lock:
                known = dict(self._timestamps)
            if not known:
                raise IndexerError(
                    f"Cannot determine timestamp of block {block_number}: lookup failed and no reference block known"
                ) from e

            reference = min(known, key=lambda b: abs(b - block_number))
            estimate = int(known[reference] + (block_number - reference) * self.chain_config.block_time)
            with self._lock:
                self._estimated_timestamps[block_number] = estimate
            logger.warning(
                "Block timestamp estimated",
                transport=self.name,
                block=block_number,
                reference_block=reference,
                estimated_timestamp=estimate,
                error=str(e),
            )
            return estimate

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            endpoints = [e.describe() for e in self.endpoints]
            cursor = self._cursor
        return {
            "name": self.name,
            "chain": self.chain_config.chain.value,
            "healthy": self.healthy,
            "cursor": cursor,
            "endpoints": endpoints,
            "cache": self.cache.stats(),
            "queue": self.queue.stats(),
            "errors": self.error_log.get_stats(),
            "timestamps": {"cached": len(self._timestamps), "estimated": len(self._estimated_timestamps)},
        }
