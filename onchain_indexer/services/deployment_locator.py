"""
Locate the block at which a contract was deployed.

Lookup order: in-process cache, block explorer creation transaction, binary
search over ``eth_getCode`` history, and finally a heuristic estimate that is
always flagged as degraded.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx
import structlog

from onchain_indexer.config import ChainConfig, ChainId, get_chain_config, settings
from onchain_indexer.services.provider_orchestrator import ProviderOrchestrator
from onchain_indexer.utils.blocks import from_hex, has_code, normalize_address
from onchain_indexer.utils.exceptions import DeploymentNotFound, IndexerError

logger = structlog.get_logger()


@dataclass(frozen=True)
class DeploymentResult:
    block: int
    exact: bool
    degraded: bool
    source: str  # cache, explorer, binary_search, heuristic


class ExplorerClient:
    """Etherscan/Blockscout compatible ``getcontractcreation`` lookup"""

    def __init__(self, api_key: str = None, client: httpx.Client = None, timeout: float = 10.0):
        self.api_key = api_key if api_key is not None else settings.EXPLORER_API_KEY
        self.client = client or httpx.Client(timeout=timeout)

    def get_creation_tx(self, chain_config: ChainConfig, address: str) -> Optional[str]:
        if not chain_config.explorer_api:
            return None

        params = {"module": "contract", "action": "getcontractcreation", "contractaddresses": address}
        if self.api_key:
            params["apikey"] = self.api_key

        try:
            response = self.client.get(chain_config.explorer_api, params=params)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Explorer lookup failed", chain=chain_config.chain.value, address=address, error=str(e))
            return None

        result = body.get("result") if isinstance(body, dict) else None
        if str(body.get("status")) != "1" or not isinstance(result, list) or not result:
            logger.info("Explorer has no creation record", chain=chain_config.chain.value, address=address)
            return None
        return result[0].get("txHash")


class DeploymentLocator:
    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        explorer: Optional[ExplorerClient] = None,
        fallback_days: int = None,
    ):
        self.orchestrator = orchestrator
        self.explorer = explorer
        self.fallback_days = fallback_days or settings.DEPLOYMENT_FALLBACK_DAYS
        self._cache: Dict[Tuple[ChainId, str], DeploymentResult] = {}
        self._lock = threading.Lock()

    def _code_at(self, chain: ChainId, address: str, block: int) -> bool:
        code = self.orchestrator.execute_with_failover(
            chain, lambda p: p.transport.get_code(address, block), "eth_getCode"
        )
        return has_code(code)

    def _head(self, chain: ChainId) -> int:
        return self.orchestrator.execute_with_failover(
            chain, lambda p: p.transport.get_block_number(), "eth_blockNumber"
        )

    def binary_search(self, chain: ChainId, address: str, head: int) -> int:
        """
        Smallest block in ``[0, head]`` at which ``address`` has code.

        Raises:
            DeploymentNotFound: If there is no code at ``head``
        """
        if not self._code_at(chain, address, head):
            raise DeploymentNotFound(address, chain.value)

        low, high = 0, head
        probes = 1
        while low < high:
            mid = (low + high) // 2
            probes += 1
            if self._code_at(chain, address, mid):
                high = mid
            else:
                low = mid + 1

        logger.info("Deployment block found by binary search", chain=chain.value, address=address, block=low, probes=probes)
        return low

    def _from_explorer(self, chain: ChainId, address: str) -> Optional[int]:
        if not self.explorer:
            return None

        chain_config = get_chain_config(chain)
        tx_hash = self.explorer.get_creation_tx(chain_config, address)
        if not tx_hash:
            return None

        tx = self.orchestrator.execute_with_failover(
            chain, lambda p: p.transport.get_transaction(tx_hash), "eth_getTransactionByHash"
        )
        block = from_hex(tx.get("blockNumber")) if tx else None
        if block is None:
            return None

        # The explorer is untrusted: code must appear exactly at the reported block
        if not self._code_at(chain, address, block):
            logger.warning("Explorer deployment block has no code", chain=chain.value, address=address, block=block)
            return None
        if block > 0 and self._code_at(chain, address, block - 1):
            logger.warning("Explorer deployment block is too late", chain=chain.value, address=address, block=block)
            return None
        return block

    def find_deployment_block(self, address: str, chain: ChainId) -> DeploymentResult:
        address = normalize_address(address)
        cache_key = (chain, address)
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached:
            return DeploymentResult(cached.block, cached.exact, cached.degraded, "cache")

        try:
            block = self._from_explorer(chain, address)
        except IndexerError as e:
            logger.warning("Explorer deployment lookup unavailable", chain=chain.value, address=address, error=str(e))
            block = None

        if block is not None:
            result = DeploymentResult(block, exact=True, degraded=False, source="explorer")
            with self._lock:
                self._cache[cache_key] = result
            return result

        head = None
        try:
            head = self._head(chain)
            block = self.binary_search(chain, address, head)
            result = DeploymentResult(block, exact=True, degraded=False, source="binary_search")
            with self._lock:
                self._cache[cache_key] = result
            return result
        except (DeploymentNotFound, IndexerError) as e:
            if head is None:
                logger.error("Deployment lookup failed, chain head unavailable", chain=chain.value, address=address)
                raise
            return self._heuristic(chain, address, head, e)

    def _heuristic(self, chain: ChainId, address: str, head: int, cause: Exception) -> DeploymentResult:
        blocks_per_day = get_chain_config(chain).blocks_per_day
        estimate = max(0, head - self.fallback_days * blocks_per_day)
        logger.warning(
            "Using heuristic deployment block",
            chain=chain.value,
            address=address,
            estimated_block=estimate,
            fallback_days=self.fallback_days,
            reason=str(cause),
        )
        # Degraded results are not cached so a later request can find the exact block
        return DeploymentResult(estimate, exact=False, degraded=True, source="heuristic")
