"""
Fetch the on-chain activity of one contract within a chunk.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

import structlog

from onchain_indexer.config import ChainId, SubscriptionTier, get_tier_config, settings
from onchain_indexer.models.session import ChunkData, ChunkMetrics
from onchain_indexer.services.provider_orchestrator import ProviderOrchestrator
from onchain_indexer.services.rpc_transport import log_filter
from onchain_indexer.utils.blocks import from_hex
from onchain_indexer.utils.exceptions import ChunkTimeout, IndexerError, MalformedResponse, SessionCancelled

logger = structlog.get_logger()

DECODE_ERRORS = (ValueError, TypeError, AttributeError, KeyError)


def decode_quantity(method: str, field: str, value: Any, provider: Optional[str] = None) -> Optional[int]:
    try:
        return from_hex(value)
    except DECODE_ERRORS as e:
        raise MalformedResponse(method, field, value, provider) from e


class ContractFetcher:
    """
    Fetch logs, transactions and receipts for ``[start_block, end_block)``.

    Logs are queried in ``log_query_span`` windows. Transaction details are fetched
    in batches sized by the tier, with at most the tier's concurrency ceiling of
    calls in flight. Cancellation and the chunk deadline are checked between RPC
    calls.
    """

    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        chain: ChainId,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        log_query_span: int = None,
    ):
        self.orchestrator = orchestrator
        self.chain = chain
        self.log_query_span = log_query_span or settings.LOG_QUERY_SPAN
        self.set_tier(tier)

    def set_tier(self, tier: SubscriptionTier) -> None:
        tier_config = get_tier_config(tier)
        self.batch_width = tier_config.batch_width
        self.max_workers = tier_config.max_concurrent

    def _check(self, cancel_event, deadline: Optional[float], start_block: int, end_block: int, budget: float) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SessionCancelled(f"Cancelled while fetching [{start_block}, {end_block})")
        if deadline is not None and time.monotonic() > deadline:
            raise ChunkTimeout(start_block, end_block, budget)

    def fetch_logs(self, address: str, start_block: int, end_block: int, check=None) -> List[Dict[str, Any]]:
        logs: List[Dict[str, Any]] = []
        for window_start in range(start_block, end_block, self.log_query_span):
            window_end = min(window_start + self.log_query_span, end_block)
            if check:
                check()
            batch = self.orchestrator.execute_with_failover(
                self.chain,
                # eth_getLogs ranges are inclusive
                lambda p, ws=window_start, we=window_end: self._window_logs(p, address, ws, we - 1),
                "eth_getLogs",
            )
            logs.extend(log for log in batch if not log.get("removed"))
        return logs

    def _window_logs(self, provider, address: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        logs = provider.transport.get_logs(address, from_block, to_block)
        try:
            return self._checked_logs(provider, logs)
        except MalformedResponse:
            # Keep the bad payload out of the cache so a retry refetches it
            provider.transport.invalidate("eth_getLogs", [log_filter(address, from_block, to_block)])
            raise

    @staticmethod
    def _checked_logs(provider, logs) -> List[Dict[str, Any]]:
        if not isinstance(logs, list):
            raise MalformedResponse("eth_getLogs", "result", logs, provider.name)
        for log in logs:
            if not isinstance(log, dict):
                raise MalformedResponse("eth_getLogs", "log", log, provider.name)
            decode_quantity("eth_getLogs", "blockNumber", log.get("blockNumber"), provider.name)
            tx_hash = log.get("transactionHash")
            if tx_hash is not None and not isinstance(tx_hash, str):
                raise MalformedResponse("eth_getLogs", "transactionHash", tx_hash, provider.name)
        return logs

    @staticmethod
    def _check_detail(provider, tx: Dict[str, Any], receipt: Dict[str, Any]) -> None:
        if not isinstance(tx, dict) or not isinstance(receipt, dict):
            raise MalformedResponse("transaction_detail", "result", (tx, receipt), provider.name)
        decode_quantity("eth_getTransactionByHash", "value", tx.get("value"), provider.name)
        decode_quantity("eth_getTransactionReceipt", "gasUsed", receipt.get("gasUsed"), provider.name)
        decode_quantity("eth_getTransactionReceipt", "status", receipt.get("status"), provider.name)
        for key in ("from", "to"):
            account = tx.get(key)
            if account is not None and not isinstance(account, str):
                raise MalformedResponse("eth_getTransactionByHash", key, account, provider.name)

    def _fetch_detail(self, tx_hash: str) -> Tuple[str, Dict[str, Any], Dict[str, Any]]:
        def operation(provider):
            tx = provider.transport.get_transaction(tx_hash)
            receipt = provider.transport.get_transaction_receipt(tx_hash)
            if not tx or not receipt:
                raise IndexerError(f"Transaction {tx_hash} not available from {provider.name}")
            try:
                self._check_detail(provider, tx, receipt)
            except MalformedResponse:
                provider.transport.invalidate("eth_getTransactionByHash", [tx_hash])
                provider.transport.invalidate("eth_getTransactionReceipt", [tx_hash])
                raise
            return tx, receipt

        tx, receipt = self.orchestrator.execute_with_failover(self.chain, operation, "transaction_detail")
        return tx_hash, tx, receipt

    def _block_timestamp(self, block_number: int) -> int:
        return self.orchestrator.execute_with_failover(
            self.chain, lambda p: p.transport.get_block_timestamp(block_number), "block_timestamp"
        )

    def fetch_chunk(
        self,
        address: str,
        start_block: int,
        end_block: int,
        cancel_event=None,
        deadline: Optional[float] = None,
    ) -> ChunkData:
        budget = (deadline - time.monotonic()) if deadline is not None else 0.0

        def check():
            self._check(cancel_event, deadline, start_block, end_block, budget)

        data = ChunkData(start_block=start_block, end_block=end_block)
        data.logs = self.fetch_logs(address, start_block, end_block, check)

        seen = set()
        for log in data.logs:
            tx_hash = (log.get("transactionHash") or "").lower()
            if tx_hash and tx_hash not in seen:
                seen.add(tx_hash)
                data.tx_hashes.append(tx_hash)
            block_number = from_hex(log.get("blockNumber"))
            if block_number is not None:
                data.blocks.add(block_number)

        if data.tx_hashes:
            workers = max(1, min(self.batch_width, self.max_workers))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tx-detail") as pool:
                for offset in range(0, len(data.tx_hashes), self.batch_width):
                    check()
                    batch = data.tx_hashes[offset : offset + self.batch_width]
                    for tx_hash, tx, receipt in pool.map(self._fetch_detail, batch):
                        data.transactions[tx_hash] = tx
                        data.receipts[tx_hash] = receipt

        data.metrics = self._compute_metrics(data)
        if data.blocks:
            check()
            data.metrics.first_activity = self._block_timestamp(min(data.blocks))
            check()
            data.metrics.last_activity = self._block_timestamp(max(data.blocks))

        logger.debug(
            "Chunk fetched",
            chain=self.chain.value,
            address=address,
            start_block=start_block,
            end_block=end_block,
            logs=len(data.logs),
            transactions=len(data.tx_hashes),
        )
        return data

    def _compute_metrics(self, data: ChunkData) -> ChunkMetrics:
        metrics = ChunkMetrics(tx_count=len(data.tx_hashes), log_count=len(data.logs))
        for tx_hash in data.tx_hashes:
            tx = data.transactions.get(tx_hash, {})
            receipt = data.receipts.get(tx_hash, {})
            metrics.total_value_wei += from_hex(tx.get("value")) or 0
            metrics.total_gas_used += from_hex(receipt.get("gasUsed")) or 0
            if from_hex(receipt.get("status")) == 0:
                metrics.failed_tx_count += 1
            for key in ("from", "to"):
                account = tx.get(key)
                if account:
                    data.accounts.add(account.lower())
        metrics.unique_accounts = len(data.accounts)
        metrics.unique_blocks = len(data.blocks)
        return metrics
