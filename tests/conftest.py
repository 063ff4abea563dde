import json
import threading
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from onchain_indexer.api.main import app
from onchain_indexer.config import CHAIN_CONFIGS, ChainId, SubscriptionTier
from onchain_indexer.database.connection import get_db
from onchain_indexer.models.base import Base
from onchain_indexer.services.provider_orchestrator import Provider, ProviderOrchestrator
from onchain_indexer.services.request_queue import TieredRequestQueue
from onchain_indexer.services.rpc_transport import RetryPolicy, RpcTransport

CONTRACT = "0x" + "c0" * 20
GENESIS_TIMESTAMP = 1_600_000_000

TEST_DATABASE_URL = "sqlite://"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base.metadata.create_all(bind=engine)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True, scope="session")
def configure_logging():
    import logging
    import structlog

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
    )

    root_logger = logging.getLogger()
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


@pytest.fixture
def patch_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda x: None)


class FakeChain:
    """
    Synthetic EVM chain answering JSON-RPC over httpx.MockTransport.

    The contract at ``CONTRACT`` has code from ``deployment_block`` on. Every
    transaction added with ``add_transaction`` emits ``log_count`` logs from the
    contract in its block.
    """

    def __init__(self, chain_id: int = 1, head: int = 1000, deployment_block: Optional[int] = 100, block_time: int = 12):
        self.chain_id = chain_id
        self.head = head
        self.deployment_block = deployment_block
        self.block_time = block_time
        self.logs: List[Dict[str, Any]] = []
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failing_urls = set()
        self.error_urls = set()
        self.chain_id_overrides: Dict[str, int] = {}
        self.fail_methods = set()
        self.missing_blocks = set()
        # Return logs one block past the requested inclusive upper bound
        self.leak_upper_block = False
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()
        self._counter = 0

    def add_transaction(
        self,
        block: int,
        value: int = 10**18,
        sender: str = "0x" + "a1" * 20,
        status: int = 1,
        gas_used: int = 50000,
        log_count: int = 1,
    ) -> str:
        self._counter += 1
        tx_hash = "0x" + f"{self._counter:064x}"
        self.transactions[tx_hash] = {
            "hash": tx_hash,
            "blockNumber": hex(block),
            "from": sender,
            "to": CONTRACT,
            "value": hex(value),
        }
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "blockNumber": hex(block),
            "status": hex(status),
            "gasUsed": hex(gas_used),
        }
        for log_index in range(log_count):
            self.logs.append(
                {
                    "address": CONTRACT,
                    "blockNumber": hex(block),
                    "transactionHash": tx_hash,
                    "logIndex": hex(log_index),
                    "topics": [],
                    "data": "0x",
                    "removed": False,
                }
            )
        self.logs.sort(key=lambda log: (int(log["blockNumber"], 16), int(log["logIndex"], 16)))
        return tx_hash

    def timestamp(self, block: int) -> int:
        return GENESIS_TIMESTAMP + block * self.block_time

    def calls_for(self, method: str) -> List[tuple]:
        with self._lock:
            return [c for c in self.calls if c[1] == method]

    def _block(self, tag: Any) -> int:
        if tag in ("latest", "pending", "safe", "finalized"):
            return self.head
        return int(tag, 16)

    def _dispatch(self, url: str, method: str, params: List[Any]) -> Any:
        if method == "eth_chainId":
            return hex(self.chain_id_overrides.get(url, self.chain_id))
        if method == "eth_blockNumber":
            return hex(self.head)
        if method == "eth_getCode":
            address, tag = params
            block = self._block(tag)
            deployed = self.deployment_block is not None and block >= self.deployment_block
            return "0x6080604052" if address.lower() == CONTRACT and deployed else "0x"
        if method == "eth_getLogs":
            log_filter = params[0]
            low = int(log_filter["fromBlock"], 16)
            high = int(log_filter["toBlock"], 16) + (1 if self.leak_upper_block else 0)
            return [
                dict(log)
                for log in self.logs
                if log["address"] == log_filter["address"].lower() and low <= int(log["blockNumber"], 16) <= high
            ]
        if method == "eth_getTransactionByHash":
            return self.transactions.get(params[0])
        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0])
        if method == "eth_getBlockByNumber":
            block = self._block(params[0])
            if block > self.head or block in self.missing_blocks:
                return None
            return {"number": hex(block), "timestamp": hex(self.timestamp(block))}
        raise AssertionError(f"unexpected method {method}")

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        payload = json.loads(request.content)
        method, params = payload["method"], payload.get("params", [])
        with self._lock:
            self.calls.append((url, method, params))

        if self.gate is not None and method == "eth_getLogs":
            self.gate.wait(5)
        if url in self.failing_urls or method in self.fail_methods:
            return httpx.Response(503, text="service unavailable")
        if url in self.error_urls:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32000, "message": "boom"}}
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": self._dispatch(url, method, params)})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handle))


@pytest.fixture
def fake_chain():
    return FakeChain()


def make_transport(
    chain: FakeChain,
    urls=("https://rpc-a.test", "https://rpc-b.test"),
    retries: int = 2,
    tier: SubscriptionTier = SubscriptionTier.ENTERPRISE,
    chain_id: ChainId = ChainId.ETHEREUM,
    name: str = None,
) -> RpcTransport:
    return RpcTransport(
        list(urls),
        CHAIN_CONFIGS[chain_id],
        retry_policy=RetryPolicy(retries=retries, base_delay=0, max_delay=0),
        queue=TieredRequestQueue(tier),
        client=chain.client(),
        name=name,
    )


def make_orchestrator(chain: FakeChain, providers=None, chain_id: ChainId = ChainId.ETHEREUM) -> ProviderOrchestrator:
    """``providers`` is a list of (name, urls) in priority order"""
    providers = providers or [("primary", ["https://primary-a.test", "https://primary-b.test"]), ("backup", ["https://backup.test"])]
    orchestrator = ProviderOrchestrator({chain_id: CHAIN_CONFIGS[chain_id]}, health_check_interval=0.01)
    for priority, (name, urls) in enumerate(providers):
        transport = make_transport(chain, urls, retries=1, chain_id=chain_id, name=name)
        orchestrator.register(Provider(name, chain_id, transport, priority=priority))
    return orchestrator


@pytest.fixture
def orchestrator(fake_chain):
    return make_orchestrator(fake_chain)
