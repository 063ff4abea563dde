from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class StartSessionRequest(BaseModel):
    contract_address: str = Field(description="Contract address (0x-prefixed, 20 bytes)", examples=["0x" + "ab" * 20])
    chain: str = Field(description="Chain name", examples=["ethereum", "lisk"])
    subscriber_id: str = Field(description="Subscriber identity used for the tier lookup")
    restart: bool = Field(default=False, description="Rebuild a halted session from scratch")


class StartSessionResponse(BaseModel):
    session_id: str
    attached: bool = Field(description="True when the request joined an already running session")
    status: Optional[str] = None


class SessionMetricsSnapshot(BaseModel):
    tx_count: int = 0
    log_count: int = 0
    failed_tx_count: int = 0
    total_value_wei: str = Field(default="0", description="Cumulative transferred value in wei (decimal string)")
    total_gas_used: int = 0
    unique_accounts: int = 0
    unique_blocks: int = 0
    first_activity: Optional[int] = Field(None, description="Unix timestamp of the earliest indexed activity")
    last_activity: Optional[int] = Field(None, description="Unix timestamp of the latest indexed activity")


class SessionStatusResponse(BaseModel):
    session_id: str
    contract_address: str
    chain: str
    subscriber_id: str
    tier: str
    historical_days: int
    continuous_sync: bool
    tier_degraded: bool
    deployment_block: int
    deployment_exact: bool
    start_block: int
    end_block: int
    status: str
    progress_percent: float
    current_chunk_index: Optional[int] = None
    total_chunks: int
    metrics: SessionMetricsSnapshot
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None
    active: bool = False


class ProgressEventResponse(BaseModel):
    session_id: str
    progress_percent: float
    step: str
    status: str
    metrics_snapshot: Dict[str, Any]
    chunk_index: Optional[int] = None
    total_chunks: int = 0
    message: Optional[str] = None
    timestamp: str


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool


class ProviderHealthResponse(BaseModel):
    chains: Dict[str, Any]
    sessions: Dict[str, Any] = {}


class IndexerHealthResponse(BaseModel):
    status: str
    database: str
    active_sessions: List[str]
    health: Dict[str, Any]
    performance: Dict[str, Any]
    timestamp: str
