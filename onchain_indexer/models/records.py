from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func
from .base import Base


class IndexingSessionRecord(Base):
    __tablename__ = "indexing_sessions"

    session_id = Column(String, primary_key=True)
    contract_address = Column(String(42), nullable=False, index=True)
    chain = Column(String(32), nullable=False)
    subscriber_id = Column(String, nullable=False, index=True)
    tier = Column(Integer, nullable=False, default=0)
    historical_days = Column(Integer, nullable=False)
    continuous_sync = Column(Boolean, nullable=False, default=False)
    tier_degraded = Column(Boolean, nullable=False, default=False)
    deployment_block = Column(BigInteger, nullable=False)
    deployment_exact = Column(Boolean, nullable=False, default=True)
    start_block = Column(BigInteger, nullable=False)
    end_block = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    metrics = Column(JSON, nullable=True)  # Counts only, sets are rebuilt from chunks
    last_error = Column(Text, nullable=True)
    error_kind = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime, nullable=True)


class ChunkRecord(Base):
    __tablename__ = "indexing_chunks"

    chunk_id = Column(String, primary_key=True)
    session_id = Column(String, nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    start_block = Column(BigInteger, nullable=False)
    end_block = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    metrics = Column(JSON, nullable=True)
    tx_hashes = Column(JSON, nullable=True)
    accounts = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
