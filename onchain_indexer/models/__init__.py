from .base import Base
from .records import ChunkRecord, IndexingSessionRecord
from .session import (
    Chunk,
    ChunkData,
    ChunkMetrics,
    ChunkStatus,
    IndexingSession,
    SessionMetrics,
    SessionStatus,
    chunk_key,
    session_key,
)

__all__ = [
    "Base",
    "ChunkRecord",
    "IndexingSessionRecord",
    "Chunk",
    "ChunkData",
    "ChunkMetrics",
    "ChunkStatus",
    "IndexingSession",
    "SessionMetrics",
    "SessionStatus",
    "chunk_key",
    "session_key",
]
