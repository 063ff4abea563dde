"""
Indexer exception taxonomy and validation results
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class BoundaryViolationKind(str, Enum):
    """Kinds of chunk seam and content violations"""

    GAP = "gap"
    OVERLAP = "overlap"
    END_MISMATCH = "end_mismatch"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    DUPLICATE_LOG = "duplicate_log"
    NON_MONOTONIC_BLOCKS = "non_monotonic_blocks"
    OUT_OF_RANGE = "out_of_range"


class ValidationResult:

    def __init__(self, is_valid: bool, error_code: Optional[str] = None, error_message: Optional[str] = None):
        self.is_valid = is_valid
        self.error_code = error_code
        self.error_message = error_message

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def violation(cls, kind: BoundaryViolationKind, message: str) -> "ValidationResult":
        return cls(False, kind.value, message)

    @property
    def kind(self) -> Optional[BoundaryViolationKind]:
        return BoundaryViolationKind(self.error_code) if self.error_code else None

    def __bool__(self):
        return self.is_valid

    def __repr__(self):
        if self.is_valid:
            return "ValidationResult(valid=True)"
        return f"ValidationResult(valid=False, error={self.error_code})"


class IndexerError(Exception):

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class EndpointFailure(IndexerError):
    """A single endpoint failed one request. Recovered by rotating to the next endpoint."""

    def __init__(self, endpoint: str, method: str, message: str):
        self.endpoint = endpoint
        self.method = method
        super().__init__(f"{endpoint} {method}: {message}")


class RpcResponseError(EndpointFailure):
    """The endpoint answered with a JSON-RPC error object"""

    def __init__(self, endpoint: str, method: str, code: Optional[int], message: str):
        self.code = code
        super().__init__(endpoint, method, f"rpc error code={code} message={message}")


class MalformedResponse(IndexerError):
    """A provider returned a payload whose fields could not be decoded"""

    def __init__(self, method: str, field: str, value: Any, provider: Optional[str] = None):
        self.method = method
        self.field = field
        self.value = value
        self.provider = provider
        source = f" from {provider}" if provider else ""
        super().__init__(f"Malformed {method} response{source}: {field}={value!r}")


class TransportExhausted(IndexerError):

    def __init__(self, method: str, attempts: int, errors: Optional[List[str]] = None):
        self.method = method
        self.attempts = attempts
        self.errors = errors or []
        last = self.errors[-1] if self.errors else "no endpoints"
        super().__init__(f"All endpoints failed for {method} after {attempts} attempts (last error: {last})")


class AllProvidersExhausted(IndexerError):

    def __init__(self, chain: str, operation: str, failures: Optional[Dict[str, str]] = None):
        self.chain = chain
        self.operation = operation
        self.failures = failures or {}
        super().__init__(f"All providers failed for {operation} on {chain}: {self.failures}")


class ChainMismatchError(IndexerError):

    def __init__(self, provider: str, expected: Any, actual: Any):
        self.provider = provider
        self.expected = expected
        self.actual = actual
        super().__init__(f"Provider {provider} serves chain id {actual}, expected {expected}")


class BoundaryViolation(IndexerError):
    """Data integrity failure at or inside a chunk. Always fatal to the session."""

    def __init__(self, kind: BoundaryViolationKind, message: str, chunk_range: Optional[tuple] = None):
        self.kind = kind
        self.chunk_range = chunk_range
        super().__init__(f"{kind.value}: {message}")

    @classmethod
    def from_result(cls, result: ValidationResult, chunk_range: Optional[tuple] = None) -> "BoundaryViolation":
        return cls(result.kind, result.error_message or "", chunk_range)


class TierLookupFailure(IndexerError):
    pass


class DeploymentNotFound(IndexerError):

    def __init__(self, address: str, chain: str, message: str = "no code at chain head"):
        self.address = address
        self.chain = chain
        super().__init__(f"Deployment of {address} on {chain} not found: {message}")


class ChunkTimeout(IndexerError):

    def __init__(self, start_block: int, end_block: int, budget: float):
        self.start_block = start_block
        self.end_block = end_block
        self.budget = budget
        super().__init__(f"Chunk [{start_block}, {end_block}) exceeded {budget}s budget")


class SessionCancelled(IndexerError):
    pass


class SessionStalled(IndexerError):

    def __init__(self, session_id: str, chunk_index: int, cause: str):
        self.session_id = session_id
        self.chunk_index = chunk_index
        self.cause = cause
        super().__init__(f"Session {session_id} stalled at chunk {chunk_index}: {cause}")
