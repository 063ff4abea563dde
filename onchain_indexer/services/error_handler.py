"""
Error handling and recovery decisions for chunk indexing.

Transient failures (endpoint, provider and timeout errors) are retried with
exponential backoff up to MAX_RETRIES. Integrity errors are never retried.
"""

from typing import Any, Dict

import httpx
import structlog

from onchain_indexer.config import settings
from onchain_indexer.utils.exceptions import (
    AllProvidersExhausted,
    BoundaryViolation,
    ChunkTimeout,
    EndpointFailure,
    IndexerError,
    MalformedResponse,
    SessionCancelled,
    TransportExhausted,
)

RETRYABLE_ERRORS = (
    EndpointFailure,
    TransportExhausted,
    AllProvidersExhausted,
    MalformedResponse,
    ChunkTimeout,
    httpx.HTTPError,
)


class ErrorHandler:
    """Handle indexing errors and recovery"""

    def __init__(self, max_retries: int = None, retry_delay: float = None):
        self.logger = structlog.get_logger()
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.RETRY_DELAY if retry_delay is None else retry_delay

    def is_retryable(self, error: Exception) -> bool:
        if isinstance(error, (BoundaryViolation, SessionCancelled)):
            return False
        if isinstance(error, RETRYABLE_ERRORS):
            return True
        # Data shape problems reported by a provider are retried on the next attempt
        return type(error) is IndexerError

    def handle_chunk_error(self, error: Exception, context: Dict[str, Any]) -> bool:
        """
        Handle a failed chunk attempt.

        Returns:
            True if the chunk should be retried, False otherwise
        """
        if isinstance(error, BoundaryViolation):
            self.logger.error(
                "Boundary violation",
                kind=error.kind.value,
                error=str(error),
                context=context,
            )
            return False

        retryable = self.is_retryable(error)
        log = self.logger.warning if retryable else self.logger.error
        log("Chunk attempt failed", error=str(error), error_type=type(error).__name__, retryable=retryable, context=context)
        return retryable

    def should_retry(self, attempt: int) -> bool:
        """
        Determine if an operation should be retried.

        Args:
            attempt: The current retry attempt number

        Returns:
            True if the operation should be retried, False otherwise
        """
        return attempt < self.max_retries

    def get_retry_delay(self, attempt: int) -> float:
        """
        Calculate the retry delay with exponential backoff.

        Args:
            attempt: The current retry attempt number

        Returns:
            The delay in seconds
        """
        delay = self.retry_delay * (2 ** (attempt - 1))
        self.logger.info("Retrying operation", attempt=attempt, delay=delay)
        return delay
