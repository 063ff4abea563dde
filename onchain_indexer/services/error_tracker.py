import threading
import time
from collections import Counter, deque
from typing import Any, Dict, List, Optional

import structlog

from onchain_indexer.config import settings

logger = structlog.get_logger()


class RpcErrorLog:
    """Ring buffer of recent RPC failures with per-endpoint and per-method statistics"""

    def __init__(self, max_errors: int = None, stats_window: float = 300.0):
        self.max_errors = max_errors or settings.RPC_ERROR_LOG_SIZE
        self.stats_window = stats_window
        self._errors = deque(maxlen=self.max_errors)
        self._lock = threading.Lock()
        self.total_recorded = 0

    def record(
        self,
        endpoint: str,
        method: str,
        params: Any,
        attempt: int,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = {
            "endpoint": endpoint,
            "method": method,
            "params": params,
            "attempt": attempt,
            "error": str(error),
            "error_type": type(error).__name__,
            "timestamp": time.time(),
        }
        if context:
            entry["context"] = context
        with self._lock:
            self._errors.append(entry)
            self.total_recorded += 1
        return entry

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._errors)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        cutoff = time.time() - self.stats_window
        with self._lock:
            recent = [e for e in self._errors if e["timestamp"] >= cutoff]
            total = len(self._errors)
        return {
            "total_errors": total,
            "total_recorded": self.total_recorded,
            "recent_errors": len(recent),
            "errors_by_endpoint": dict(Counter(e["endpoint"] for e in recent)),
            "errors_by_method": dict(Counter(e["method"] for e in recent)),
        }

    def clear(self) -> None:
        with self._lock:
            self._errors.clear()
