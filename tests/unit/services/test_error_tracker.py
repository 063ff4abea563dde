from unittest.mock import patch

from onchain_indexer.services.error_tracker import RpcErrorLog
from onchain_indexer.utils.exceptions import EndpointFailure


def _failure(url="https://rpc-a.test", method="eth_getLogs"):
    return EndpointFailure(url, method, "HTTPStatusError: 503")


def test_record_captures_context():
    log = RpcErrorLog(max_errors=10)
    entry = log.record("https://rpc-a.test", "eth_getLogs", [{"fromBlock": "0x1"}], 2, _failure(), {"transport": "primary"})

    assert entry["endpoint"] == "https://rpc-a.test"
    assert entry["method"] == "eth_getLogs"
    assert entry["params"] == [{"fromBlock": "0x1"}]
    assert entry["attempt"] == 2
    assert entry["error_type"] == "EndpointFailure"
    assert entry["context"] == {"transport": "primary"}
    assert log.recent() == [entry]


def test_ring_buffer_is_bounded():
    log = RpcErrorLog(max_errors=3)
    for attempt in range(5):
        log.record("https://rpc-a.test", "eth_blockNumber", [], attempt, _failure())

    entries = log.recent(limit=10)
    assert [e["attempt"] for e in entries] == [2, 3, 4]
    stats = log.get_stats()
    assert stats["total_errors"] == 3
    assert stats["total_recorded"] == 5


def test_stats_grouped_by_endpoint_and_method():
    log = RpcErrorLog(max_errors=10)
    log.record("https://rpc-a.test", "eth_getLogs", [], 1, _failure())
    log.record("https://rpc-a.test", "eth_getCode", [], 2, _failure())
    log.record("https://rpc-b.test", "eth_getLogs", [], 3, _failure())

    stats = log.get_stats()
    assert stats["errors_by_endpoint"] == {"https://rpc-a.test": 2, "https://rpc-b.test": 1}
    assert stats["errors_by_method"] == {"eth_getLogs": 2, "eth_getCode": 1}


def test_stats_window_excludes_old_errors():
    log = RpcErrorLog(max_errors=10, stats_window=300)
    with patch("onchain_indexer.services.error_tracker.time.time", return_value=1000.0):
        log.record("https://rpc-a.test", "eth_getLogs", [], 1, _failure())
    with patch("onchain_indexer.services.error_tracker.time.time", return_value=1400.0):
        log.record("https://rpc-b.test", "eth_getLogs", [], 1, _failure())
        stats = log.get_stats()

    assert stats["recent_errors"] == 1
    assert stats["errors_by_endpoint"] == {"https://rpc-b.test": 1}
    assert stats["total_errors"] == 2


def test_clear():
    log = RpcErrorLog(max_errors=10)
    log.record("https://rpc-a.test", "eth_getLogs", [], 1, _failure())
    log.clear()
    assert log.recent() == []
