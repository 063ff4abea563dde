"""
Main entry point for the on-chain contract indexer.
"""

import structlog

from .config import ChainId, parse_chain, settings, validate_tables
from .database.connection import SessionLocal
from .services.deployment_locator import DeploymentLocator, ExplorerClient
from .services.indexer_manager import IndexerManager
from .services.notifications import RedisProgressChannel
from .services.provider_orchestrator import build_orchestrator
from .services.session_store import RecordStore, SqlRecordStore
from .services.tier_range import HttpSubscriptionLookup, StaticSubscriptionLookup, SubscriptionLookup, TierRangeCalculator
from .utils.logging import setup_logging


def build_subscription_lookup() -> SubscriptionLookup:
    if settings.SUBSCRIPTION_SERVICE_URL:
        return HttpSubscriptionLookup(settings.SUBSCRIPTION_SERVICE_URL)
    # Without a subscription service every subscriber gets the most restrictive tier
    return StaticSubscriptionLookup()


def build_manager(store: RecordStore = None, lookup: SubscriptionLookup = None) -> IndexerManager:
    """Wire the production components together"""
    validate_tables()
    orchestrator = build_orchestrator(list(ChainId))
    extra_channels = [RedisProgressChannel()] if settings.PROGRESS_REDIS_ENABLED else None
    return IndexerManager(
        orchestrator=orchestrator,
        store=store or SqlRecordStore(SessionLocal),
        calculator=TierRangeCalculator(lookup or build_subscription_lookup()),
        locator=DeploymentLocator(orchestrator, ExplorerClient()),
        extra_channels=extra_channels,
    )


def main(contract_address: str, chain: str, subscriber_id: str, restart: bool = False, continuous: bool = False):
    """Index one contract in the foreground"""
    setup_logging(settings.LOG_LEVEL)
    logger = structlog.get_logger()
    logger.info("Starting on-chain indexer", version=settings.INDEXER_VERSION, chain=chain, contract=contract_address)

    manager = build_manager()
    manager.enable_tailing = continuous
    manager.orchestrator.start_health_checks()
    try:
        handle = manager.start_session(contract_address, parse_chain(chain), subscriber_id, restart=restart)
        manager.wait(handle.session_id)
        status = manager.get_status(handle.session_id)
        logger.info("Indexer finished", session_id=handle.session_id, status=status["status"] if status else None)
        return status
    except KeyboardInterrupt:
        logger.info("Interrupted, saving session state")
    except Exception as e:
        logger.error("Unhandled exception", error=str(e))
        raise
    finally:
        manager.shutdown()
