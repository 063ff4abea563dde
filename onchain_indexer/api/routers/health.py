from datetime import datetime

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from onchain_indexer.api.dependencies import get_manager
from onchain_indexer.api.models import IndexerHealthResponse, ProviderHealthResponse
from onchain_indexer.database.connection import get_db
from onchain_indexer.services.indexer_manager import IndexerManager

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/v1/health", tags=["Health"])


@router.get("/providers", response_model=ProviderHealthResponse, summary="Provider and endpoint health")
def provider_health(manager: IndexerManager = Depends(get_manager)) -> ProviderHealthResponse:
    return ProviderHealthResponse(chains=manager.get_provider_health(), sessions=manager.get_session_provider_health())


@router.get("/indexer", response_model=IndexerHealthResponse, summary="Indexer health and performance")
def indexer_health(
    manager: IndexerManager = Depends(get_manager), db: Session = Depends(get_db)
) -> IndexerHealthResponse:
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("Database health check failed", error=str(e))
        database = "unavailable"

    metrics = manager.get_indexer_health()
    healthy = metrics["health"]["is_healthy"] and database == "ok"
    return IndexerHealthResponse(
        status="healthy" if healthy else "unhealthy",
        database=database,
        active_sessions=metrics["active_sessions"],
        health=metrics["health"],
        performance=metrics["performance"],
        timestamp=datetime.utcnow().isoformat(),
    )
