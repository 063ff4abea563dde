from fastapi import HTTPException, Request

from onchain_indexer.services.indexer_manager import IndexerManager


def get_manager(request: Request) -> IndexerManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Indexer not ready")
    return manager
