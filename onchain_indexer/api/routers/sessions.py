import structlog
from fastapi import APIRouter, Depends, HTTPException

from onchain_indexer.api.dependencies import get_manager
from onchain_indexer.api.models import (
    CancelResponse,
    ProgressEventResponse,
    SessionStatusResponse,
    StartSessionRequest,
    StartSessionResponse,
)
from onchain_indexer.services.indexer_manager import IndexerManager

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/v1/indexing", tags=["Indexing"])


@router.post("/sessions", response_model=StartSessionResponse, status_code=202, summary="Start or attach to a session")
def start_session(request: StartSessionRequest, manager: IndexerManager = Depends(get_manager)) -> StartSessionResponse:
    """
    Start indexing a contract for a subscriber.

    A request for a (chain, contract, subscriber) that is already running
    attaches to the running session and returns ``attached: true``.
    """
    try:
        handle = manager.start_session(
            request.contract_address, request.chain, request.subscriber_id, restart=request.restart
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    status = manager.get_status(handle.session_id)
    return StartSessionResponse(
        session_id=handle.session_id,
        attached=handle.attached,
        status=status["status"] if status else None,
    )


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse, summary="Session status and metrics")
def get_session(session_id: str, manager: IndexerManager = Depends(get_manager)) -> SessionStatusResponse:
    status = manager.get_status(session_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionStatusResponse(**status)


@router.get(
    "/sessions/{session_id}/progress",
    response_model=ProgressEventResponse,
    summary="Latest progress event (polling)",
)
def get_progress(session_id: str, manager: IndexerManager = Depends(get_manager)) -> ProgressEventResponse:
    event = manager.latest_progress(session_id)
    if event is None:
        raise HTTPException(status_code=404, detail="No progress recorded for session")
    return ProgressEventResponse(**event.to_dict())


@router.delete("/sessions/{session_id}", response_model=CancelResponse, summary="Cancel a running session")
def cancel_session(session_id: str, manager: IndexerManager = Depends(get_manager)) -> CancelResponse:
    cancelled = manager.cancel(session_id)
    if not cancelled and manager.get_status(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    logger.info("Cancel requested", session_id=session_id, cancelled=cancelled)
    return CancelResponse(session_id=session_id, cancelled=cancelled)
