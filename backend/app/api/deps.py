"""Request dependencies for the long-lived stock sync workers."""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request

from app.services.deduction_retry_service import DeductionRetryQueue
from app.services.movement_log_service import MovementRecorder


def get_movement_recorder(request: Request) -> Optional[MovementRecorder]:
    """The app's movement recorder; None means movements are written inline."""
    return getattr(request.app.state, "movement_recorder", None)


def get_retry_queue(request: Request) -> DeductionRetryQueue:
    queue = getattr(request.app.state, "retry_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Retry queue is not running")
    return queue


Recorder = Annotated[Optional[MovementRecorder], Depends(get_movement_recorder)]
RetryQueue = Annotated[DeductionRetryQueue, Depends(get_retry_queue)]
