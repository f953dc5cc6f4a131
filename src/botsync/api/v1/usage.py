"""Per-minute usage tracking endpoint."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.botsync.api.deps import get_usage_calculator
from src.botsync.lifecycle.errors import SessionNotActiveError, SessionNotFoundError
from src.botsync.lifecycle.schemas import UsageAck

router = APIRouter(prefix="/usage", tags=["usage"])


class TrackMinuteRequest(BaseModel):
    """Usage report for one minute of recording."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: uuid.UUID
    minute_timestamp: datetime
    seconds_recorded: int


@router.post("/track-minute", response_model=UsageAck)
async def track_minute(body: TrackMinuteRequest, request: Request) -> UsageAck:
    """Record usage for one minute; duplicates are acknowledged with accepted=false."""
    calculator = get_usage_calculator(request)
    try:
        return await calculator.record_usage_minute(
            body.session_id, body.minute_timestamp, body.seconds_recorded
        )
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except SessionNotActiveError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
