"""Job inspection routes.

GET /jobs/dead-letters lists jobs that exhausted their retries, newest
first, with their payload, last error and job log.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ghgpipe.api.deps import get_db
from ghgpipe.core.constants import ALL_STAGES
from ghgpipe.db.models import DeadLetter
from ghgpipe.db.repositories import DeadLetterRepository

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _serialize_dead_letter(entry: DeadLetter) -> dict:
    return {
        "id": entry.id,
        "queue": entry.queue,
        "jobId": entry.job_id,
        "fingerprint": entry.fingerprint,
        "url": entry.url,
        "attempts": entry.attempts,
        "errorCategory": entry.error_category,
        "lastError": entry.last_error,
        "log": entry.job_log or [],
        "payload": entry.payload,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


@router.get("/dead-letters", summary="Jobs that exhausted their retries")
def list_dead_letters(queue: str | None = None, limit: int = 100, db: Session = Depends(get_db)):
    if queue is not None and queue not in ALL_STAGES:
        raise HTTPException(status_code=400, detail=f"Invalid queue: {queue!r}")
    return [_serialize_dead_letter(e) for e in DeadLetterRepository(db).recent(queue=queue, limit=limit)]
