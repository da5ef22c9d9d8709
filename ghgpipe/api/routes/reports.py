"""Report routes.

POST /reports starts a pipeline run for a report URL.  The optional
reporting period is checked synchronously: a request whose ``year`` does not
end in the year of ``reportingPeriod.endDate`` is answered 400 and never
enters the pipeline.

GET /reports and GET /reports/{id} serve only visible records, i.e. records
a reviewer approved or edited.
"""
from __future__ import annotations

import re
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ghgpipe.api.deps import get_broker, get_db
from ghgpipe.db.models import EmissionsRecord
from ghgpipe.db.repositories import EmissionsRecordRepository
from ghgpipe.pipeline.dag import start_pipeline
from ghgpipe.queue.broker import StageBroker

router = APIRouter(prefix="/reports", tags=["reports"])

_YEAR = re.compile(r"^\d{4}(?:-\d{4})?$")


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class ReportingPeriod(BaseModel):
    startDate: date
    endDate: date


class SubmitBody(BaseModel):
    url: str = Field(min_length=1)
    year: str | None = None
    reportingPeriod: ReportingPeriod | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def validate_reporting_period(year: str | None, period: ReportingPeriod | None) -> None:
    """Raise ``ValueError`` when *year* and *period* disagree."""
    if year is not None and not _YEAR.match(year):
        raise ValueError(f"year must look like 2023 or 2022-2023, got {year!r}")
    if period is None:
        return
    if period.startDate > period.endDate:
        raise ValueError("reportingPeriod.startDate must not be after endDate")
    if year is not None:
        end_year = int(year.split("-")[-1])
        if end_year != period.endDate.year:
            raise ValueError(
                f"The end year of {year!r} ({end_year}) must be the same year as "
                f"reportingPeriod.endDate ({period.endDate.year})"
            )


def _serialize_record(record: EmissionsRecord) -> dict:
    return {
        "id": record.id,
        "fingerprint": record.fingerprint,
        "url": record.url,
        "companyName": record.company_name,
        "industry": record.industry,
        "reviewStatus": record.review_status,
        "verified": record.verified,
        "schemaVersion": record.schema_version,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
        "data": record.data,
    }


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("", status_code=202, summary="Start processing a report")
def submit_report(body: SubmitBody, broker: StageBroker = Depends(get_broker)):
    try:
        validate_reporting_period(body.year, body.reportingPeriod)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    job_id = start_pipeline(broker, body.url)
    return {"jobId": job_id, "url": body.url}


@router.get("", summary="List verified records")
def list_reports(limit: int = 100, offset: int = 0, db: Session = Depends(get_db)):
    records = EmissionsRecordRepository(db).list_visible(limit=limit, offset=offset)
    return [_serialize_record(r) for r in records]


@router.get("/{record_id}", summary="Get one verified record")
def get_report(record_id: str, db: Session = Depends(get_db)):
    record = EmissionsRecordRepository(db).get(record_id)
    if record is None or not record.visible:
        raise HTTPException(status_code=404, detail=f"Record {record_id} not found")
    return _serialize_record(record)
