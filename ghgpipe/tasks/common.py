"""Helpers shared by the stage tasks."""
from __future__ import annotations

import logging
from typing import TypeVar

from sqlalchemy.orm import Session

from ghgpipe.db.models import Report
from ghgpipe.db.repositories import ReportRepository
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.tasks.error_handler import InvariantViolationError

logger = logging.getLogger(__name__)

# Actor recorded on audit events written by the pipeline itself.
PIPELINE_ACTOR = "pipeline"

T = TypeVar("T")


def require(value: T | None, name: str) -> T:
    """Return *value*, or raise ``InvariantViolationError`` when the payload lacks it."""
    if value is None or value == "":
        raise InvariantViolationError(f"Job payload has no {name}")
    return value


def current_report(db: Session, payload: JobPayload) -> Report | None:
    """Load the document row this job works on.

    Returns ``None`` when the fingerprint has since been claimed by a newer
    run: the job belongs to a superseded chain and must stop.
    """
    fingerprint = require(payload.fingerprint, "fingerprint")
    report = ReportRepository(db).get_by_fingerprint(fingerprint)
    if report is None:
        raise InvariantViolationError(f"No document row for fingerprint {fingerprint}")
    if report.run_id != payload.run_id:
        logger.info(
            "Job for %s belongs to run %s, current run is %s; stopping",
            fingerprint, payload.run_id, report.run_id,
        )
        return None
    return report
