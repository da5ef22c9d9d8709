"""Review decision state machine.

Manages per-record ``review_status`` transitions:

    pending_review -> approved   (verified, visible)
                   -> edited     (patch applied; verified, visible)
                   -> rejected   (kept for audit, never visible)

Decisions arrive at least once.  Re-delivering the decision a record
already has is a no-op (an edit patch is not applied twice); a different
decision for a record that already has one is ignored and audited, never
applied.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from ghgpipe.audit.audit_log import record_event
from ghgpipe.audit.events import DECISION_EVENTS, EVENT_RESOLUTION_IGNORED
from ghgpipe.core.constants import (
    DECISION_EDITED,
    DECISION_REJECTED,
    REQUEST_RESOLVED,
    TERMINAL_RECORD_STATES,
    VALID_DECISIONS,
)
from ghgpipe.db.models import EmissionsRecord
from ghgpipe.db.repositories import EmissionsRecordRepository, ReviewRequestRepository
from ghgpipe.extraction.schema import apply_patch

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    record: EmissionsRecord
    changed: bool
    ignored: bool = False


class ReviewWorkflow:
    """Apply reviewer decisions to persisted records with audit logging."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.records = EmissionsRecordRepository(db_session)
        self.requests = ReviewRequestRepository(db_session)

    def resolve(
        self,
        record_id: str,
        decision: str,
        actor: str,
        patch: dict[str, Any] | None = None,
    ) -> Resolution:
        """Apply *decision* to the record.

        Raises ``KeyError`` when the record does not exist and ``ValueError``
        for an unknown decision or a patch that does not fit the schema.
        """
        if decision not in VALID_DECISIONS:
            raise ValueError(f"Invalid decision {decision!r}; must be one of {sorted(VALID_DECISIONS)}")

        record = self.records.get(record_id)
        if record is None:
            raise KeyError(f"EmissionsRecord {record_id} not found")

        current = record.review_status
        if current == decision:
            logger.info("Record %s already %s; repeated decision ignored", record_id, decision)
            return Resolution(record=record, changed=False)

        if current in TERMINAL_RECORD_STATES:
            logger.warning(
                "Record %s is %s; conflicting decision %s from %s ignored",
                record_id, current, decision, actor,
            )
            record_event(
                self.db,
                event_type=EVENT_RESOLUTION_IGNORED,
                actor=actor,
                record_id=record_id,
                fingerprint=record.fingerprint,
                decision=decision,
                rationale=f"record already {current}",
            )
            return Resolution(record=record, changed=False, ignored=True)

        fields: dict[str, Any] = {"review_status": decision}
        if decision == DECISION_REJECTED:
            fields.update(verified=False, visible=False)
        else:
            fields.update(verified=True, visible=True)
            if decision == DECISION_EDITED:
                if not patch:
                    raise ValueError("An edit decision requires a patch")
                data = apply_patch(record.data, patch)
                fields.update(
                    data=data,
                    applied_patch=patch,
                    company_name=data.get("companyName") or None,
                    industry=data.get("industry") or None,
                )
        self.records.update(record, **fields)

        request = self.requests.get_for_record(record_id)
        if request is not None:
            self.requests.update(
                request,
                status=REQUEST_RESOLVED,
                decision=decision,
                resolved_by=actor,
                resolved_at=datetime.now(timezone.utc),
            )

        record_event(
            self.db,
            event_type=DECISION_EVENTS[decision],
            actor=actor,
            record_id=record_id,
            fingerprint=record.fingerprint,
            decision=decision,
        )
        logger.info("Record %s %s by %s", record_id, decision, actor)
        return Resolution(record=record, changed=True)
