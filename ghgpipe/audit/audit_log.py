"""Append-only audit logger.

Provides ``record_event()`` to persist ``AuditEvent`` rows.  Rows are never
updated or deleted by the application.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghgpipe.audit.events import VALID_EVENT_TYPES
from ghgpipe.db.models import AuditEvent

logger = logging.getLogger(__name__)


def record_event(
    db_session: Session,
    event_type: str,
    actor: str,
    record_id: str | None = None,
    fingerprint: str | None = None,
    decision: str | None = None,
    rationale: str | None = None,
) -> AuditEvent:
    """Create and persist an ``AuditEvent``.

    Raises ``ValueError`` for invalid inputs.  Flushes but does **not**
    commit -- the caller controls the transaction boundary.
    """
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )

    if not actor or not actor.strip():
        raise ValueError("actor must be a non-empty string")

    event = AuditEvent(
        event_type=event_type,
        actor=actor,
        record_id=record_id,
        fingerprint=fingerprint,
        decision=decision,
        rationale=rationale,
    )
    db_session.add(event)
    db_session.flush()

    logger.info("Audit event recorded: type=%s actor=%s record=%s", event_type, actor, record_id)
    return event


def get_record_history(db_session: Session, record_id: str) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows for *record_id*, ordered by timestamp."""
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.record_id == record_id)
        .order_by(AuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())
