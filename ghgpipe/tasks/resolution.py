"""Resolve task: apply a reviewer's decision to the persisted record.

Enqueued out of band by the interaction handler, never by the review gate.
Verified records are upserted into the report search index afterwards; a
rejected record is removed from it.  Both index writes are idempotent, so
they run on every delivery, including repeated ones that changed nothing
in the database.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from ghgpipe.core.constants import RECORD_REJECTED
from ghgpipe.db.session import session_scope
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.retrieval.retriever import Embedder
from ghgpipe.retrieval.vector_store import VectorStore
from ghgpipe.review.tables import format_amount
from ghgpipe.review.workflow import ReviewWorkflow
from ghgpipe.tasks.common import require
from ghgpipe.tasks.error_handler import InvariantViolationError

logger = logging.getLogger(__name__)


def report_search_text(data: dict[str, Any]) -> str:
    """Short text describing a record, embedded for the report search index."""
    emissions = data.get("emissions") or {}
    parts = [
        data.get("companyName") or "",
        data.get("industry") or "",
        data.get("sector") or "",
        f"reporting year {emissions.get('reportingYear') or '-'}",
        f"scope 1 {format_amount((emissions.get('scope1') or {}).get('emissions'))}",
        f"scope 2 {format_amount((emissions.get('scope2') or {}).get('emissions'))}",
        f"scope 3 {format_amount((emissions.get('scope3') or {}).get('emissions'))}",
    ]
    return " | ".join(p for p in parts if p)


class ResolveTask:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        embedder: Embedder | None = None,
        store: VectorStore | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.embedder = embedder
        self.store = store

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        record_id = require(payload.record_id, "recordId")
        decision = require(payload.decision, "decision")
        actor = payload.actor or "unknown"

        with session_scope(self.session_factory) as db:
            try:
                resolution = ReviewWorkflow(db).resolve(record_id, decision, actor, payload.patch)
            except KeyError as exc:
                raise InvariantViolationError(f"Cannot resolve record {record_id}: not found") from exc
            except ValueError as exc:
                raise InvariantViolationError(f"Cannot resolve record {record_id}: {exc}") from exc
            record = resolution.record
            status = record.review_status
            visible = record.visible
            data = dict(record.data)

        if resolution.ignored:
            ctx.log(f"Record {record_id} is already {status}; {decision} ignored")
        elif not resolution.changed:
            ctx.log(f"Record {record_id} already {status}; nothing to do")
        else:
            ctx.log(f"Record {record_id} {status} by {actor}")

        if self.store is not None and self.embedder is not None:
            if visible:
                vector = self.embedder.embed([report_search_text(data)])[0]
                self.store.index_report(
                    record_id,
                    vector,
                    {
                        "recordId": record_id,
                        "companyName": data.get("companyName") or "",
                        "url": data.get("url") or "",
                        "reportingYear": (data.get("emissions") or {}).get("reportingYear"),
                    },
                )
            elif status == RECORD_REJECTED:
                self.store.remove_report(record_id)
        return None
