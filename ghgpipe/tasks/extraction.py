"""Extract task: retrieval-augmented draft extraction."""
from __future__ import annotations

from sqlalchemy.orm import sessionmaker

from ghgpipe.audit.audit_log import record_event
from ghgpipe.audit.events import EVENT_DRAFT_EXTRACTED
from ghgpipe.core.constants import DOC_EXTRACTED
from ghgpipe.db.repositories import ReportRepository
from ghgpipe.db.session import session_scope
from ghgpipe.extraction.extractor import Extractor
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.tasks.common import PIPELINE_ACTOR, current_report


class ExtractTask:
    def __init__(self, session_factory: sessionmaker, extractor: Extractor) -> None:
        self.session_factory = session_factory
        self.extractor = extractor

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        with session_scope(self.session_factory) as db:
            report = current_report(db, payload)
            if report is None:
                return None
            fingerprint = report.fingerprint

        extraction = self.extractor.extract(fingerprint, payload.url)
        if extraction.skipped_groups:
            ctx.log(f"No context found for: {', '.join(extraction.skipped_groups)}")
        ctx.log(f"Draft extracted from {len(extraction.context)} paragraph(s)")

        with session_scope(self.session_factory) as db:
            ReportRepository(db).mark(fingerprint, DOC_EXTRACTED)
            record_event(
                db,
                event_type=EVENT_DRAFT_EXTRACTED,
                actor=PIPELINE_ACTOR,
                fingerprint=fingerprint,
                rationale=f"context paragraphs: {extraction.context}",
            )
        return payload.advance(draft=extraction.draft, context=extraction.context)
