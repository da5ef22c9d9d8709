"""Segment task: document markdown -> ordered paragraph rows."""
from __future__ import annotations

from sqlalchemy.orm import sessionmaker

from ghgpipe.core.constants import DOC_SEGMENTED
from ghgpipe.db.repositories import ParagraphRepository, ReportRepository
from ghgpipe.db.session import session_scope
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.readers.segmenter import segment
from ghgpipe.tasks.common import current_report
from ghgpipe.tasks.error_handler import ConversionError


class SegmentTask:
    def __init__(self, session_factory: sessionmaker, *, min_chars: int = 40, max_chars: int = 1500) -> None:
        self.session_factory = session_factory
        self.min_chars = min_chars
        self.max_chars = max_chars

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        with session_scope(self.session_factory) as db:
            report = current_report(db, payload)
            if report is None:
                return None
            paragraphs = segment(report.markdown or "", min_chars=self.min_chars, max_chars=self.max_chars)
            if not paragraphs:
                raise ConversionError(f"Document {report.fingerprint} has no paragraphs")
            count = ParagraphRepository(db).replace_for(report.fingerprint, paragraphs)
            ReportRepository(db).mark(report.fingerprint, DOC_SEGMENTED, paragraph_count=count)
        ctx.log(f"Segmented into {count} paragraph(s)")
        return payload
