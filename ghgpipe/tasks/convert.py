"""Convert task: stored report bytes -> markdown on the document row."""
from __future__ import annotations

import logging

from sqlalchemy.orm import sessionmaker

from ghgpipe.core.constants import DOC_CONVERTED
from ghgpipe.db.repositories import ReportRepository
from ghgpipe.db.session import session_scope
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.readers.registry import get_reader
from ghgpipe.readers.store import DocumentStore
from ghgpipe.tasks.common import current_report, require
from ghgpipe.tasks.error_handler import ConversionError

logger = logging.getLogger(__name__)


class ConvertTask:
    def __init__(self, session_factory: sessionmaker, store: DocumentStore) -> None:
        self.session_factory = session_factory
        self.store = store

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        fingerprint = require(payload.fingerprint, "fingerprint")
        with session_scope(self.session_factory) as db:
            if current_report(db, payload) is None:
                return None

        if not self.store.exists(fingerprint):
            raise ConversionError(f"No stored bytes for {fingerprint}")

        document = get_reader(self.store.path_for(fingerprint)).read()
        if not document.markdown.strip():
            raise ConversionError(f"No extractable text in {fingerprint} ({document.content_type})")
        ctx.log(f"Converted {document.content_type} to {len(document.markdown)} characters of markdown")

        with session_scope(self.session_factory) as db:
            ReportRepository(db).mark(
                fingerprint,
                DOC_CONVERTED,
                markdown=document.markdown,
                content_type=document.content_type,
                page_count=document.page_count,
            )
        return payload
