"""Index task: embed paragraphs and upsert them into the vector store.

Points are keyed by ``(fingerprint, seq)``, so re-indexing overwrites; points
left over from a longer earlier segmentation are deleted afterwards.
"""
from __future__ import annotations

import logging

from sqlalchemy.orm import sessionmaker

from ghgpipe.core.constants import DOC_INDEXED
from ghgpipe.db.repositories import ParagraphRepository, ReportRepository
from ghgpipe.db.session import session_scope
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.retrieval.retriever import Embedder
from ghgpipe.retrieval.vector_store import VectorStore
from ghgpipe.tasks.common import current_report

logger = logging.getLogger(__name__)


class IndexTask:
    def __init__(
        self,
        session_factory: sessionmaker,
        embedder: Embedder,
        store: VectorStore,
        *,
        batch_size: int = 16,
    ) -> None:
        self.session_factory = session_factory
        self.embedder = embedder
        self.store = store
        self.batch_size = batch_size

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        with session_scope(self.session_factory) as db:
            report = current_report(db, payload)
            if report is None:
                return None
            fingerprint = report.fingerprint
            paragraphs = [(p.seq, p.text) for p in ParagraphRepository(db).for_document(fingerprint)]

        total = len(paragraphs)
        for start in range(0, total, self.batch_size):
            batch = paragraphs[start:start + self.batch_size]
            vectors = self.embedder.embed([text for _, text in batch])
            self.store.upsert_paragraphs(fingerprint, batch, vectors)
            ctx.update_progress(int(100 * (start + len(batch)) / total))
        self.store.delete_stale(fingerprint, total)
        ctx.log(f"Indexed {total} paragraph(s)")

        with session_scope(self.session_factory) as db:
            ReportRepository(db).mark(fingerprint, DOC_INDEXED)
        return payload
