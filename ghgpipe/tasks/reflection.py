"""Reflect task: self-check the draft against the context it came from."""
from __future__ import annotations

from sqlalchemy.orm import sessionmaker

from ghgpipe.audit.audit_log import record_event
from ghgpipe.audit.events import EVENT_DRAFT_REFLECTED
from ghgpipe.db.repositories import ParagraphRepository
from ghgpipe.db.session import session_scope
from ghgpipe.extraction.reflector import Reflector
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.retrieval.vector_store import RetrievedParagraph
from ghgpipe.tasks.common import PIPELINE_ACTOR, current_report, require


class ReflectTask:
    def __init__(self, session_factory: sessionmaker, reflector: Reflector) -> None:
        self.session_factory = session_factory
        self.reflector = reflector

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        draft = require(payload.draft, "draft")
        with session_scope(self.session_factory) as db:
            report = current_report(db, payload)
            if report is None:
                return None
            fingerprint = report.fingerprint
            paragraphs = [
                RetrievedParagraph(seq=p.seq, text=p.text)
                for p in ParagraphRepository(db).by_sequence(fingerprint, payload.context or [])
            ]

        reflection = self.reflector.reflect(fingerprint, draft, paragraphs)
        for note in reflection.notes:
            ctx.log(note)
        ctx.log(
            f"Applied {len(reflection.applied)} correction(s); "
            f"reliability {reflection.draft.get('reliability') or 'unrated'}"
        )

        with session_scope(self.session_factory) as db:
            record_event(
                db,
                event_type=EVENT_DRAFT_REFLECTED,
                actor=PIPELINE_ACTOR,
                fingerprint=fingerprint,
                rationale="; ".join(reflection.notes) or None,
            )
        return payload.advance(draft=reflection.draft)
