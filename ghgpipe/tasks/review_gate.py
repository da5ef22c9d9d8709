"""Review gate task: persist the draft provisionally and publish it for review.

State machine per record: ``published`` -> {``approved``, ``edited``,
``rejected``}.  The job finishes as soon as the message is posted; the
decision comes back later as a ``resolve`` job.

Progress checkpoints: 5 start, 10 before persisting, 40 before publishing,
100 done.

Retries are safe: the provisional record is upserted by fingerprint (its id
never changes), the review request is get-or-create, and publishing is
skipped once a message id is recorded.
"""
from __future__ import annotations

import json
import logging

from sqlalchemy.orm import sessionmaker

from ghgpipe.audit.audit_log import record_event
from ghgpipe.audit.events import EVENT_REVIEW_PUBLISHED
from ghgpipe.core.constants import DOC_IN_REVIEW, REQUEST_PUBLISHED, TERMINAL_RECORD_STATES
from ghgpipe.db.repositories import EmissionsRecordRepository, ReportRepository, ReviewRequestRepository
from ghgpipe.db.session import session_scope
from ghgpipe.extraction.schema import SCHEMA_VERSION, complete_record
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.review.channel import ReviewChannel, build_review_message, publish_token
from ghgpipe.tasks.common import PIPELINE_ACTOR, current_report, require
from ghgpipe.tasks.error_handler import ReviewChannelError

logger = logging.getLogger(__name__)

_LOGGED_PAYLOAD_CHARS = 500


class ReviewGateTask:
    def __init__(self, session_factory: sessionmaker, channel: ReviewChannel, *, preview_chars: int = 100) -> None:
        self.session_factory = session_factory
        self.channel = channel
        self.preview_chars = preview_chars

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        ctx.update_progress(5)
        draft = dict(require(payload.draft, "draft"))
        draft["url"] = payload.url
        draft = complete_record(draft)
        ctx.log(f"Sending for review: {json.dumps(draft, ensure_ascii=False)[:_LOGGED_PAYLOAD_CHARS]}")

        ctx.update_progress(10)
        with session_scope(self.session_factory) as db:
            report = current_report(db, payload)
            if report is None:
                return None
            fingerprint = report.fingerprint
            record = EmissionsRecordRepository(db).upsert_provisional(
                fingerprint=fingerprint,
                url=payload.url,
                data=draft,
                schema_version=SCHEMA_VERSION,
            )
            request = ReviewRequestRepository(db).get_or_create(record.id, publish_token(record.id))
            record_id = record.id
            decided = record.review_status in TERMINAL_RECORD_STATES
            token = request.idempotency_token
            published = (request.channel_id, request.message_id) if request.message_id else None
        ctx.log(f"Saved provisional record {record_id}")

        if decided:
            ctx.log(f"Record {record_id} already has a review decision; not publishing again")
            ctx.update_progress(100)
            return payload.advance(record_id=record_id)
        if published is not None:
            ctx.log(f"Record {record_id} already published as message {published[1]}")
            ctx.update_progress(100)
            return payload.advance(record_id=record_id, channel_id=published[0], message_id=published[1])

        message = build_review_message(record_id, draft, payload.url, preview_chars=self.preview_chars)
        ctx.update_progress(40)
        try:
            receipt = self.channel.publish(message, idempotency_token=token)
        except ReviewChannelError as exc:
            logger.error(
                "Publishing record %s for review failed: %s; payload: %s",
                record_id, exc, message.content[:_LOGGED_PAYLOAD_CHARS],
            )
            ctx.log(f"Error sending review message: {exc}")
            raise

        with session_scope(self.session_factory) as db:
            request = ReviewRequestRepository(db).get_for_record(record_id)
            ReviewRequestRepository(db).mark_published(
                request,
                channel_id=receipt.channel_id,
                message_id=receipt.message_id,
                status=REQUEST_PUBLISHED,
            )
            ReportRepository(db).mark(fingerprint, DOC_IN_REVIEW)
            record_event(
                db,
                event_type=EVENT_REVIEW_PUBLISHED,
                actor=PIPELINE_ACTOR,
                record_id=record_id,
                fingerprint=fingerprint,
                rationale=f"channel {receipt.channel_id} message {receipt.message_id}",
            )
        ctx.log(f"Published record {record_id} as message {receipt.message_id}")
        ctx.update_progress(100)
        return payload.advance(record_id=record_id, channel_id=receipt.channel_id, message_id=receipt.message_id)
