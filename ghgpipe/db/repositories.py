from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Generic, TypeVar
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ghgpipe.core.constants import (
    DOC_FAILED,
    DOC_PROCESSING,
    RECORD_PENDING_REVIEW,
    REQUEST_PENDING,
    TERMINAL_RECORD_STATES,
)
from ghgpipe.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: str) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity


class ReportRepository(BaseRepository[models.Report]):
    model = models.Report

    def get_by_fingerprint(self, fingerprint: str) -> models.Report | None:
        stmt = select(models.Report).where(models.Report.fingerprint == fingerprint)
        return self.db.execute(stmt).scalar_one_or_none()

    def claim(self, *, fingerprint: str, url: str, job_id: str) -> tuple[models.Report, bool]:
        """Claim *fingerprint* for the fetch job *job_id*.

        Returns ``(report, claimed)``.  ``claimed`` is ``False`` when another
        live chain already owns the fingerprint; the caller must then stop.
        A retried fetch job re-claims its own row with the same ``run_id``;
        a chain that dead-lettered can be claimed again under a new run.
        """
        report = self.get_by_fingerprint(fingerprint)
        if report is None:
            report = self.create(
                fingerprint=fingerprint,
                url=url,
                run_id=str(uuid4()),
                claimed_by_job=job_id,
                status=DOC_PROCESSING,
            )
            return report, True

        if report.claimed_by_job == job_id:
            return report, True

        if report.status == DOC_FAILED:
            self.update(
                report,
                url=url,
                run_id=str(uuid4()),
                claimed_by_job=job_id,
                status=DOC_PROCESSING,
                error_summary=None,
            )
            return report, True

        return report, False

    def mark(self, fingerprint: str, status: str, **fields) -> models.Report:
        report = self.get_by_fingerprint(fingerprint)
        if report is None:
            raise KeyError(f"Report {fingerprint} not found")
        return self.update(report, status=status, **fields)


class ParagraphRepository(BaseRepository[models.Paragraph]):
    model = models.Paragraph

    def replace_for(self, fingerprint: str, texts: Sequence[str]) -> int:
        """Upsert paragraphs ``0..len(texts)-1`` and drop any stale tail.

        Rows are keyed by ``(fingerprint, seq)``; re-running with the same
        texts leaves the table unchanged.
        """
        existing = {
            p.seq: p
            for p in self.db.execute(
                select(models.Paragraph).where(models.Paragraph.fingerprint == fingerprint)
            ).scalars()
        }
        for seq, text in enumerate(texts):
            row = existing.get(seq)
            if row is None:
                self.db.add(models.Paragraph(fingerprint=fingerprint, seq=seq, text=text))
            elif row.text != text:
                row.text = text
        self.db.execute(
            delete(models.Paragraph).where(
                models.Paragraph.fingerprint == fingerprint,
                models.Paragraph.seq >= len(texts),
            )
        )
        self.db.flush()
        return len(texts)

    def for_document(self, fingerprint: str) -> list[models.Paragraph]:
        stmt = (
            select(models.Paragraph)
            .where(models.Paragraph.fingerprint == fingerprint)
            .order_by(models.Paragraph.seq.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def by_sequence(self, fingerprint: str, seqs: Sequence[int]) -> list[models.Paragraph]:
        if not seqs:
            return []
        stmt = (
            select(models.Paragraph)
            .where(models.Paragraph.fingerprint == fingerprint, models.Paragraph.seq.in_(list(seqs)))
            .order_by(models.Paragraph.seq.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class EmissionsRecordRepository(BaseRepository[models.EmissionsRecord]):
    model = models.EmissionsRecord

    def get_by_fingerprint(self, fingerprint: str) -> models.EmissionsRecord | None:
        stmt = select(models.EmissionsRecord).where(models.EmissionsRecord.fingerprint == fingerprint)
        return self.db.execute(stmt).scalar_one_or_none()

    def upsert_provisional(
        self,
        *,
        fingerprint: str,
        url: str,
        data: dict,
        schema_version: str,
    ) -> models.EmissionsRecord:
        """Create or refresh the provisional record for *fingerprint*.

        The record id is assigned on first insert and never changes.  A
        record that already reached a terminal review state is returned
        untouched.
        """
        record = self.get_by_fingerprint(fingerprint)
        fields = {
            "url": url,
            "company_name": data.get("companyName") or None,
            "industry": data.get("industry") or None,
            "data": data,
            "schema_version": schema_version,
        }
        if record is None:
            return self.create(
                fingerprint=fingerprint,
                review_status=RECORD_PENDING_REVIEW,
                verified=False,
                visible=False,
                **fields,
            )
        if record.review_status in TERMINAL_RECORD_STATES:
            return record
        return self.update(record, **fields)

    def list_visible(self, limit: int = 100, offset: int = 0) -> list[models.EmissionsRecord]:
        stmt = (
            select(models.EmissionsRecord)
            .where(models.EmissionsRecord.visible.is_(True))
            .order_by(models.EmissionsRecord.updated_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())


class ReviewRequestRepository(BaseRepository[models.ReviewRequest]):
    model = models.ReviewRequest

    def get_for_record(self, record_id: str) -> models.ReviewRequest | None:
        stmt = select(models.ReviewRequest).where(models.ReviewRequest.record_id == record_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_or_create(self, record_id: str, idempotency_token: str) -> models.ReviewRequest:
        request = self.get_for_record(record_id)
        if request is not None:
            return request
        return self.create(record_id=record_id, idempotency_token=idempotency_token, status=REQUEST_PENDING)

    def mark_published(
        self,
        request: models.ReviewRequest,
        *,
        channel_id: str,
        message_id: str,
        status: str,
    ) -> models.ReviewRequest:
        return self.update(
            request,
            channel_id=channel_id,
            message_id=message_id,
            status=status,
            published_at=datetime.now(timezone.utc),
        )


class DeadLetterRepository(BaseRepository[models.DeadLetter]):
    model = models.DeadLetter

    def recent(self, queue: str | None = None, limit: int = 100) -> list[models.DeadLetter]:
        stmt = select(models.DeadLetter).order_by(models.DeadLetter.created_at.desc()).limit(limit)
        if queue is not None:
            stmt = stmt.where(models.DeadLetter.queue == queue)
        return list(self.db.execute(stmt).scalars().all())


class LLMCallLogRepository(BaseRepository[models.LLMCallLog]):
    model = models.LLMCallLog


class AuditEventRepository(BaseRepository[models.AuditEvent]):
    model = models.AuditEvent
