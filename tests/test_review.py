"""Tests for the review gate, the decision workflow and the resolve task."""
from __future__ import annotations

import pytest

from ghgpipe.audit.audit_log import get_record_history
from ghgpipe.audit.events import EVENT_APPROVAL, EVENT_EDIT, EVENT_RESOLUTION_IGNORED
from ghgpipe.core.constants import (
    DOC_IN_REVIEW,
    RECORD_APPROVED,
    RECORD_EDITED,
    RECORD_PENDING_REVIEW,
    RECORD_REJECTED,
    REQUEST_PUBLISHED,
    REQUEST_RESOLVED,
)
from ghgpipe.db.repositories import EmissionsRecordRepository, ReportRepository, ReviewRequestRepository
from ghgpipe.extraction.schema import SCHEMA_VERSION, empty_record
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.review.workflow import ReviewWorkflow
from ghgpipe.tasks.error_handler import InvariantViolationError, ReviewChannelError
from ghgpipe.tasks.resolution import ResolveTask, report_search_text
from ghgpipe.tasks.review_gate import ReviewGateTask


def _draft() -> dict:
    draft = empty_record()
    draft["companyName"] = "Exempel AB"
    draft["emissions"]["scope1"]["emissions"] = 1200
    return draft


def _claimed_payload(session_factory, fingerprint: str = "fp1") -> JobPayload:
    with session_factory() as db:
        report, _ = ReportRepository(db).claim(fingerprint=fingerprint, url="https://example.com/r", job_id="fetch:1")
        run_id = report.run_id
        db.commit()
    return JobPayload(url="https://example.com/r", fingerprint=fingerprint, run_id=run_id, draft=_draft())


def _record(session_factory, record_id: str = "42") -> str:
    with session_factory() as db:
        EmissionsRecordRepository(db).create(
            id=record_id,
            fingerprint=f"fp-{record_id}",
            url="https://example.com/r",
            company_name="Exempel AB",
            data={**_draft(), "url": "https://example.com/r"},
            schema_version=SCHEMA_VERSION,
            review_status=RECORD_PENDING_REVIEW,
        )
        ReviewRequestRepository(db).get_or_create(record_id, "token")
        db.commit()
    return record_id


# ===========================================================================
# Review gate
# ===========================================================================

class TestReviewGate:
    def test_publishes_once_and_records_message(self, session_factory, channel, make_ctx) -> None:
        payload = _claimed_payload(session_factory)
        ctx = make_ctx(queue="review")

        result = ReviewGateTask(session_factory, channel).run(ctx, payload)

        assert result.message_id == "msg-1"
        assert result.channel_id == "review-channel"
        assert ctx.progress == [5, 10, 40, 100]
        assert len(channel.published) == 1
        with session_factory() as db:
            record = EmissionsRecordRepository(db).get(result.record_id)
            assert record.review_status == RECORD_PENDING_REVIEW
            assert record.visible is False
            assert record.data["url"] == "https://example.com/r"
            request = ReviewRequestRepository(db).get_for_record(record.id)
            assert request.status == REQUEST_PUBLISHED
            assert request.message_id == "msg-1"
            assert ReportRepository(db).get_by_fingerprint("fp1").status == DOC_IN_REVIEW

    def test_retry_after_publish_does_not_post_again(self, session_factory, channel, make_ctx) -> None:
        payload = _claimed_payload(session_factory)
        task = ReviewGateTask(session_factory, channel)
        first = task.run(make_ctx(queue="review"), payload)
        second = task.run(make_ctx(queue="review"), payload)

        assert second.record_id == first.record_id
        assert second.message_id == first.message_id
        assert len(channel.published) == 1

    def test_failed_publish_keeps_record_id(self, session_factory, channel, make_ctx) -> None:
        channel.fail_times = 1
        payload = _claimed_payload(session_factory)
        task = ReviewGateTask(session_factory, channel)

        with pytest.raises(ReviewChannelError):
            task.run(make_ctx(queue="review"), payload)
        with session_factory() as db:
            first_id = EmissionsRecordRepository(db).get_by_fingerprint("fp1").id

        result = task.run(make_ctx(queue="review"), payload)
        assert result.record_id == first_id
        assert len(channel.published) == 1
        token = channel.published[0][1]
        with session_factory() as db:
            assert ReviewRequestRepository(db).get_for_record(first_id).idempotency_token == token

    def test_decided_record_is_not_republished(self, session_factory, channel, make_ctx) -> None:
        payload = _claimed_payload(session_factory)
        task = ReviewGateTask(session_factory, channel)
        first = task.run(make_ctx(queue="review"), payload)
        with session_factory() as db:
            ReviewWorkflow(db).resolve(first.record_id, RECORD_APPROVED, "alice")
            request = ReviewRequestRepository(db).get_for_record(first.record_id)
            request.message_id = None
            db.commit()

        task.run(make_ctx(queue="review"), payload)
        assert len(channel.published) == 1

    def test_superseded_run_stops(self, session_factory, channel, make_ctx) -> None:
        payload = _claimed_payload(session_factory).advance(run_id="old-run")
        assert ReviewGateTask(session_factory, channel).run(make_ctx(), payload) is None
        assert channel.published == []


# ===========================================================================
# Workflow
# ===========================================================================

class TestReviewWorkflow:
    def test_approve(self, session_factory) -> None:
        record_id = _record(session_factory)
        with session_factory() as db:
            resolution = ReviewWorkflow(db).resolve(record_id, RECORD_APPROVED, "alice")
            db.commit()
            assert resolution.changed
            record = resolution.record
            assert record.review_status == RECORD_APPROVED
            assert record.verified and record.visible
            request = ReviewRequestRepository(db).get_for_record(record_id)
            assert request.status == REQUEST_RESOLVED
            assert request.resolved_by == "alice"
            assert [e.event_type for e in get_record_history(db, record_id)] == [EVENT_APPROVAL]

    def test_repeat_is_a_no_op(self, session_factory) -> None:
        record_id = _record(session_factory)
        with session_factory() as db:
            ReviewWorkflow(db).resolve(record_id, RECORD_APPROVED, "alice")
            again = ReviewWorkflow(db).resolve(record_id, RECORD_APPROVED, "alice")
            assert not again.changed and not again.ignored
            assert len(get_record_history(db, record_id)) == 1

    def test_conflicting_decision_is_ignored_and_audited(self, session_factory) -> None:
        record_id = _record(session_factory)
        with session_factory() as db:
            ReviewWorkflow(db).resolve(record_id, RECORD_APPROVED, "alice")
            late = ReviewWorkflow(db).resolve(record_id, RECORD_REJECTED, "bob")
            assert late.ignored
            assert late.record.review_status == RECORD_APPROVED
            assert late.record.visible
            events = get_record_history(db, record_id)
            assert events[-1].event_type == EVENT_RESOLUTION_IGNORED
            assert events[-1].actor == "bob"

    def test_edit_applies_patch_once(self, session_factory) -> None:
        record_id = _record(session_factory)
        patch = {"companyName": "Exempel Holding AB", "emissions": {"scope1": {"emissions": 1300}}}
        with session_factory() as db:
            workflow = ReviewWorkflow(db)
            workflow.resolve(record_id, RECORD_EDITED, "alice", patch)
            record = workflow.resolve(record_id, RECORD_EDITED, "alice", patch).record
            assert record.data["emissions"]["scope1"]["emissions"] == 1300
            assert record.data["url"] == "https://example.com/r"
            assert record.company_name == "Exempel Holding AB"
            assert record.applied_patch == patch
            assert [e.event_type for e in get_record_history(db, record_id)] == [EVENT_EDIT]

    def test_edit_without_patch(self, session_factory) -> None:
        record_id = _record(session_factory)
        with session_factory() as db:
            with pytest.raises(ValueError):
                ReviewWorkflow(db).resolve(record_id, RECORD_EDITED, "alice")

    def test_edit_with_unknown_field(self, session_factory) -> None:
        record_id = _record(session_factory)
        with session_factory() as db:
            with pytest.raises(ValueError, match="Unknown field"):
                ReviewWorkflow(db).resolve(record_id, RECORD_EDITED, "alice", {"colour": "green"})

    def test_reject_stays_hidden(self, session_factory) -> None:
        record_id = _record(session_factory)
        with session_factory() as db:
            record = ReviewWorkflow(db).resolve(record_id, RECORD_REJECTED, "alice").record
            assert record.review_status == RECORD_REJECTED
            assert not record.visible and not record.verified

    def test_unknown_record_and_decision(self, session_factory) -> None:
        with session_factory() as db:
            with pytest.raises(KeyError):
                ReviewWorkflow(db).resolve("missing", RECORD_APPROVED, "alice")
            with pytest.raises(ValueError):
                ReviewWorkflow(db).resolve("missing", "maybe", "alice")


# ===========================================================================
# Resolve task
# ===========================================================================

class TestResolveTask:
    def test_approved_record_is_indexed(self, session_factory, embedder, vector_store, make_ctx) -> None:
        record_id = _record(session_factory)
        task = ResolveTask(session_factory, embedder=embedder, store=vector_store)
        payload = JobPayload(record_id=record_id, decision=RECORD_APPROVED, actor="alice")

        assert task.run(make_ctx(queue="resolve"), payload) is None
        task.run(make_ctx(queue="resolve"), payload)

        assert vector_store.client.count(vector_store.report_collection).count == 1

    def test_rejected_record_is_removed_from_index(self, session_factory, embedder, vector_store, make_ctx) -> None:
        record_id = _record(session_factory)
        vector_store.index_report(record_id, embedder.embed(["x"])[0], {"recordId": record_id})
        task = ResolveTask(session_factory, embedder=embedder, store=vector_store)

        task.run(make_ctx(), JobPayload(record_id=record_id, decision=RECORD_REJECTED, actor="alice"))

        assert vector_store.client.count(vector_store.report_collection).count == 0

    def test_bad_request_is_invariant_violation(self, session_factory, make_ctx) -> None:
        record_id = _record(session_factory)
        task = ResolveTask(session_factory)
        with pytest.raises(InvariantViolationError):
            task.run(make_ctx(), JobPayload(record_id="missing", decision=RECORD_APPROVED, actor="a"))
        with pytest.raises(InvariantViolationError):
            task.run(make_ctx(), JobPayload(record_id=record_id, decision=RECORD_EDITED, actor="a"))

    def test_logs_ignored_conflict(self, session_factory, make_ctx) -> None:
        record_id = _record(session_factory)
        task = ResolveTask(session_factory)
        task.run(make_ctx(), JobPayload(record_id=record_id, decision=RECORD_APPROVED, actor="a"))
        ctx = make_ctx()
        task.run(ctx, JobPayload(record_id=record_id, decision=RECORD_REJECTED, actor="b"))
        assert "ignored" in ctx.job.logs[-1]


def test_report_search_text() -> None:
    text = report_search_text({**_draft(), "industry": "Fastigheter"})
    assert text.startswith("Exempel AB | Fastigheter | reporting year -")
    assert "scope 1 1 200" in text
