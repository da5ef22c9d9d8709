"""Tests for the fetch stage: download, fingerprint claim and dead-lettering.

``httpx.get`` is patched in the fetch module namespace.
"""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from ghgpipe.core.constants import DOC_PROCESSING, STAGE_CONVERT, STAGE_FETCH
from ghgpipe.db.repositories import DeadLetterRepository, ReportRepository
from ghgpipe.pipeline.dag import start_pipeline
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.readers.store import fingerprint_of
from ghgpipe.tasks.error_handler import FetchError
from ghgpipe.tasks.fetch import FetchTask

URL = "https://example.com/report.pdf"


def _ok(content: bytes) -> MagicMock:
    response = MagicMock()
    response.content = content
    response.status_code = 200
    response.raise_for_status.return_value = None
    return response


class TestFetchTask:
    def test_claims_fingerprint(self, session_factory, document_store, make_ctx) -> None:
        with patch("ghgpipe.tasks.fetch.httpx.get", return_value=_ok(b"report bytes")):
            result = FetchTask(session_factory, document_store).run(make_ctx("fetch:a"), JobPayload(url=URL))

        assert result.fingerprint == fingerprint_of(b"report bytes")
        assert document_store.read(result.fingerprint) == b"report bytes"
        with session_factory() as db:
            report = ReportRepository(db).get_by_fingerprint(result.fingerprint)
            assert report.run_id == result.run_id
            assert report.status == DOC_PROCESSING
            assert report.size_bytes == len(b"report bytes")

    def test_same_bytes_from_second_job_stop(self, session_factory, document_store, make_ctx) -> None:
        task = FetchTask(session_factory, document_store)
        with patch("ghgpipe.tasks.fetch.httpx.get", return_value=_ok(b"report bytes")):
            first = task.run(make_ctx("fetch:a"), JobPayload(url=URL))
            retried = task.run(make_ctx("fetch:a"), JobPayload(url=URL))
            duplicate = task.run(make_ctx("fetch:b"), JobPayload(url="https://mirror.example.com/r.pdf"))

        assert retried.run_id == first.run_id
        assert duplicate is None

    def test_http_error_status(self, session_factory, document_store) -> None:
        request = httpx.Request("GET", URL)
        response = MagicMock()
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "gone", request=request, response=httpx.Response(404, request=request)
        )
        with patch("ghgpipe.tasks.fetch.httpx.get", return_value=response):
            with pytest.raises(FetchError) as excinfo:
                FetchTask(session_factory, document_store).download(URL)
        assert excinfo.value.status_code == 404

    def test_empty_body(self, session_factory, document_store) -> None:
        with patch("ghgpipe.tasks.fetch.httpx.get", return_value=_ok(b"")):
            with pytest.raises(FetchError, match="empty"):
                FetchTask(session_factory, document_store).download(URL)


def test_dead_url_is_dead_lettered_after_five_attempts(harness, session_factory) -> None:
    with patch("ghgpipe.tasks.fetch.httpx.get", side_effect=httpx.ConnectError("connection refused")) as get:
        job_id = start_pipeline(harness.broker, URL)
        harness.broker.run_until_idle()

    job = harness.broker.get_job(job_id)
    assert job.state == "failed"
    assert job.attempts == 5
    assert get.call_count == 5
    assert harness.clock.slept == [1.0, 2.0, 4.0, 8.0]
    assert harness.broker.jobs(queue=STAGE_CONVERT) == []

    with session_factory() as db:
        entries = DeadLetterRepository(db).recent(queue=STAGE_FETCH)
    assert len(entries) == 1
    assert entries[0].url == URL
    assert entries[0].attempts == 5
    assert entries[0].error_category == "transient_io"
    assert "connection refused" in entries[0].last_error
    assert len(entries[0].job_log) >= 5
