"""Fetch task: download a report, fingerprint it, claim the fingerprint.

The first stage of the chain.  The SHA-256 of the downloaded bytes is the
document's identity for the rest of the pipeline:

- unseen fingerprint        -> claimed with a fresh ``run_id``, chain continues
- claimed by this same job  -> a retry; continues with the same ``run_id``
- claimed by a live chain   -> duplicate submission; the chain ends here
- claimed by a failed chain -> re-claimed under a new ``run_id``

Download failures raise ``FetchError`` and are retried by the broker.
"""
from __future__ import annotations

import logging

import httpx
from sqlalchemy.orm import sessionmaker

from ghgpipe.db.repositories import ReportRepository
from ghgpipe.db.session import session_scope
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import JobContext
from ghgpipe.readers.store import DocumentStore
from ghgpipe.tasks.common import require
from ghgpipe.tasks.error_handler import FetchError

logger = logging.getLogger(__name__)


class FetchTask:
    def __init__(self, session_factory: sessionmaker, store: DocumentStore, *, timeout_s: float = 60.0) -> None:
        self.session_factory = session_factory
        self.store = store
        self.timeout_s = timeout_s

    def download(self, url: str) -> bytes:
        try:
            response = httpx.get(url, follow_redirects=True, timeout=self.timeout_s)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"Download failed with HTTP {exc.response.status_code}",
                url=url,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Download failed: {exc}", url=url) from exc
        if not response.content:
            raise FetchError("Download returned an empty body", url=url, status_code=response.status_code)
        return response.content

    def run(self, ctx: JobContext, payload: JobPayload) -> JobPayload | None:
        url = require(payload.url, "url")
        ctx.log(f"Downloading {url}")
        data = self.download(url)
        fingerprint = self.store.write(data)
        ctx.update_progress(50)

        with session_scope(self.session_factory) as db:
            repo = ReportRepository(db)
            report, claimed = repo.claim(fingerprint=fingerprint, url=url, job_id=ctx.job_id)
            if claimed:
                repo.update(report, size_bytes=len(data))
            run_id = report.run_id
            status = report.status

        if not claimed:
            ctx.log(f"Fingerprint {fingerprint} already being processed (status {status}); skipping")
            logger.info("Duplicate fetch of %s (%s); chain not started", url, fingerprint)
            return None

        ctx.log(f"Claimed {fingerprint} for run {run_id}")
        ctx.update_progress(100)
        return payload.advance(fingerprint=fingerprint, run_id=run_id)
