#!/usr/bin/env python3
"""Run one report URL through the whole pipeline in this process.

Uses the in-memory broker with the production services (Postgres, Ollama,
Qdrant, Discord from settings).  The chain stops at the review gate; the
reviewer's click is handled later by the API and a Celery worker.

Usage:
    python scripts/process_report.py https://example.com/report-2023.pdf
    DATABASE_URL=... python scripts/process_report.py <url>
"""
from __future__ import annotations

import argparse

from ghgpipe.core.logging import setup_logging
from ghgpipe.core.settings import get_settings
from ghgpipe.db.base import Base
from ghgpipe.db.repositories import EmissionsRecordRepository, ReportRepository
from ghgpipe.db.session import get_engine, session_scope
from ghgpipe.pipeline.dag import build_registry, default_services, start_pipeline
from ghgpipe.queue.memory import InMemoryBroker


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("url", help="URL of the sustainability report (PDF or HTML)")
    args = parser.parse_args()

    setup_logging()
    settings = get_settings()
    Base.metadata.create_all(get_engine())

    services = default_services(settings)
    broker = InMemoryBroker(build_registry(services, settings))
    job_id = start_pipeline(broker, args.url)
    broker.run_until_idle()

    for job in broker.jobs(state="failed"):
        print(f"FAILED {job.id}: {job.last_error}")

    fetch = broker.get_job(job_id)
    with session_scope(services.session_factory) as db:
        fingerprints = {j.payload.get("fingerprint") for j in broker.jobs() if j.payload.get("fingerprint")}
        for fingerprint in fingerprints:
            report = ReportRepository(db).get_by_fingerprint(fingerprint)
            record = EmissionsRecordRepository(db).get_by_fingerprint(fingerprint)
            print(f"document {fingerprint[:12]}: {report.status if report else 'missing'}")
            if record is not None:
                print(f"record {record.id}: {record.review_status} ({record.company_name or 'unknown company'})")
    print(f"fetch job {fetch.id}: {fetch.state}")


if __name__ == "__main__":
    main()
