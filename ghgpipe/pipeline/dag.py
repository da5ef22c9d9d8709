"""Pipeline wiring: stage-name -> task table, built once at startup.

Stage order
-----------
1. FetchTask       -- download, fingerprint, claim
2. ConvertTask     -- bytes to markdown
3. SegmentTask     -- markdown to paragraphs
4. IndexTask       -- paragraphs into the vector store
5. ExtractTask     -- retrieval-augmented draft
6. ReflectTask     -- self-check of the draft
7. ReviewGateTask  -- provisional record + review message; chain ends here
8. ResolveTask     -- reviewer decision, enqueued by the interaction handler

Each stage enqueues the next only after it succeeded.  Jobs that exhaust
their retries are written to ``dead_letters`` and their document is marked
``failed`` so it can be submitted again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.orm import sessionmaker

from ghgpipe.audit.audit_log import record_event
from ghgpipe.audit.events import EVENT_DEAD_LETTER
from ghgpipe.core.constants import (
    ALL_STAGES,
    DOC_FAILED,
    PIPELINE_STAGES,
    STAGE_CONVERT,
    STAGE_EXTRACT,
    STAGE_FETCH,
    STAGE_INDEX,
    STAGE_REFLECT,
    STAGE_RESOLVE,
    STAGE_REVIEW,
    STAGE_SEGMENT,
)
from ghgpipe.core.settings import Settings, get_settings
from ghgpipe.db.repositories import DeadLetterRepository, ReportRepository
from ghgpipe.db.session import get_session_factory, session_scope
from ghgpipe.extraction.extractor import Extractor, Generator
from ghgpipe.extraction.field_groups import FieldGroupConfig
from ghgpipe.extraction.reflector import Reflector
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import StageBroker, StageJob
from ghgpipe.queue.registry import DeadLetterHook, StageHandler, StageRegistry
from ghgpipe.readers.store import DocumentStore
from ghgpipe.retrieval.retriever import Embedder, Retriever
from ghgpipe.retrieval.vector_store import VectorStore
from ghgpipe.review.channel import ReviewChannel
from ghgpipe.tasks.common import PIPELINE_ACTOR
from ghgpipe.tasks.convert import ConvertTask
from ghgpipe.tasks.error_handler import ErrorCategory, describe
from ghgpipe.tasks.extraction import ExtractTask
from ghgpipe.tasks.fetch import FetchTask
from ghgpipe.tasks.index import IndexTask
from ghgpipe.tasks.reflection import ReflectTask
from ghgpipe.tasks.resolution import ResolveTask
from ghgpipe.tasks.review_gate import ReviewGateTask
from ghgpipe.tasks.segment import SegmentTask

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    """Collaborators the stage tasks are built from."""

    session_factory: sessionmaker
    store: DocumentStore
    llm: Generator
    embedder: Embedder
    vector_store: VectorStore
    channel: ReviewChannel
    field_groups: FieldGroupConfig | None = None


def default_services(settings: Settings | None = None) -> PipelineServices:
    """Production services: Postgres, Ollama, Qdrant and Discord from settings."""
    # Imported here so tests that pass fakes never need the live clients.
    from ghgpipe.llm.client import OllamaClient
    from ghgpipe.retrieval.vector_store import build_qdrant_client
    from ghgpipe.review.channel import DiscordChannel

    settings = settings or get_settings()
    session_factory = get_session_factory()
    ollama = OllamaClient(session_factory=session_factory)
    return PipelineServices(
        session_factory=session_factory,
        store=DocumentStore(settings.download_dir),
        llm=ollama,
        embedder=ollama,
        vector_store=VectorStore(build_qdrant_client(settings)),
        channel=DiscordChannel(),
    )


def make_dead_letter_hook(session_factory: sessionmaker) -> DeadLetterHook:
    def on_dead_letter(job: StageJob, error: BaseException, category: ErrorCategory) -> None:
        data = job.payload
        fingerprint = data.get("fingerprint")
        last_error = job.last_error or describe(error)
        with session_scope(session_factory) as db:
            DeadLetterRepository(db).create(
                queue=job.queue,
                job_id=job.id,
                fingerprint=fingerprint,
                url=data.get("url"),
                payload=dict(data),
                attempts=job.attempts,
                error_category=category.value,
                last_error=last_error,
                job_log=list(job.logs),
            )
            if fingerprint:
                reports = ReportRepository(db)
                report = reports.get_by_fingerprint(fingerprint)
                # Only the live run may fail the document.
                if report is not None and report.run_id == data.get("runId"):
                    reports.update(report, status=DOC_FAILED, error_summary=f"{job.queue}: {last_error}")
            record_event(
                db,
                event_type=EVENT_DEAD_LETTER,
                actor=PIPELINE_ACTOR,
                record_id=data.get("recordId"),
                fingerprint=fingerprint,
                rationale=f"{job.queue} job {job.id}: {category.value}: {last_error}",
            )

    return on_dead_letter


def build_registry(services: PipelineServices, settings: Settings | None = None) -> StageRegistry:
    """Build the stage table for *services*.  Brokers take it from here."""
    settings = settings or get_settings()
    registry = StageRegistry(
        backoff_base_s=settings.backoff_base_s,
        on_dead_letter=make_dead_letter_hook(services.session_factory),
    )

    factory = services.session_factory
    retriever = Retriever(services.embedder, services.vector_store, top_k=settings.retrieval_top_k)
    handlers: dict[str, StageHandler] = {
        STAGE_FETCH: FetchTask(factory, services.store, timeout_s=settings.fetch_timeout_s).run,
        STAGE_CONVERT: ConvertTask(factory, services.store).run,
        STAGE_SEGMENT: SegmentTask(
            factory, min_chars=settings.segment_min_chars, max_chars=settings.segment_max_chars
        ).run,
        STAGE_INDEX: IndexTask(
            factory, services.embedder, services.vector_store, batch_size=settings.embed_batch_size
        ).run,
        STAGE_EXTRACT: ExtractTask(
            factory,
            Extractor(
                services.llm,
                retriever,
                field_groups=services.field_groups,
                language=settings.target_language,
            ),
        ).run,
        STAGE_REFLECT: ReflectTask(factory, Reflector(services.llm, language=settings.target_language)).run,
        STAGE_REVIEW: ReviewGateTask(
            factory, services.channel, preview_chars=settings.review_comment_preview_chars
        ).run,
        STAGE_RESOLVE: ResolveTask(factory, embedder=services.embedder, store=services.vector_store).run,
    }

    for stage in ALL_STAGES:
        next_stage = None
        if stage in PIPELINE_STAGES:
            position = PIPELINE_STAGES.index(stage)
            if position + 1 < len(PIPELINE_STAGES):
                next_stage = PIPELINE_STAGES[position + 1]
        registry.register(
            stage,
            handlers[stage],
            next_stage=next_stage,
            max_attempts=settings.max_attempts_for(stage),
        )
    return registry


def start_pipeline(broker: StageBroker, url: str) -> str:
    """Enqueue a fetch job for *url* and return its job id."""
    payload = JobPayload(url=url)
    job_id = broker.enqueue(STAGE_FETCH, payload.to_job_data(), job_id=f"{STAGE_FETCH}:{uuid4()}")
    logger.info("Started pipeline for %s as %s", url, job_id)
    return job_id
