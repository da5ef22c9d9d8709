"""Shared fixtures: in-memory database, Qdrant local mode and stage fakes."""
from __future__ import annotations

import json
import re
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest
from qdrant_client import QdrantClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ghgpipe.core.settings import Settings
from ghgpipe.db.base import Base
from ghgpipe.pipeline.dag import PipelineServices, build_registry
from ghgpipe.queue.broker import JobContext, StageJob
from ghgpipe.queue.memory import InMemoryBroker
from ghgpipe.readers.store import DocumentStore
from ghgpipe.retrieval.vector_store import VectorStore
from ghgpipe.review.channel import PublishReceipt, ReviewChannel, ReviewMessage
from ghgpipe.tasks.error_handler import ReviewChannelError

EMPTY_CRITIQUE = json.dumps({"reviewComment": "", "reliability": "", "corrections": []})


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeLLM:
    """Answers by use case; unknown extraction groups get an empty object."""

    def __init__(self) -> None:
        self.responses: dict[str, str | Callable[[str], str]] = {"reflect": EMPTY_CRITIQUE}
        self.calls: list[tuple[str, str]] = []

    def generate(
        self,
        prompt: str,
        system: str | None = None,
        *,
        schema: dict[str, Any] | None = None,
        use_case: str = "general",
        fingerprint: str | None = None,
    ) -> str:
        self.calls.append((use_case, prompt))
        response = self.responses.get(use_case, "{}")
        return response(prompt) if callable(response) else response

    def use_cases(self) -> list[str]:
        return [use_case for use_case, _ in self.calls]


class HashEmbedder:
    """Bag-of-words vectors; component 0 keeps every vector non-zero."""

    dim = 32

    def __init__(self) -> None:
        self.calls = 0

    def embed(self, texts):
        self.calls += 1
        vectors = []
        for text in texts:
            vector = [0.0] * self.dim
            vector[0] = 1.0
            for token in re.findall(r"\w+", text.lower()):
                vector[1 + zlib.crc32(token.encode()) % (self.dim - 1)] += 1.0
            vectors.append(vector)
        return vectors


class FakeChannel(ReviewChannel):
    channel_id = "review-channel"

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.published: list[tuple[ReviewMessage, str]] = []

    def publish(self, message: ReviewMessage, *, idempotency_token: str) -> PublishReceipt:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ReviewChannelError("channel unavailable")
        self.published.append((message, idempotency_token))
        return PublishReceipt(channel_id=self.channel_id, message_id=f"msg-{len(self.published)}")


class RecordingContext(JobContext):
    def __init__(self, job_id: str = "job-1", queue: str = "test") -> None:
        self.job = StageJob(queue=queue, payload={}, id=job_id, attempts=1)
        self.progress: list[int] = []

    def update_progress(self, value: int) -> None:
        self.job.progress = value
        self.progress.append(value)

    def log(self, message: str) -> None:
        self.job.logs.append(message)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


@dataclass
class Harness:
    broker: InMemoryBroker
    services: PipelineServices
    settings: Settings
    clock: FakeClock


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def session_factory():
    """In-memory SQLite shared across sessions, all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def embedder() -> HashEmbedder:
    return HashEmbedder()


@pytest.fixture()
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def vector_store() -> VectorStore:
    return VectorStore(
        QdrantClient(location=":memory:"),
        paragraph_collection="test_paragraphs",
        report_collection="test_reports",
        dim=HashEmbedder.dim,
    )


@pytest.fixture()
def document_store(tmp_path) -> DocumentStore:
    return DocumentStore(tmp_path / "downloads")


@pytest.fixture()
def make_ctx() -> type[RecordingContext]:
    return RecordingContext


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(BACKOFF_BASE_S=1.0, RETRIEVAL_TOP_K=4, EMBED_BATCH_SIZE=2)


@pytest.fixture()
def harness(session_factory, document_store, fake_llm, embedder, vector_store, channel, test_settings) -> Harness:
    """The full stage table on an in-memory broker with a fake clock."""
    services = PipelineServices(
        session_factory=session_factory,
        store=document_store,
        llm=fake_llm,
        embedder=embedder,
        vector_store=vector_store,
        channel=channel,
    )
    clock = FakeClock()
    broker = InMemoryBroker(build_registry(services, test_settings), clock=clock, sleep=clock.sleep)
    return Harness(broker=broker, services=services, settings=test_settings, clock=clock)
