"""Tests for the stage registry and the in-memory broker.

Covers:
- registration rules and the next-stage hand-off
- a handler returning None ends the chain
- deterministic chain job ids collapse duplicate enqueues
- retry with exponential back-off, then dead-lettering
- invariant violations are dead-lettered without retry
- prune() drops finished jobs and still de-duplicates their ids
- CeleryBroker retries transient failures and dead-letters once
- CeleryProducer sends by task name
"""
from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest

from ghgpipe.core.settings import Settings
from ghgpipe.pipeline.payload import JobPayload, chain_job_id
from ghgpipe.queue.celery_broker import TASK_PREFIX, CeleryBroker, CeleryProducer, create_celery_app
from ghgpipe.queue.memory import InMemoryBroker
from ghgpipe.queue.registry import StageRegistry
from ghgpipe.tasks.error_handler import ErrorCategory, FetchError, InvariantViolationError


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


def _broker(registry: StageRegistry) -> tuple[InMemoryBroker, _Clock]:
    clock = _Clock()
    return InMemoryBroker(registry, clock=clock, sleep=clock.sleep), clock


# ===========================================================================
# StageRegistry
# ===========================================================================

class TestRegistry:
    def test_duplicate_stage_rejected(self) -> None:
        registry = StageRegistry()
        registry.register("a", lambda ctx, p: p)
        with pytest.raises(ValueError):
            registry.register("a", lambda ctx, p: p)

    def test_max_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            StageRegistry().register("a", lambda ctx, p: p, max_attempts=0)

    def test_unknown_stage(self) -> None:
        with pytest.raises(KeyError):
            StageRegistry().get("nope")

    def test_names_keep_registration_order(self) -> None:
        registry = StageRegistry()
        for name in ("fetch", "convert", "segment"):
            registry.register(name, lambda ctx, p: p)
        assert registry.names == ["fetch", "convert", "segment"]
        assert "convert" in registry


# ===========================================================================
# InMemoryBroker
# ===========================================================================

class TestChain:
    def test_success_enqueues_next_stage_with_deterministic_id(self) -> None:
        seen: list[str] = []
        registry = StageRegistry()
        registry.register(
            "first",
            lambda ctx, p: p.advance(fingerprint="fp", run_id="run-1"),
            next_stage="second",
        )
        registry.register("second", lambda ctx, p: seen.append(p.fingerprint) or p)
        broker, _ = _broker(registry)

        broker.enqueue("first", JobPayload(url="http://x").to_job_data(), job_id="first-1")
        broker.run_until_idle()

        assert seen == ["fp"]
        second = broker.jobs(queue="second")
        assert [job.id for job in second] == ["second:fp:run-1"]
        assert second[0].payload["runId"] == "run-1"
        assert broker.get_job("first-1").state == "completed"

    def test_none_result_ends_chain(self) -> None:
        registry = StageRegistry()
        registry.register("first", lambda ctx, p: None, next_stage="second")
        registry.register("second", lambda ctx, p: p)
        broker, _ = _broker(registry)

        broker.enqueue("first", {"url": "http://x"}, job_id="first-1")
        broker.run_until_idle()

        assert broker.jobs(queue="second") == []
        assert "Stage first ended the chain" in broker.get_job("first-1").logs

    def test_known_job_id_is_not_added_twice(self) -> None:
        calls: list[int] = []
        registry = StageRegistry()
        registry.register("only", lambda ctx, p: calls.append(1) or p)
        broker, _ = _broker(registry)

        payload = JobPayload(url="u", fingerprint="fp", run_id="r")
        job_id = chain_job_id("only", payload)
        broker.enqueue("only", payload.to_job_data(), job_id=job_id)
        broker.enqueue("only", payload.to_job_data(), job_id=job_id)
        broker.run_until_idle()

        assert calls == [1]

    def test_enqueue_to_unknown_queue(self) -> None:
        broker, _ = _broker(StageRegistry())
        with pytest.raises(KeyError):
            broker.enqueue("nope", {})


class TestRetry:
    def test_transient_failure_retried_with_backoff_then_succeeds(self) -> None:
        attempts: list[int] = []

        def flaky(ctx, payload):
            attempts.append(ctx.attempt)
            if ctx.attempt < 3:
                raise FetchError("unreachable", url=payload.url)
            return payload

        registry = StageRegistry(backoff_base_s=2.0)
        registry.register("fetch", flaky, max_attempts=5)
        broker, clock = _broker(registry)

        job_id = broker.enqueue("fetch", {"url": "http://x"})
        broker.run_until_idle()

        job = broker.get_job(job_id)
        assert attempts == [1, 2, 3]
        assert job.state == "completed"
        assert clock.slept == [2.0, 4.0]

    def test_exhausted_budget_dead_letters(self) -> None:
        dead: list[tuple[str, ErrorCategory]] = []
        registry = StageRegistry(
            backoff_base_s=1.0,
            on_dead_letter=lambda job, exc, category: dead.append((job.id, category)),
        )

        def always_down(ctx, payload):
            raise FetchError("unreachable", url=payload.url)

        registry.register("fetch", always_down, max_attempts=3)
        broker, _ = _broker(registry)

        job_id = broker.enqueue("fetch", {"url": "http://x"})
        broker.run_until_idle()

        job = broker.get_job(job_id)
        assert job.state == "failed"
        assert job.attempts == 3
        assert "FetchError: unreachable" in job.last_error
        assert dead == [(job_id, ErrorCategory.TRANSIENT_IO)]
        assert sum("failed (transient_io)" in line for line in job.logs) == 3

    def test_invariant_violation_is_not_retried(self) -> None:
        registry = StageRegistry()

        def broken(ctx, payload):
            raise InvariantViolationError("Job payload has no fingerprint")

        registry.register("convert", broken, max_attempts=5)
        broker, _ = _broker(registry)

        job_id = broker.enqueue("convert", {"url": "http://x"})
        broker.run_until_idle()

        assert broker.get_job(job_id).attempts == 1
        assert broker.get_job(job_id).state == "failed"


class TestPrune:
    def test_prune_drops_finished_jobs_but_remembers_ids(self) -> None:
        registry = StageRegistry(backoff_base_s=0.0)
        registry.register("only", lambda ctx, p: p)
        broker, clock = _broker(registry)

        old_id = broker.enqueue("only", {"url": "http://x/old"}, job_id="only:old")
        broker.run_until_idle()
        clock.now = 100.0
        new_id = broker.enqueue("only", {"url": "http://x/new"}, job_id="only:new")
        broker.run_until_idle()

        assert broker.prune(completed_before=50.0) == 1
        assert [job.id for job in broker.jobs()] == [new_id]
        with pytest.raises(KeyError):
            broker.get_job(old_id)

        broker.enqueue("only", {"url": "http://x/old"}, job_id=old_id)
        assert broker.is_idle()
        assert broker.jobs() == [broker.get_job(new_id)]

    def test_prune_keeps_unfinished_jobs(self) -> None:
        registry = StageRegistry(backoff_base_s=10.0)

        def always_down(ctx, payload):
            raise FetchError("unreachable", url=payload.url)

        registry.register("fetch", always_down, max_attempts=2)
        broker, _ = _broker(registry)

        job_id = broker.enqueue("fetch", {"url": "http://x"})
        broker.process_next("fetch")

        assert broker.get_job(job_id).state == "waiting"
        assert broker.prune(completed_before=1_000.0) == 0
        assert broker.get_job(job_id).attempts == 1

    def test_remembered_ids_are_bounded(self) -> None:
        registry = StageRegistry()
        registry.register("only", lambda ctx, p: p)
        clock = _Clock()
        broker = InMemoryBroker(registry, clock=clock, sleep=clock.sleep, max_retained_ids=2)

        for n in range(3):
            broker.enqueue("only", {"url": f"http://x/{n}"}, job_id=f"only:{n}")
        broker.run_until_idle()
        clock.now = 10.0
        assert broker.prune(completed_before=10.0) == 3

        # the oldest id was forgotten, so it runs again
        broker.enqueue("only", {"url": "http://x/0"}, job_id="only:0")
        broker.enqueue("only", {"url": "http://x/2"}, job_id="only:2")
        broker.run_until_idle()

        assert [job.id for job in broker.jobs()] == ["only:0"]


class TestWorkerThreads:
    def test_threaded_workers_drain_queue(self) -> None:
        done: list[str] = []
        registry = StageRegistry()
        registry.register("only", lambda ctx, p: done.append(p.url) or p)
        broker = InMemoryBroker(registry)

        broker.start(workers_per_queue=2)
        try:
            for n in range(5):
                broker.enqueue("only", {"url": f"http://x/{n}"})
            for _ in range(100):
                if len(broker.jobs(state="completed")) == 5:
                    break
                time.sleep(0.05)
        finally:
            broker.stop()

        assert sorted(done) == [f"http://x/{n}" for n in range(5)]


def test_celery_producer_sends_by_task_name() -> None:
    app = MagicMock()
    producer = CeleryProducer(app)

    job_id = producer.enqueue("resolve", {"recordId": "42"}, job_id="resolve:42:approved:")

    assert job_id == "resolve:42:approved:"
    app.send_task.assert_called_once_with(
        TASK_PREFIX + "resolve",
        kwargs={"payload": {"recordId": "42"}, "job_id": "resolve:42:approved:"},
        task_id="resolve:42:approved:",
        queue="resolve",
    )


# ===========================================================================
# CeleryBroker retry path (eager mode: retries re-run inline)
# ===========================================================================

def _celery_broker(registry: StageRegistry) -> CeleryBroker:
    app = create_celery_app(Settings(BROKER_URL="memory://"))
    app.conf.update(
        task_always_eager=True,
        task_eager_propagates=False,
        result_backend="cache+memory://",
    )
    return CeleryBroker(app, registry)


class TestCeleryRetry:
    def test_transient_failure_is_retried_with_backoff(self, monkeypatch: pytest.MonkeyPatch) -> None:
        attempts: list[int] = []
        delays: list[tuple[int, float]] = []
        dead: list[str] = []

        def flaky(ctx, payload):
            attempts.append(ctx.attempt)
            if ctx.attempt < 3:
                raise FetchError("unreachable", url=payload.url)
            return None

        def recording_backoff(attempt: int, base: float) -> float:
            delays.append((attempt, base))
            return 0.0

        monkeypatch.setattr("ghgpipe.queue.celery_broker.backoff_delay", recording_backoff)
        registry = StageRegistry(
            backoff_base_s=2.0,
            on_dead_letter=lambda job, exc, category: dead.append(job.id),
        )
        registry.register("fetch", flaky, max_attempts=5)
        broker = _celery_broker(registry)

        result = broker.tasks["fetch"].apply(
            kwargs={"payload": {"url": "http://x"}, "job_id": "fetch:1"},
            task_id="fetch:1",
        )

        assert result.successful()
        assert attempts == [1, 2, 3]
        assert delays == [(1, 2.0), (2, 2.0)]
        assert dead == []

    def test_exhausted_budget_dead_letters_once(self) -> None:
        calls: list[int] = []
        dead: list[tuple[str, int, ErrorCategory, type]] = []

        def always_down(ctx, payload):
            calls.append(ctx.attempt)
            raise FetchError("unreachable", url=payload.url)

        registry = StageRegistry(
            backoff_base_s=0.0,
            on_dead_letter=lambda job, exc, category: dead.append(
                (job.id, job.attempts, category, type(exc))
            ),
        )
        registry.register("fetch", always_down, max_attempts=3)
        broker = _celery_broker(registry)

        result = broker.tasks["fetch"].apply(
            kwargs={"payload": {"url": "http://x"}, "job_id": "fetch:2"},
            task_id="fetch:2",
        )

        assert result.failed()
        assert calls == [1, 2, 3]
        assert dead == [("fetch:2", 3, ErrorCategory.TRANSIENT_IO, FetchError)]

    def test_invariant_violation_dead_letters_on_first_attempt(self) -> None:
        calls: list[int] = []
        dead: list[tuple[int, ErrorCategory]] = []

        def broken(ctx, payload):
            calls.append(ctx.attempt)
            raise InvariantViolationError("Job payload has no fingerprint")

        registry = StageRegistry(
            backoff_base_s=0.0,
            on_dead_letter=lambda job, exc, category: dead.append((job.attempts, category)),
        )
        registry.register("convert", broken, max_attempts=5)
        broker = _celery_broker(registry)

        result = broker.tasks["convert"].apply(
            kwargs={"payload": {"url": "http://x"}, "job_id": "convert:1"},
            task_id="convert:1",
        )

        assert result.failed()
        assert calls == [1]
        assert dead == [(1, ErrorCategory.INVARIANT)]
