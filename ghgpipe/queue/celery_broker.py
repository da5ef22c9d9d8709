"""Celery adapter for the stage registry (production broker, Redis transport).

Each registered stage becomes one Celery task routed to a queue of the same
name, so worker pools can be sized per stage::

    celery -A ghgpipe.worker:celery_app worker -Q extract -c 2

Retry policy stays in ``ghgpipe.tasks.error_handler``: the task retries
itself with ``countdown`` back-off while ``should_retry`` allows it, and
dead-letters through the registry hook once the budget is spent.
"""
from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from celery import Celery

from ghgpipe.core.settings import Settings
from ghgpipe.queue.broker import JobContext, StageBroker, StageJob
from ghgpipe.queue.registry import Stage, StageRegistry
from ghgpipe.tasks.error_handler import backoff_delay, categorize, describe, should_retry

logger = logging.getLogger(__name__)

TASK_PREFIX = "ghgpipe.stages."


def create_celery_app(settings: Settings) -> Celery:
    app = Celery("ghgpipe", broker=settings.broker_url, backend=settings.broker_url)
    app.conf.update(
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
    )
    return app


class _CeleryJobContext(JobContext):
    def __init__(self, task: Any, job: StageJob) -> None:
        self.task = task
        self.job = job

    def update_progress(self, value: int) -> None:
        self.job.progress = max(0, min(100, int(value)))
        self.task.update_state(
            state="PROGRESS",
            meta={"progress": self.job.progress, "queue": self.job.queue},
        )

    def log(self, message: str) -> None:
        self.job.logs.append(message)
        logger.info("[%s %s] %s", self.job.queue, self.job.id, message)


class CeleryBroker(StageBroker):
    """Registers one Celery task per stage and enqueues through ``apply_async``."""

    def __init__(self, app: Celery, registry: StageRegistry) -> None:
        self.app = app
        self.registry = registry
        self.tasks: dict[str, Any] = {}
        routes: dict[str, dict[str, str]] = {}
        for stage in registry:
            self.tasks[stage.name] = self._make_task(stage)
            routes[TASK_PREFIX + stage.name] = {"queue": stage.name}
        app.conf.task_routes = routes

    def _make_task(self, stage: Stage) -> Any:
        broker = self

        @self.app.task(name=TASK_PREFIX + stage.name, bind=True, max_retries=None)
        def run_stage(task, payload: dict[str, Any], job_id: str) -> dict[str, Any] | None:
            attempt = task.request.retries + 1
            job = StageJob(
                queue=stage.name,
                payload=payload,
                id=job_id,
                attempts=attempt,
                max_attempts=stage.max_attempts,
                state="active",
            )
            ctx = _CeleryJobContext(task, job)
            try:
                result = broker.registry.dispatch(job, ctx, broker)
            except Exception as exc:
                category = categorize(exc)
                job.last_error = describe(exc)
                ctx.log(f"Attempt {attempt} failed ({category.value}): {job.last_error}")
                if should_retry(category, attempt, stage.max_attempts):
                    raise task.retry(
                        exc=exc,
                        countdown=backoff_delay(attempt, broker.registry.backoff_base_s),
                    )
                job.state = "failed"
                broker.registry.dead_letter(job, exc, category)
                raise
            job.state = "completed"
            return result.to_job_data() if result is not None else None

        return run_stage

    def enqueue(self, queue: str, payload: dict[str, Any], *, job_id: str | None = None) -> str:
        try:
            task = self.tasks[queue]
        except KeyError:
            raise KeyError(f"No stage registered for queue {queue!r}") from None
        job_id = job_id or str(uuid4())
        task.apply_async(kwargs={"payload": payload, "job_id": job_id}, task_id=job_id, queue=queue)
        return job_id


class CeleryProducer(StageBroker):
    """Enqueue-only broker for processes that run no stages (the HTTP API).

    Sends by task name, so it needs neither the registry nor the services
    the stage tasks are built from.
    """

    def __init__(self, app: Celery) -> None:
        self.app = app

    def enqueue(self, queue: str, payload: dict[str, Any], *, job_id: str | None = None) -> str:
        job_id = job_id or str(uuid4())
        self.app.send_task(
            TASK_PREFIX + queue,
            kwargs={"payload": payload, "job_id": job_id},
            task_id=job_id,
            queue=queue,
        )
        return job_id
