"""Stage-name -> handler registration table.

Built once at startup by ``ghgpipe.pipeline.dag.build_registry`` and handed
to whichever broker runs the workers.  Nothing here is module-global, so
tests can build a registry with fakes and drive it through the in-memory
broker.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from ghgpipe.pipeline.payload import JobPayload, chain_job_id
from ghgpipe.queue.broker import JobContext, StageBroker, StageJob
from ghgpipe.tasks.error_handler import ErrorCategory

logger = logging.getLogger(__name__)

StageHandler = Callable[[JobContext, JobPayload], "JobPayload | None"]
DeadLetterHook = Callable[[StageJob, BaseException, ErrorCategory], None]


@dataclass(frozen=True)
class Stage:
    name: str
    handler: StageHandler
    next_stage: str | None = None
    max_attempts: int = 3


class StageRegistry:
    """Ordered table of stages plus the policy shared by all brokers."""

    def __init__(
        self,
        *,
        backoff_base_s: float = 2.0,
        on_dead_letter: DeadLetterHook | None = None,
    ) -> None:
        self.backoff_base_s = backoff_base_s
        self._on_dead_letter = on_dead_letter
        self._stages: dict[str, Stage] = {}

    def register(
        self,
        name: str,
        handler: StageHandler,
        *,
        next_stage: str | None = None,
        max_attempts: int = 3,
    ) -> Stage:
        if name in self._stages:
            raise ValueError(f"Stage {name!r} is already registered")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        stage = Stage(name=name, handler=handler, next_stage=next_stage, max_attempts=max_attempts)
        self._stages[name] = stage
        return stage

    def get(self, name: str) -> Stage:
        try:
            return self._stages[name]
        except KeyError:
            raise KeyError(f"No stage registered for queue {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages.values())

    @property
    def names(self) -> list[str]:
        return list(self._stages)

    # -- execution ----------------------------------------------------------

    def dispatch(self, job: StageJob, ctx: JobContext, broker: StageBroker) -> JobPayload | None:
        """Run the handler for *job* and enqueue the next stage on success.

        A handler returning ``None`` ends the chain for this document (for
        example a duplicate fetch).  Exceptions propagate to the broker, which
        owns retry and dead-lettering.
        """
        stage = self.get(job.queue)
        payload = JobPayload.model_validate(job.payload)
        result = stage.handler(ctx, payload)

        if result is None:
            ctx.log(f"Stage {stage.name} ended the chain")
            return None

        if stage.next_stage is not None:
            next_id = chain_job_id(stage.next_stage, result)
            broker.enqueue(stage.next_stage, result.to_job_data(), job_id=next_id)
            ctx.log(f"Enqueued {stage.next_stage} job {next_id}")
        return result

    def dead_letter(self, job: StageJob, error: BaseException, category: ErrorCategory) -> None:
        logger.error(
            "Job %s on %s dead-lettered after %d attempt(s): %s",
            job.id, job.queue, job.attempts, category.value,
        )
        if self._on_dead_letter is not None:
            self._on_dead_letter(job, error, category)
