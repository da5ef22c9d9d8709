"""Broker-facing types: the stage job, its execution context, the broker API.

The pipeline never talks to a concrete queue technology.  Stage handlers get
a ``JobContext`` (progress + job log) and a ``JobPayload``; the registry uses
``StageBroker.enqueue`` to hand the next stage its job.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

JobState = Literal["waiting", "active", "completed", "failed"]


@dataclass
class StageJob:
    """One unit of work on one queue."""

    queue: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid4()))
    attempts: int = 0
    max_attempts: int = 1
    progress: int = 0
    logs: list[str] = field(default_factory=list)
    state: JobState = "waiting"
    last_error: str | None = None
    not_before: float = 0.0
    finished_at: float | None = None


class JobContext(ABC):
    """What a stage handler may do to its own job while running."""

    job: StageJob

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def attempt(self) -> int:
        return self.job.attempts

    @abstractmethod
    def update_progress(self, value: int) -> None:
        """Report progress in percent (0-100)."""

    @abstractmethod
    def log(self, message: str) -> None:
        """Append a line to the job log kept by the broker."""


class StageBroker(ABC):
    """Durable, at-least-once delivery of stage jobs."""

    @abstractmethod
    def enqueue(self, queue: str, payload: dict[str, Any], *, job_id: str | None = None) -> str:
        """Add a job to *queue* and return its id.

        Brokers that can de-duplicate treat an id they already know as the
        existing job.  Handlers must not rely on it: delivery is at least once.
        """
