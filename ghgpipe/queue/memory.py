"""In-process stage broker.

Used by the test-suite, by ``scripts/process_report.py`` and for single-host
deployments.  Semantics follow the production broker where it matters:

- one FIFO per queue, jobs addressed by id; re-enqueueing a known id is
  ignored
- at-least-once: a failed attempt is re-queued with exponential back-off
  until the stage's ``max_attempts`` is spent, then the job is marked
  ``failed`` and handed to the registry's dead-letter hook
- progress and log lines are kept on the job
- finished jobs are dropped by ``prune()``; only their ids are remembered,
  in a bounded set, so late duplicates are still ignored

``run_until_idle()`` drains every queue on the calling thread;
``start()`` runs a pool of worker threads per queue instead.  With
``retention_s`` set, the worker threads prune finished jobs older than that.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from ghgpipe.queue.broker import JobContext, StageBroker, StageJob
from ghgpipe.queue.registry import StageRegistry
from ghgpipe.tasks.error_handler import backoff_delay, categorize, describe, should_retry

logger = logging.getLogger(__name__)


class _MemoryJobContext(JobContext):
    def __init__(self, job: StageJob) -> None:
        self.job = job

    def update_progress(self, value: int) -> None:
        self.job.progress = max(0, min(100, int(value)))

    def log(self, message: str) -> None:
        self.job.logs.append(message)


class InMemoryBroker(StageBroker):
    """Thread-safe in-memory broker driving a ``StageRegistry``."""

    def __init__(
        self,
        registry: StageRegistry,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        retention_s: float | None = None,
        max_retained_ids: int = 100_000,
    ) -> None:
        self.registry = registry
        self._clock = clock
        self._sleep = sleep
        self.retention_s = retention_s
        self.max_retained_ids = max_retained_ids
        self._jobs: dict[str, StageJob] = {}
        self._retired: OrderedDict[str, None] = OrderedDict()
        self._last_prune = clock()
        self._queues: dict[str, deque[str]] = {name: deque() for name in registry.names}
        self._cond = threading.Condition(threading.RLock())
        self._threads: list[threading.Thread] = []
        self._stopping = threading.Event()

    # -- producer side ------------------------------------------------------

    def enqueue(self, queue: str, payload: dict[str, Any], *, job_id: str | None = None) -> str:
        stage = self.registry.get(queue)
        job_id = job_id or str(uuid4())
        with self._cond:
            if job_id in self._jobs or job_id in self._retired:
                logger.debug("Job %s already known on %s; not re-adding", job_id, queue)
                return job_id
            job = StageJob(
                queue=queue,
                payload=dict(payload),
                id=job_id,
                max_attempts=stage.max_attempts,
            )
            self._jobs[job_id] = job
            self._queues[queue].append(job_id)
            self._cond.notify_all()
        return job_id

    # -- consumer side ------------------------------------------------------

    def _take(self, queue: str) -> StageJob | None:
        now = self._clock()
        with self._cond:
            pending = self._queues[queue]
            for _ in range(len(pending)):
                job = self._jobs[pending[0]]
                if job.not_before <= now:
                    pending.popleft()
                    job.state = "active"
                    job.attempts += 1
                    return job
                pending.rotate(-1)
        return None

    def process_next(self, queue: str) -> bool:
        """Run one ready job from *queue*.  Returns False when none was ready."""
        job = self._take(queue)
        if job is None:
            return False

        ctx = _MemoryJobContext(job)
        try:
            self.registry.dispatch(job, ctx, self)
        except Exception as exc:
            self._handle_failure(job, exc)
        else:
            with self._cond:
                job.state = "completed"
                job.finished_at = self._clock()
        return True

    def _handle_failure(self, job: StageJob, exc: Exception) -> None:
        category = categorize(exc)
        job.last_error = describe(exc)
        job.logs.append(f"Attempt {job.attempts} failed ({category.value}): {job.last_error}")

        if should_retry(category, job.attempts, job.max_attempts):
            delay = backoff_delay(job.attempts, self.registry.backoff_base_s)
            logger.warning(
                "Job %s on %s failed attempt %d/%d; retrying in %.1fs",
                job.id, job.queue, job.attempts, job.max_attempts, delay,
            )
            with self._cond:
                job.state = "waiting"
                job.not_before = self._clock() + delay
                self._queues[job.queue].append(job.id)
                self._cond.notify_all()
            return

        with self._cond:
            job.state = "failed"
            job.finished_at = self._clock()
        try:
            self.registry.dead_letter(job, exc, category)
        except Exception:
            logger.exception("Dead-letter hook failed for job %s on %s", job.id, job.queue)

    def run_until_idle(self, max_iterations: int = 10_000) -> None:
        """Process jobs on all queues until nothing is waiting.

        Delayed retries are honoured by sleeping until the earliest one is
        due, using the injected ``sleep``.
        """
        for _ in range(max_iterations):
            progressed = False
            for queue in self.registry.names:
                while self.process_next(queue):
                    progressed = True
            if progressed:
                continue
            with self._cond:
                waiting = [self._jobs[jid] for q in self._queues.values() for jid in q]
            if not waiting:
                return
            due = min(job.not_before for job in waiting)
            self._sleep(max(0.0, due - self._clock()))
        raise RuntimeError(f"Broker did not become idle within {max_iterations} iterations")

    # -- threaded worker pool ----------------------------------------------

    def start(self, workers_per_queue: int = 1) -> None:
        if self._threads:
            raise RuntimeError("Broker workers are already running")
        self._stopping.clear()
        for queue in self.registry.names:
            for n in range(workers_per_queue):
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(queue,),
                    name=f"ghgpipe-{queue}-{n}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Started %d worker thread(s)", len(self._threads))

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def _worker_loop(self, queue: str) -> None:
        while not self._stopping.is_set():
            if self.retention_s is not None:
                self._prune_due()
            if self.process_next(queue):
                continue
            with self._cond:
                self._cond.wait(timeout=0.2)

    def _prune_due(self) -> None:
        now = self._clock()
        with self._cond:
            if now - self._last_prune < self.retention_s:
                return
            self._last_prune = now
        self.prune(completed_before=now - self.retention_s)

    # -- retention ----------------------------------------------------------

    def prune(self, completed_before: float) -> int:
        """Drop completed and failed jobs that finished before *completed_before*.

        The ids are kept (up to ``max_retained_ids``, oldest forgotten first)
        so re-enqueueing a pruned id is still ignored.  Returns the number of
        jobs dropped.
        """
        with self._cond:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.finished_at is not None and job.finished_at < completed_before
            ]
            for job_id in expired:
                del self._jobs[job_id]
                self._retired[job_id] = None
            while len(self._retired) > self.max_retained_ids:
                self._retired.popitem(last=False)
        if expired:
            logger.debug("Pruned %d finished job(s)", len(expired))
        return len(expired)

    # -- inspection ---------------------------------------------------------

    def get_job(self, job_id: str) -> StageJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise KeyError(f"Job {job_id} not found") from None

    def jobs(self, queue: str | None = None, state: str | None = None) -> list[StageJob]:
        with self._cond:
            return [
                job
                for job in self._jobs.values()
                if (queue is None or job.queue == queue) and (state is None or job.state == state)
            ]

    def is_idle(self) -> bool:
        with self._cond:
            return not any(self._queues.values()) and not any(
                job.state == "active" for job in self._jobs.values()
            )
