"""Background jobs.

Cascade rebuilds for big subtrees are pushed here instead of running inside
the request. Jobs are at-least-once, so execute() must be idempotent.
"""
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, List

from loguru import logger

if TYPE_CHECKING:
    from split_service.context import ServiceContext


@dataclass
class RebuildCascadeJob:
    """Rebuild the cascade mappings of one experiment in its own session"""
    experiment_id: int
    ctx: "ServiceContext"

    @property
    def description(self) -> str:
        return f"Rebuilding cascade mappings for experiment {self.experiment_id}"

    def execute(self) -> bool:
        from split_service.models import Experiment
        from split_service.services.cascade_service import do_rebuild

        db = self.ctx.session_factory()
        try:
            experiment = db.get(Experiment, self.experiment_id)
            if experiment is None:
                logger.warning(
                    "RebuildCascadeJob: experiment not found, skipping",
                    experiment_id=self.experiment_id,
                )
                return False

            ok = do_rebuild(db, self.ctx, experiment)
            if ok:
                logger.info("RebuildCascadeJob: rebuilt descendants", handle=experiment.handle)
            else:
                logger.warning(
                    "RebuildCascadeJob: control or variant node missing, skipping",
                    handle=experiment.handle,
                )
            return ok
        finally:
            db.close()


class JobQueue(ABC):

    @abstractmethod
    def push(self, job: RebuildCascadeJob) -> None:
        ...


class ThreadJobQueue(JobQueue):
    """Runs jobs on a small thread pool (good enough for a single API process)"""

    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="split-jobs")

    def push(self, job: RebuildCascadeJob) -> None:
        logger.debug("Queued job", description=job.description)
        future = self._executor.submit(job.execute)
        future.add_done_callback(self._report)

    @staticmethod
    def _report(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Background job failed")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class RecordingJobQueue(JobQueue):
    """Keeps pushed jobs until run_all() is called (tests)"""

    def __init__(self):
        self.jobs: List[RebuildCascadeJob] = []

    def push(self, job: RebuildCascadeJob) -> None:
        self.jobs.append(job)

    def run_all(self) -> List[bool]:
        pending, self.jobs = self.jobs, []
        return [job.execute() for job in pending]
