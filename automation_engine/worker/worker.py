"""
Background worker for processing workflow jobs.

Polls the job store and hands "run" jobs to the step interpreter and
"resume" jobs to the resumer.
"""

import logging
import signal
import threading
from functools import partial
from typing import Callable, Dict, Optional

from automation_engine.config import Config, configure_logging, get_config
from automation_engine.domain import Job, JobKind
from automation_engine.persistence import (
    Database,
    ExecutionRepository,
    JobRepository,
    WorkflowRepository,
)
from automation_engine.services import Collaborators, DataAnomalyError, Resumer, StepInterpreter

logger = logging.getLogger(__name__)

JobHandler = Callable[..., object]


class Worker:
    """
    Background worker pool for processing workflow jobs.

    Features:
    - Graceful shutdown on SIGTERM/SIGINT, draining in-flight jobs
    - WORKER_CONCURRENCY polling threads sharing one job store
    - A reaper thread recovering stale claims and lost resumes
    - Claims renewed before every step, so a reaped job stops its tick
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        config: Optional[Config] = None,
        collaborators: Optional[Collaborators] = None,
        job_repo: Optional[JobRepository] = None,
        interpreter: Optional[StepInterpreter] = None,
        resumer: Optional[Resumer] = None,
    ):
        self.config = config or get_config()
        self.db = db
        if self.db is None and (job_repo is None or interpreter is None or resumer is None):
            self.db = Database()
            self.db.initialize()

        # Create repositories
        workflow_repo = WorkflowRepository(self.db) if self.db is not None else None
        execution_repo = ExecutionRepository(self.db) if self.db is not None else None
        self.job_repo = job_repo or JobRepository(self.db, self.config)

        self.interpreter = interpreter or StepInterpreter(
            workflow_repo=workflow_repo,
            execution_repo=execution_repo,
            collaborators=collaborators,
            config=self.config,
        )
        self.resumer = resumer or Resumer(
            execution_repo=execution_repo,
            job_repo=self.job_repo,
            interpreter=self.interpreter,
            config=self.config,
        )

        self.handlers: Dict[JobKind, JobHandler] = {
            JobKind.RUN: self.interpreter.handle_job,
            JobKind.RESUME: self.resumer.handle_job,
        }

        # Worker state
        self._running = False
        self._shutdown_event = threading.Event()
        self._threads = []
        self._in_flight = 0
        self._lock = threading.Lock()
        self.processed = 0
        self.failed = 0

    def start(self, install_signal_handlers: bool = True) -> None:
        """
        Run the pool until ``stop()`` is called.

        Returns only after every polling thread finished its current batch.
        """
        self._running = True
        self._shutdown_event.clear()
        if install_signal_handlers:
            self._setup_signal_handlers()

        logger.info(f"Worker started with {self.config.WORKER_CONCURRENCY} threads, waiting for jobs...")

        self._threads = [
            threading.Thread(target=self._poll_loop, name=f"worker-{i}", daemon=True)
            for i in range(self.config.WORKER_CONCURRENCY)
        ]
        self._threads.append(
            threading.Thread(target=self._reaper_loop, name="reaper", daemon=True)
        )
        for thread in self._threads:
            thread.start()

        for thread in self._threads:
            thread.join()

        self._running = False
        logger.info("Worker stopped")

    def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Stopping worker...")
        self._running = False
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            self.stop()

        signal.signal(signal.SIGTERM, handler)
        signal.signal(signal.SIGINT, handler)

    def _poll_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                claimed = self.process_batch()
            except Exception as e:
                logger.exception(f"Error in worker loop: {e}")
                claimed = 0

            if not claimed:
                self._shutdown_event.wait(self.config.POLL_INTERVAL)

    def process_batch(self) -> int:
        """
        Claim one batch of due jobs and process it.

        Returns the number of jobs claimed.
        """
        jobs = self.job_repo.claim_due(
            kinds=list(self.handlers),
            limit=self.config.CLAIM_BATCH_SIZE,
        )
        for job in jobs:
            self._process_job(job)
        return len(jobs)

    def _process_job(self, job: Job) -> bool:
        """
        Process a single claimed job.

        Returns True if the job completed, False otherwise.
        """
        with self._lock:
            self._in_flight += 1

        try:
            logger.info(f"Processing {job.kind.value} job {job.id} (attempt: {job.attempts})")
            self.handlers[job.kind](job, partial(self.job_repo.heartbeat, job))

            self.job_repo.complete(job.id, claimed_at=job.claimed_at)
            with self._lock:
                self.processed += 1
            return True

        except DataAnomalyError as e:
            logger.error(f"Job {job.id} references missing data: {e}")
            self.job_repo.fail(job.id, str(e), retry=False, claimed_at=job.claimed_at)

        except Exception as e:
            logger.exception(f"Failed to process job {job.id}: {e}")
            self.job_repo.fail(job.id, str(e), claimed_at=job.claimed_at)

        finally:
            with self._lock:
                self._in_flight -= 1

        with self._lock:
            self.failed += 1
        return False

    def _reaper_loop(self) -> None:
        """
        Background loop to recover abandoned work.

        Runs a reaper pass every REAPER_INTERVAL seconds until shutdown.
        """
        while not self._shutdown_event.wait(self.config.REAPER_INTERVAL):
            try:
                self.reap()
            except Exception as e:
                logger.error(f"Error in reaper loop: {e}")

    def reap(self) -> None:
        """
        Recover abandoned work and prune the job table.

        Returns jobs whose claim outlived STALE_CLAIM_TIMEOUT (e.g., due to a
        worker crash) and re-enqueues resume jobs that went missing. Finished
        jobs older than JOB_RETENTION_DAYS are deleted.
        """
        self.job_repo.reap_stale(self.config.STALE_CLAIM_TIMEOUT)
        recovered = self.resumer.recover_overdue()
        if recovered > 0:
            logger.info(f"Recovered {recovered} overdue executions")
        self.job_repo.cleanup(self.config.JOB_RETENTION_DAYS)

    @property
    def is_healthy(self) -> bool:
        """Check if the worker is healthy."""
        try:
            return self.db is None or self.db.health_check()
        except Exception:
            return False

    def get_stats(self) -> dict:
        """Get worker statistics."""
        with self._lock:
            return {
                "running": self._running,
                "threads": len(self._threads),
                "in_flight": self._in_flight,
                "processed": self.processed,
                "failed": self.failed,
            }


def run_worker() -> None:
    """Entry point for running the worker."""
    config = get_config()
    configure_logging(config)

    worker = Worker(config=config)
    worker.start()


if __name__ == "__main__":
    run_worker()
