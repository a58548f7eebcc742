"""
Resumer: turns elapsed wait time back into interpreter ticks.
"""

import logging
from functools import partial
from datetime import datetime, timedelta
from typing import Callable, Optional

from automation_engine.config import Config, get_config
from automation_engine.domain import (
    ExecutionStateMachine,
    ExecutionStatus,
    Job,
    JobKind,
    WorkflowExecution,
    utcnow,
)
from automation_engine.persistence import ExecutionRepository, JobRepository
from .interpreter import DataAnomalyError, Lease, StepInterpreter

logger = logging.getLogger(__name__)


class Resumer:
    """
    Wakes waiting executions once their resume job comes due.

    A resume job that finds its execution finished, cancelled or still
    waiting after losing the resume race is a no-op. One that finds it
    running was interrupted after resuming it (crash or database error), so
    it ticks again; the version check keeps the steps already done from
    repeating.
    """

    def __init__(
        self,
        execution_repo: ExecutionRepository,
        job_repo: JobRepository,
        interpreter: StepInterpreter,
        config: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.execution_repo = execution_repo
        self.job_repo = job_repo
        self.interpreter = interpreter
        self.config = config or get_config()
        self.clock = clock

    def sweep(self, limit: Optional[int] = None) -> int:
        """Claim due resume jobs and process them. Returns the number claimed."""
        jobs = self.job_repo.claim_due(
            kinds=[JobKind.RESUME],
            limit=limit or self.config.CLAIM_BATCH_SIZE,
            now=self.clock(),
        )

        for job in jobs:
            try:
                self.handle_job(job, partial(self.job_repo.heartbeat, job))
                self.job_repo.complete(job.id, claimed_at=job.claimed_at)
            except DataAnomalyError as e:
                logger.error(f"Resume job {job.id}: {e}")
                self.job_repo.fail(job.id, str(e), retry=False, claimed_at=job.claimed_at)
            except Exception as e:
                logger.exception(f"Resume job {job.id} failed: {e}")
                self.job_repo.fail(job.id, str(e), claimed_at=job.claimed_at)

        return len(jobs)

    def handle_job(self, job: Job, lease: Optional[Lease] = None) -> Optional[WorkflowExecution]:
        """Resume the execution a claimed resume job points at."""
        execution_id = job.execution_id
        if execution_id is None:
            raise DataAnomalyError(f"Job {job.id} has no execution id")

        execution = self.execution_repo.get_execution_by_id(execution_id)
        if execution is None:
            raise DataAnomalyError(f"Execution {execution_id} not found")

        if execution.status == ExecutionStatus.RUNNING:
            logger.warning(f"Execution {execution_id} already running; continuing interrupted resume")
            return self.interpreter.tick(execution_id, lease)

        if execution.status != ExecutionStatus.WAITING:
            logger.info(
                f"Execution {execution_id} is {execution.status.value}; resume job {job.id} ignored"
            )
            return execution

        ExecutionStateMachine.validate_transition(execution.status, ExecutionStatus.RUNNING)
        execution.status = ExecutionStatus.RUNNING
        execution.resume_at = None

        if not self.execution_repo.save_transition(execution):
            logger.info(f"Execution {execution_id} was resumed or cancelled concurrently")
            return self.execution_repo.get_execution_by_id(execution_id)

        logger.info(f"Resuming execution {execution_id}")
        return self.interpreter.tick(execution_id, lease)

    def recover_overdue(self, grace_seconds: Optional[int] = None) -> int:
        """
        Re-enqueue resume jobs for waiting executions whose job went missing.

        Only executions overdue by more than ``grace_seconds`` and without an
        unfinished resume job are considered.
        """
        grace = self.config.STALE_CLAIM_TIMEOUT if grace_seconds is None else grace_seconds
        now = self.clock()
        overdue = self.execution_repo.find_overdue_waiting(
            before=now - timedelta(seconds=grace),
            limit=self.config.CLAIM_BATCH_SIZE * 10,
        )

        for execution in overdue:
            self.job_repo.enqueue(
                JobKind.RESUME,
                {"execution_id": str(execution.id)},
                scheduled_for=now,
                tenant_id=execution.tenant_id,
            )
            logger.warning(
                f"Execution {execution.id} overdue since {execution.resume_at}; "
                f"resume job re-enqueued"
            )
        return len(overdue)
