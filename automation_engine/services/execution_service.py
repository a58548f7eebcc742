"""
Execution service for administering workflow executions.

Handles cancellation and read access to executions, their logs and the
per-tenant statistics.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from automation_engine.domain import (
    ExecutionLogEntry,
    ExecutionStateMachine,
    ExecutionStatus,
    WorkflowExecution,
    utcnow,
)
from automation_engine.persistence import ExecutionRepository, LogRepository, WorkflowRepository
from .interpreter import ConcurrentModificationError

logger = logging.getLogger(__name__)

CANCEL_ATTEMPTS = 3


class ExecutionServiceError(Exception):
    """Base exception for execution service errors."""
    pass


class ExecutionNotFoundError(ExecutionServiceError):
    """Raised when an execution is not found."""
    pass


class ExecutionStateError(ExecutionServiceError):
    """Raised when an invalid state transition is attempted."""
    pass


class ExecutionService:
    """
    Service for managing workflow executions.

    Cancellation races with running ticks; it retries its compare-and-set a
    few times before giving up.
    """

    def __init__(
        self,
        execution_repo: ExecutionRepository,
        workflow_repo: WorkflowRepository,
        log_repo: LogRepository,
    ):
        self.execution_repo = execution_repo
        self.workflow_repo = workflow_repo
        self.log_repo = log_repo

    def get_execution(self, execution_id: UUID) -> WorkflowExecution:
        """Get an execution by ID."""
        execution = self.execution_repo.get_execution_by_id(execution_id)

        if not execution:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")

        return execution

    def cancel(self, execution_id: UUID) -> WorkflowExecution:
        """
        Cancel a running or waiting execution.

        A running tick notices at its next step boundary. Side effects
        already dispatched are not undone.
        """
        for _ in range(CANCEL_ATTEMPTS):
            execution = self.get_execution(execution_id)

            if not ExecutionStateMachine.can_transition(execution.status, ExecutionStatus.CANCELLED):
                raise ExecutionStateError(
                    f"Cannot cancel execution in {execution.status.value} status"
                )

            execution.status = ExecutionStatus.CANCELLED
            execution.resume_at = None
            execution.completed_at = utcnow()

            if self.execution_repo.save_transition(execution):
                logger.info(f"Cancelled execution {execution_id}")
                return execution

            logger.info(f"Execution {execution_id} changed while cancelling; retrying")

        raise ConcurrentModificationError(
            f"Execution {execution_id} kept changing; cancellation not applied"
        )

    def get_status(self, execution_id: UUID) -> Dict[str, Any]:
        """Status, current step, resume time and error of an execution."""
        execution = self.get_execution(execution_id)
        return {
            "id": str(execution.id),
            "workflow_id": str(execution.workflow_id),
            "status": execution.status.value,
            "current_step_id": str(execution.current_step_id) if execution.current_step_id else None,
            "current_position": execution.current_position,
            "resume_at": execution.resume_at.isoformat() if execution.resume_at else None,
            "error": execution.error,
        }

    def get_logs(
        self,
        execution_id: UUID,
        limit: int = 1000,
        offset: int = 0,
    ) -> List[ExecutionLogEntry]:
        """Get the log entries of an execution, oldest first."""
        self.get_execution(execution_id)
        return self.log_repo.get_logs_by_execution_id(execution_id, limit=limit, offset=offset)

    def list_executions(
        self,
        workflow_id: Optional[UUID] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowExecution]:
        """List executions with optional filtering."""
        return self.execution_repo.list_executions(
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            status=status,
            limit=limit,
            offset=offset,
        )

    def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Workflow counts and executions per status for one tenant."""
        workflows = self.workflow_repo.count_workflows(tenant_id)
        by_status = self.execution_repo.count_by_status(tenant_id)
        return {
            "workflows": workflows,
            "executions": {status.value: by_status.get(status.value, 0) for status in ExecutionStatus},
        }
