"""
Unit tests for execution service.
"""

import pytest
from unittest.mock import MagicMock
from uuid import uuid4

from automation_engine.domain import ExecutionStatus, SubjectRef, WorkflowExecution
from automation_engine.services import ConcurrentModificationError
from automation_engine.services.execution_service import (
    ExecutionService,
    ExecutionNotFoundError,
    ExecutionStateError,
)


SEND = {"name": "Send", "kind": "send_message", "config": {"subject": "Hello"}}
WAIT = {"name": "Wait", "kind": "wait", "config": {"duration": 1, "unit": "days"}}


@pytest.fixture
def service(execution_repo, workflow_repo, log_repo):
    return ExecutionService(execution_repo, workflow_repo, log_repo)


def started(execution_repo, workflow, tenant_id="tenant-1"):
    execution = WorkflowExecution.create(workflow, workflow.trigger_kind, {}, SubjectRef("lead", "1"))
    execution.tenant_id = tenant_id
    execution_repo.create_execution(execution)
    return execution


class TestExecutionService:
    """Tests for ExecutionService."""

    def test_get_execution_not_found(self, service):
        with pytest.raises(ExecutionNotFoundError):
            service.get_execution(uuid4())

    def test_cancel_running(self, service, make_workflow, execution_repo):
        execution = started(execution_repo, make_workflow([SEND]))

        cancelled = service.cancel(execution.id)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert execution_repo.get_state(execution.id) == (ExecutionStatus.CANCELLED, 2)

    def test_cancel_waiting_clears_resume_at(self, service, interpreter, make_workflow, execution_repo):
        execution = started(execution_repo, make_workflow([WAIT, SEND]))
        interpreter.tick(execution.id)

        service.cancel(execution.id)

        stored = execution_repo.get_execution_by_id(execution.id)
        assert stored.status == ExecutionStatus.CANCELLED
        assert stored.resume_at is None

    def test_cancel_terminal_execution(self, service, interpreter, make_workflow, execution_repo):
        execution = started(execution_repo, make_workflow([SEND]))
        interpreter.tick(execution.id)

        with pytest.raises(ExecutionStateError, match="Cannot cancel execution in completed status"):
            service.cancel(execution.id)

    def test_cancel_retries_after_lost_race(self, make_workflow):
        workflow = make_workflow([SEND])
        repo = MagicMock()
        repo.get_execution_by_id.side_effect = lambda _id: WorkflowExecution.create(workflow, workflow.trigger_kind)
        repo.save_transition.side_effect = [False, True]
        service = ExecutionService(repo, MagicMock(), MagicMock())

        cancelled = service.cancel(uuid4())

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert repo.save_transition.call_count == 2

    def test_cancel_gives_up(self, make_workflow):
        workflow = make_workflow([SEND])
        repo = MagicMock()
        repo.get_execution_by_id.side_effect = lambda _id: WorkflowExecution.create(workflow, workflow.trigger_kind)
        repo.save_transition.return_value = False
        service = ExecutionService(repo, MagicMock(), MagicMock())

        with pytest.raises(ConcurrentModificationError):
            service.cancel(uuid4())

        assert repo.save_transition.call_count == 3

    def test_get_status(self, service, interpreter, make_workflow, execution_repo):
        workflow = make_workflow([WAIT, SEND])
        execution = started(execution_repo, workflow)
        waiting = interpreter.tick(execution.id)

        status = service.get_status(execution.id)

        assert status["status"] == "waiting"
        assert status["current_step_id"] == str(workflow.steps[1].id)
        assert status["current_position"] == 1
        assert status["resume_at"] == waiting.resume_at.isoformat()
        assert status["error"] is None

    def test_get_logs(self, service, interpreter, make_workflow, execution_repo):
        execution = started(execution_repo, make_workflow([SEND, WAIT]))
        interpreter.tick(execution.id)

        logs = service.get_logs(execution.id)

        assert [log.step_name for log in logs] == ["Send", "Wait"]

    def test_get_logs_unknown_execution(self, service):
        with pytest.raises(ExecutionNotFoundError):
            service.get_logs(uuid4())

    def test_list_executions_by_status(self, service, make_workflow, execution_repo):
        workflow = make_workflow([SEND])
        first = started(execution_repo, workflow)
        started(execution_repo, workflow)
        service.cancel(first.id)

        cancelled = service.list_executions(status=ExecutionStatus.CANCELLED)

        assert [e.id for e in cancelled] == [first.id]

    def test_get_stats(self, service, make_workflow, execution_repo):
        workflow = make_workflow([SEND])
        make_workflow([SEND], is_active=False)
        make_workflow([SEND], tenant_id="tenant-2")
        first = started(execution_repo, workflow)
        started(execution_repo, workflow)
        service.cancel(first.id)

        stats = service.get_stats("tenant-1")

        assert stats["workflows"] == {"total": 2, "active": 1}
        assert stats["executions"] == {
            "running": 1,
            "waiting": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 1,
        }
