"""
Trigger dispatcher.

Turns domain events into workflow executions. Each matching workflow gets a
new execution positioned at its first step, created in the same
transaction as the "run" job that will pick it up.
"""

import logging
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from automation_engine.config import Config, get_config
from automation_engine.domain import (
    Job,
    JobKind,
    SubjectRef,
    TriggerKind,
    Workflow,
    WorkflowExecution,
    trigger_matches,
)
from automation_engine.persistence import ExecutionRepository, WorkflowRepository
from .workflow_service import WorkflowNotFoundError, WorkflowValidationError

logger = logging.getLogger(__name__)

SubjectLike = Union[SubjectRef, Dict[str, Any], None]


def dedup_key(workflow_id: UUID, subject: SubjectRef, event_id: Optional[str]) -> Optional[str]:
    """Key that makes a redelivered event start the same execution only once."""
    if not event_id:
        return None
    return f"{workflow_id}:{subject.entity_kind or ''}:{subject.entity_id or ''}:{event_id}"


def _subject(subject: SubjectLike) -> SubjectRef:
    if isinstance(subject, SubjectRef):
        return subject
    return SubjectRef.from_dict(subject)


class TriggerDispatcher:
    """Starts executions for the workflows an event triggers."""

    def __init__(
        self,
        workflow_repo: WorkflowRepository,
        execution_repo: ExecutionRepository,
        config: Optional[Config] = None,
    ):
        self.workflow_repo = workflow_repo
        self.execution_repo = execution_repo
        self.config = config or get_config()

    def on_event(
        self,
        tenant_id: str,
        trigger_kind: TriggerKind,
        payload: Optional[Dict[str, Any]] = None,
        subject: SubjectLike = None,
        event_id: Optional[str] = None,
    ) -> List[UUID]:
        """
        Start an execution for every active workflow the event matches.

        Returns the execution ids, including ids of executions an earlier
        delivery of the same ``event_id`` already started.
        """
        trigger_kind = TriggerKind(trigger_kind)
        payload = payload or {}
        subject = _subject(subject)

        workflows = self.workflow_repo.find_active_by_trigger(tenant_id, trigger_kind)
        matching = [
            w for w in workflows
            if trigger_matches(trigger_kind, w.trigger_config, payload)
        ]
        logger.info(
            f"Event {trigger_kind.value} for tenant {tenant_id}: "
            f"{len(matching)} of {len(workflows)} workflows match"
        )

        execution_ids = []
        for workflow in matching:
            if not workflow.steps:
                logger.warning(f"Workflow {workflow.id} has no steps; skipping")
                continue
            execution_ids.append(
                self._start(workflow, trigger_kind, payload, subject, event_id)
            )
        return execution_ids

    def trigger_manual(
        self,
        workflow_id: UUID,
        tenant_id: str,
        payload: Optional[Dict[str, Any]] = None,
        subject: SubjectLike = None,
        event_id: Optional[str] = None,
    ) -> UUID:
        """Start one workflow directly, whatever its trigger kind."""
        workflow = self.workflow_repo.get_workflow_by_id(workflow_id)
        if workflow is None or workflow.tenant_id != tenant_id:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        if not workflow.is_active:
            raise WorkflowValidationError("Cannot trigger an inactive workflow")

        if not workflow.steps:
            raise WorkflowValidationError("Cannot trigger a workflow without steps")

        return self._start(workflow, TriggerKind.MANUAL, payload or {}, _subject(subject), event_id)

    def _start(
        self,
        workflow: Workflow,
        trigger_kind: TriggerKind,
        payload: Dict[str, Any],
        subject: SubjectRef,
        event_id: Optional[str],
    ) -> UUID:
        key = dedup_key(workflow.id, subject, event_id)
        execution = WorkflowExecution.create(
            workflow=workflow,
            trigger_kind=trigger_kind,
            payload=payload,
            subject=subject,
            dedup_key=key,
        )
        job = Job.for_execution(
            JobKind.RUN,
            execution,
            max_attempts=self.config.JOB_MAX_ATTEMPTS,
        )

        created = self.execution_repo.create_execution(execution, [job])
        if created is None:
            existing = self.execution_repo.get_execution_by_dedup_key(key)
            logger.info(f"Event {event_id} already started execution {existing.id}")
            return existing.id

        logger.info(f"Started execution {execution.id} of workflow {workflow.id}")
        return created.id
