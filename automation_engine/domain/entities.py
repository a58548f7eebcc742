"""
Domain entities for workflow automation.

These are the core domain objects that represent workflow definitions,
steps, executions, execution log entries and jobs. They are independent of
any persistence mechanism.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from .enums import ExecutionStatus, JobKind, JobStatus, StepKind, StepOutcome, TriggerKind
from .step_configs import StepConfig, parse_step_config


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SubjectRef:
    """The domain entity an execution concerns, e.g. ("lead", "42")."""
    entity_kind: Optional[str] = None
    entity_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"entity_kind": self.entity_kind, "entity_id": self.entity_id}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SubjectRef":
        data = data or {}
        entity_id = data.get("entity_id")
        return cls(
            entity_kind=data.get("entity_kind"),
            entity_id=str(entity_id) if entity_id is not None else None,
        )


@dataclass
class WorkflowStep:
    """
    Represents a single step in a workflow definition.

    Steps run in position order unless a step points elsewhere: any step may
    name an explicit ``next_step_id``, and branch steps name a true and a
    false target. An empty branch target terminates the execution.
    """
    id: UUID
    workflow_id: UUID
    name: str
    kind: StepKind
    position: int
    config: Dict[str, Any] = field(default_factory=dict)
    next_step_id: Optional[UUID] = None
    on_true_step_id: Optional[UUID] = None
    on_false_step_id: Optional[UUID] = None
    max_attempts: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        workflow_id: UUID,
        name: str,
        kind: StepKind,
        position: int,
        config: Optional[Dict[str, Any]] = None,
        next_step_id: Optional[UUID] = None,
        on_true_step_id: Optional[UUID] = None,
        on_false_step_id: Optional[UUID] = None,
        max_attempts: int = 1,
    ) -> "WorkflowStep":
        """Factory method to create a new workflow step."""
        now = utcnow()
        return cls(
            id=uuid4(),
            workflow_id=workflow_id,
            name=name,
            kind=kind,
            position=position,
            config=config or {},
            next_step_id=next_step_id,
            on_true_step_id=on_true_step_id,
            on_false_step_id=on_false_step_id,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )

    @property
    def typed_config(self) -> StepConfig:
        """The config parsed for this step's kind. Raises StepConfigError."""
        return parse_step_config(self.kind, self.config)

    @property
    def pointers(self) -> List[UUID]:
        """All step ids this step can jump to."""
        return [
            p for p in (self.next_step_id, self.on_true_step_id, self.on_false_step_id)
            if p is not None
        ]

    def snapshot(self) -> Dict[str, Any]:
        """Frozen copy stored in an execution context while it is suspended."""
        return {
            "id": str(self.id),
            "kind": self.kind.value,
            "name": self.name,
            "config": dict(self.config),
        }


@dataclass
class Workflow:
    """
    Represents a workflow definition.

    A workflow pairs a trigger (kind plus kind-specific config) with an
    ordered set of steps. Definitions are soft-disabled through
    ``is_active`` and are never hard-deleted while executions reference them.
    """
    id: UUID
    tenant_id: str
    name: str
    description: str
    trigger_kind: TriggerKind
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    steps: List[WorkflowStep] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        tenant_id: str,
        name: str,
        trigger_kind: TriggerKind,
        trigger_config: Optional[Dict[str, Any]] = None,
        description: str = "",
        is_active: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Workflow":
        """Factory method to create a new workflow definition."""
        now = utcnow()
        return cls(
            id=uuid4(),
            tenant_id=tenant_id,
            name=name,
            description=description,
            trigger_kind=trigger_kind,
            trigger_config=trigger_config or {},
            is_active=is_active,
            steps=[],
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )

    def add_step(self, step: WorkflowStep) -> None:
        """Add a step to the workflow."""
        self.steps.append(step)
        self.steps.sort(key=lambda s: s.position)
        self.updated_at = utcnow()

    def get_step(self, step_id: Optional[UUID]) -> Optional[WorkflowStep]:
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def first_step(self) -> Optional[WorkflowStep]:
        return min(self.steps, key=lambda s: s.position) if self.steps else None

    def step_after(self, position: int) -> Optional[WorkflowStep]:
        """The step with the smallest position greater than ``position``."""
        later = [s for s in self.steps if s.position > position]
        return min(later, key=lambda s: s.position) if later else None

    def successor(self, step: WorkflowStep) -> Optional[WorkflowStep]:
        """Default successor: the explicit next step, else the next position."""
        if step.next_step_id is not None:
            return self.get_step(step.next_step_id)
        return self.step_after(step.position)

    def next_position(self) -> int:
        return max((s.position for s in self.steps), default=-1) + 1

    def activate(self) -> None:
        if not self.steps:
            raise ValueError("Cannot activate workflow without steps")
        self.is_active = True
        self.updated_at = utcnow()

    def deactivate(self) -> None:
        self.is_active = False
        self.updated_at = utcnow()


@dataclass
class WorkflowExecution:
    """
    Represents a single run of a workflow against one subject.

    The position pointer (``current_step_id`` / ``current_position``) always
    names the next step to run. ``version`` increases on every write and
    guards each transition against concurrent modification.
    """
    id: UUID
    workflow_id: UUID
    tenant_id: str
    trigger_kind: TriggerKind
    status: ExecutionStatus
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    subject: SubjectRef = field(default_factory=SubjectRef)
    current_step_id: Optional[UUID] = None
    current_position: Optional[int] = None
    resume_at: Optional[datetime] = None
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    dedup_key: Optional[str] = None
    step_attempts: int = 0
    version: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        workflow: Workflow,
        trigger_kind: TriggerKind,
        payload: Optional[Dict[str, Any]] = None,
        subject: Optional[SubjectRef] = None,
        dedup_key: Optional[str] = None,
    ) -> "WorkflowExecution":
        """Factory method to create an execution positioned at the first step."""
        now = utcnow()
        payload = dict(payload or {})
        first = workflow.first_step()
        return cls(
            id=uuid4(),
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            trigger_kind=trigger_kind,
            status=ExecutionStatus.RUNNING,
            trigger_payload=payload,
            subject=subject or SubjectRef(),
            current_step_id=first.id if first else None,
            current_position=first.position if first else None,
            context=dict(payload),
            dedup_key=dedup_key,
            started_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        """Check if execution is in a terminal state."""
        return self.status in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    def move_to(self, step: Optional[WorkflowStep]) -> None:
        """Point the execution at ``step`` (None means nothing left to run)."""
        self.current_step_id = step.id if step else None
        self.current_position = step.position if step else None
        self.step_attempts = 0


@dataclass
class ExecutionLogEntry:
    """
    Append-only audit record, one per step attempt.

    This is the tenant-visible trail; operator diagnostics go to the Python
    logger.
    """
    id: UUID
    execution_id: UUID
    outcome: StepOutcome
    step_id: Optional[UUID] = None
    step_kind: Optional[StepKind] = None
    step_name: Optional[str] = None
    message: str = ""
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def for_step(
        cls,
        execution_id: UUID,
        step: WorkflowStep,
        outcome: StepOutcome,
        message: str,
        input_data: Optional[Dict[str, Any]] = None,
        output_data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> "ExecutionLogEntry":
        """Create a log entry describing an attempt of ``step``."""
        return cls(
            id=uuid4(),
            execution_id=execution_id,
            outcome=outcome,
            step_id=step.id,
            step_kind=step.kind,
            step_name=step.name,
            message=message,
            input_data=input_data or {},
            output_data=output_data,
            error=error,
            timestamp=utcnow(),
        )


@dataclass
class Job:
    """
    A durable unit of pending work.

    Jobs are claimed by workers, completed or failed, and retained after
    completion for inspection.
    """
    id: UUID
    kind: JobKind
    payload: Dict[str, Any]
    status: JobStatus
    scheduled_for: datetime
    tenant_id: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        kind: JobKind,
        payload: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
        max_attempts: int = 3,
    ) -> "Job":
        """Factory method to create a pending job."""
        now = utcnow()
        return cls(
            id=uuid4(),
            kind=kind,
            payload=payload or {},
            status=JobStatus.PENDING,
            scheduled_for=scheduled_for or now,
            tenant_id=tenant_id,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def for_execution(
        cls,
        kind: JobKind,
        execution: WorkflowExecution,
        scheduled_for: Optional[datetime] = None,
        max_attempts: int = 3,
    ) -> "Job":
        """Create a run/resume job driving ``execution``."""
        return cls.create(
            kind=kind,
            payload={"execution_id": str(execution.id)},
            scheduled_for=scheduled_for,
            tenant_id=execution.tenant_id,
            max_attempts=max_attempts,
        )

    @property
    def execution_id(self) -> Optional[UUID]:
        value = self.payload.get("execution_id")
        return UUID(value) if value else None
