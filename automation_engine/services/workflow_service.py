"""
Workflow service for managing workflow definitions.

Handles CRUD operations and validation for workflows and their steps.
Every change is validated before it is saved: step configs must parse,
trigger configs must be well-formed and every step pointer must reference a
step of the same workflow.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from automation_engine.domain import (
    StepConfigError,
    StepKind,
    TriggerConfigError,
    TriggerKind,
    Workflow,
    WorkflowStep,
    parse_step_config,
    validate_trigger_config,
)
from automation_engine.persistence import ExecutionRepository, WorkflowRepository
from .templates import WORKFLOW_TEMPLATES

logger = logging.getLogger(__name__)

STEP_FIELDS = frozenset({
    "name", "kind", "config", "next_step_id",
    "on_true_step_id", "on_false_step_id", "max_attempts",
})


class WorkflowServiceError(Exception):
    """Base exception for workflow service errors."""
    pass


class WorkflowNotFoundError(WorkflowServiceError):
    """Raised when a workflow or one of its steps is not found."""
    pass


class WorkflowValidationError(WorkflowServiceError):
    """Raised when workflow validation fails."""
    pass


def _as_uuid(value: Any) -> Optional[UUID]:
    if value is None or value == "":
        return None
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        raise WorkflowValidationError(f"'{value}' is not a valid step id")


def _as_attempts(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise WorkflowValidationError(f"max_attempts must be a whole number, got '{value}'")


def _step_errors(workflow: Workflow, step: WorkflowStep) -> List[str]:
    """Problems with one step, judged against the rest of ``workflow``."""
    errors = []
    try:
        parse_step_config(step.kind, step.config)
    except StepConfigError as e:
        errors.append(f"Step '{step.name}': {e}")

    if step.max_attempts < 1:
        errors.append(f"Step '{step.name}': max_attempts must be at least 1")

    if step.kind != StepKind.BRANCH and (step.on_true_step_id or step.on_false_step_id):
        errors.append(f"Step '{step.name}': only branch steps have true/false targets")

    for pointer in step.pointers:
        if pointer == step.id:
            errors.append(f"Step '{step.name}' points at itself")
        elif workflow.get_step(pointer) is None:
            errors.append(f"Step '{step.name}' points at {pointer}, which is not in this workflow")
    return errors


class WorkflowService:
    """
    Service for managing workflow definitions.

    Provides business logic for creating, updating, and managing workflows.
    """

    def __init__(
        self,
        workflow_repo: WorkflowRepository,
        execution_repo: Optional[ExecutionRepository] = None,
    ):
        self.workflow_repo = workflow_repo
        self.execution_repo = execution_repo

    def create_workflow(
        self,
        tenant_id: str,
        name: str,
        trigger_kind: TriggerKind,
        trigger_config: Optional[Dict[str, Any]] = None,
        description: str = "",
        steps: Optional[Sequence[Dict[str, Any]]] = None,
        is_active: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        """
        Create a new workflow definition.

        ``steps`` is an optional list of step dicts (kind, name, config,
        max_attempts), stored in list order. The workflow is created
        inactive unless ``is_active`` is set.
        """
        logger.info(f"Creating workflow: {name}")

        if not tenant_id:
            raise WorkflowValidationError("Tenant id is required")

        if not name or not name.strip():
            raise WorkflowValidationError("Workflow name is required")

        workflow = Workflow.create(
            tenant_id=tenant_id,
            name=name.strip(),
            trigger_kind=TriggerKind(trigger_kind),
            trigger_config=self._checked_trigger_config(TriggerKind(trigger_kind), trigger_config),
            description=description or "",
            is_active=False,
            metadata=metadata,
        )

        for position, raw in enumerate(steps or []):
            workflow.add_step(self._build_step(workflow, raw, position))

        self._raise_on_errors(workflow)

        if is_active:
            self._activate(workflow)

        return self.workflow_repo.create_workflow(workflow)

    def update_workflow(
        self,
        workflow_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        trigger_config: Optional[Dict[str, Any]] = None,
        is_active: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        """Update the definition-level fields of a workflow."""
        workflow = self.get_workflow(workflow_id)

        if name is not None:
            if not name.strip():
                raise WorkflowValidationError("Workflow name is required")
            workflow.name = name.strip()

        if description is not None:
            workflow.description = description

        if trigger_config is not None:
            workflow.trigger_config = self._checked_trigger_config(
                workflow.trigger_kind, trigger_config
            )

        if metadata is not None:
            workflow.metadata = metadata

        if is_active is True:
            self._activate(workflow)
        elif is_active is False:
            workflow.deactivate()

        logger.info(f"Updating workflow {workflow_id}")
        return self.workflow_repo.update_workflow(workflow)

    def activate_workflow(self, workflow_id: UUID) -> Workflow:
        """
        Activate a workflow so triggers start executions.

        Validates that the workflow has steps and a consistent step graph.
        """
        workflow = self.get_workflow(workflow_id)
        self._activate(workflow)

        logger.info(f"Activating workflow {workflow_id}")
        return self.workflow_repo.update_workflow(workflow)

    def deactivate_workflow(self, workflow_id: UUID) -> Workflow:
        """Soft-disable a workflow. Running executions are not affected."""
        workflow = self.get_workflow(workflow_id)
        workflow.deactivate()

        logger.info(f"Deactivating workflow {workflow_id}")
        return self.workflow_repo.update_workflow(workflow)

    def delete_workflow(self, workflow_id: UUID) -> None:
        """Delete a workflow that has never been executed."""
        self.get_workflow(workflow_id)

        if self.execution_repo is not None and self.execution_repo.count_for_workflow(workflow_id):
            raise WorkflowValidationError(
                "Workflow has executions; deactivate it instead of deleting"
            )

        logger.info(f"Deleting workflow {workflow_id}")
        self.workflow_repo.delete_workflow(workflow_id)

    def add_step(
        self,
        workflow_id: UUID,
        name: str,
        kind: StepKind,
        config: Optional[Dict[str, Any]] = None,
        position: Optional[int] = None,
        next_step_id: Optional[UUID] = None,
        on_true_step_id: Optional[UUID] = None,
        on_false_step_id: Optional[UUID] = None,
        max_attempts: int = 1,
    ) -> WorkflowStep:
        """
        Add a step to a workflow.

        The position defaults to one past the current last step.
        """
        workflow = self.get_workflow(workflow_id)

        if position is None:
            position = workflow.next_position()
        if position < 0:
            raise WorkflowValidationError("Step position must be non-negative")
        if any(s.position == position for s in workflow.steps):
            raise WorkflowValidationError(f"Step position {position} already exists")

        step = self._build_step(workflow, {
            "name": name,
            "kind": kind,
            "config": config,
            "next_step_id": next_step_id,
            "on_true_step_id": on_true_step_id,
            "on_false_step_id": on_false_step_id,
            "max_attempts": max_attempts,
        }, position)

        errors = _step_errors(workflow, step)
        if errors:
            raise WorkflowValidationError("; ".join(errors))

        logger.info(f"Adding step '{step.name}' to workflow {workflow_id}")
        return self.workflow_repo.add_step(step)

    def update_step(
        self,
        workflow_id: UUID,
        step_id: UUID,
        changes: Dict[str, Any],
    ) -> WorkflowStep:
        """Apply ``changes`` (a subset of the step fields) to one step."""
        workflow = self.get_workflow(workflow_id)
        current = workflow.get_step(_as_uuid(step_id))
        if current is None:
            raise WorkflowNotFoundError(f"Step {step_id} not found in workflow {workflow_id}")

        unknown = set(changes) - STEP_FIELDS
        if unknown:
            raise WorkflowValidationError(f"Unknown step fields: {', '.join(sorted(unknown))}")

        step = copy.deepcopy(current)
        if "name" in changes:
            if not changes["name"] or not str(changes["name"]).strip():
                raise WorkflowValidationError("Step name is required")
            step.name = str(changes["name"]).strip()
        if "kind" in changes:
            step.kind = self._checked_kind(changes["kind"])
        if "config" in changes:
            step.config = changes["config"] or {}
        for key in ("next_step_id", "on_true_step_id", "on_false_step_id"):
            if key in changes:
                setattr(step, key, _as_uuid(changes[key]))
        if "max_attempts" in changes:
            step.max_attempts = _as_attempts(changes["max_attempts"])

        errors = _step_errors(workflow, step)
        if errors:
            raise WorkflowValidationError("; ".join(errors))

        logger.info(f"Updating step {step_id} of workflow {workflow_id}")
        return self.workflow_repo.update_step(step)

    def remove_step(self, workflow_id: UUID, step_id: UUID) -> None:
        """Remove a step that no other step points at."""
        workflow = self.get_workflow(workflow_id)
        step_id = _as_uuid(step_id)
        if workflow.get_step(step_id) is None:
            raise WorkflowNotFoundError(f"Step {step_id} not found in workflow {workflow_id}")

        referrers = [s.name for s in workflow.steps if step_id in s.pointers and s.id != step_id]
        if referrers:
            raise WorkflowValidationError(
                f"Step is referenced by: {', '.join(referrers)}"
            )

        logger.info(f"Removing step {step_id} from workflow {workflow_id}")
        self.workflow_repo.delete_step(step_id)

    def reorder_steps(self, workflow_id: UUID, step_ids: Sequence[UUID]) -> Workflow:
        """
        Reassign positions so steps run in the order of ``step_ids``.

        ``step_ids`` must list every step of the workflow exactly once.
        """
        workflow = self.get_workflow(workflow_id)
        ordered = [_as_uuid(s) for s in step_ids]

        if len(ordered) != len(set(ordered)) or set(ordered) != {s.id for s in workflow.steps}:
            raise WorkflowValidationError("Reorder must list every step of the workflow exactly once")

        positions = [(step_id, position) for position, step_id in enumerate(ordered)]
        self.workflow_repo.update_positions(workflow_id, positions)

        for step_id, position in positions:
            workflow.get_step(step_id).position = position
        workflow.steps.sort(key=lambda s: s.position)

        logger.info(f"Reordered {len(positions)} steps of workflow {workflow_id}")
        return workflow

    def validate_workflow(self, workflow_id: UUID) -> List[str]:
        """Return every problem with a stored workflow (empty when valid)."""
        return self._collect_errors(self.get_workflow(workflow_id))

    def get_workflow(self, workflow_id: UUID) -> Workflow:
        """Get a workflow by ID."""
        workflow = self.workflow_repo.get_workflow_by_id(workflow_id)

        if not workflow:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        return workflow

    def list_workflows(
        self,
        tenant_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        trigger_kind: Optional[TriggerKind] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Workflow]:
        """List workflows with optional filtering."""
        return self.workflow_repo.list_workflows(
            tenant_id=tenant_id,
            is_active=is_active,
            trigger_kind=trigger_kind,
            limit=limit,
            offset=offset,
        )

    def list_templates(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(WORKFLOW_TEMPLATES)

    def create_from_template(
        self,
        template_index: int,
        tenant_id: str,
        name: Optional[str] = None,
    ) -> Workflow:
        """Copy a template into a new, inactive workflow."""
        if not 0 <= template_index < len(WORKFLOW_TEMPLATES):
            raise WorkflowValidationError(f"Unknown template {template_index}")

        template = copy.deepcopy(WORKFLOW_TEMPLATES[template_index])
        return self.create_workflow(
            tenant_id=tenant_id,
            name=name or template["name"],
            trigger_kind=template["trigger_kind"],
            trigger_config=template["trigger_config"],
            description=template["description"],
            steps=template["steps"],
            metadata={"template": template["name"]},
        )

    def _activate(self, workflow: Workflow) -> None:
        if not workflow.steps:
            raise WorkflowValidationError("Cannot activate workflow without steps")
        self._raise_on_errors(workflow)
        workflow.activate()

    def _collect_errors(self, workflow: Workflow) -> List[str]:
        errors = []
        try:
            validate_trigger_config(workflow.trigger_kind, workflow.trigger_config)
        except TriggerConfigError as e:
            errors.append(str(e))

        positions = [s.position for s in workflow.steps]
        if len(positions) != len(set(positions)):
            errors.append("Step positions must be unique")

        for step in workflow.steps:
            errors.extend(_step_errors(workflow, step))
        return errors

    def _raise_on_errors(self, workflow: Workflow) -> None:
        errors = self._collect_errors(workflow)
        if errors:
            raise WorkflowValidationError("; ".join(errors))

    def _checked_trigger_config(
        self,
        kind: TriggerKind,
        config: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        try:
            return dict(validate_trigger_config(kind, config))
        except TriggerConfigError as e:
            raise WorkflowValidationError(str(e))

    def _checked_kind(self, kind: Any) -> StepKind:
        try:
            return StepKind(kind)
        except ValueError:
            raise WorkflowValidationError(f"Unknown step kind: {kind}")

    def _build_step(self, workflow: Workflow, raw: Dict[str, Any], position: int) -> WorkflowStep:
        name = raw.get("name")
        if not name or not str(name).strip():
            raise WorkflowValidationError("Step name is required")

        return WorkflowStep.create(
            workflow_id=workflow.id,
            name=str(name).strip(),
            kind=self._checked_kind(raw.get("kind")),
            position=position,
            config=raw.get("config") or {},
            next_step_id=_as_uuid(raw.get("next_step_id")),
            on_true_step_id=_as_uuid(raw.get("on_true_step_id")),
            on_false_step_id=_as_uuid(raw.get("on_false_step_id")),
            max_attempts=_as_attempts(raw.get("max_attempts") or 1),
        )
