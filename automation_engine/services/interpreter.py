"""
Step interpreter - the core execution engine.

A tick loads a running execution and its workflow, then executes steps one
after another until the execution suspends at a wait step, finishes, fails
or is cancelled. Every transition (execution row, log entry, follow-up job)
is written in one transaction that only applies if the execution version is
unchanged, so two workers can never both advance the same execution.
"""

import logging
import re
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional
from uuid import UUID

from automation_engine.config import Config, get_config
from automation_engine.domain import (
    ConditionSource,
    ExecutionLogEntry,
    ExecutionStateMachine,
    ExecutionStatus,
    Job,
    JobKind,
    StepConfigError,
    StepKind,
    StepOutcome,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
    parse_step_config,
    utcnow,
)
from automation_engine.domain.conditions import MISSING, ConditionError, evaluate, get_nested
from automation_engine.domain.step_configs import (
    BranchConfig,
    CallWebhookConfig,
    CreateNotificationConfig,
    CreateTaskConfig,
    MutateRecordConfig,
    SendMessageConfig,
    StepConfig,
    WaitConfig,
)
from automation_engine.persistence import ExecutionRepository, WorkflowRepository
from .collaborators import ActionResult, Collaborators

logger = logging.getLogger(__name__)

RESUME_STEP_KEY = "_resume_step"
STEP_OUTPUTS_KEY = "steps"

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][\w.]*)\}")

StepHandler = Callable[[WorkflowExecution, Workflow, WorkflowStep, StepConfig], bool]

# Renews the claim of the job driving a tick; False once the claim is lost.
Lease = Callable[[], bool]


class InterpreterError(Exception):
    """Base exception for interpreter errors."""
    pass


class ConcurrentModificationError(InterpreterError):
    """Raised when an execution changed between read and write."""
    pass


class DataAnomalyError(InterpreterError):
    """Raised when a job references data that does not exist."""
    pass


def render(value: Any, context: Dict[str, Any]) -> Any:
    """
    Substitute ``{path}`` placeholders with values from ``context``.

    A string that is exactly one placeholder is replaced by the raw value,
    keeping its type. Unknown placeholders are left as they are.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value)
        if whole:
            resolved = get_nested(context, whole.group(1))
            return value if resolved is MISSING else resolved

        def substitute(match):
            resolved = get_nested(context, match.group(1))
            return match.group(0) if resolved is MISSING else str(resolved)

        return _PLACEHOLDER.sub(substitute, value)
    if isinstance(value, dict):
        return {key: render(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, context) for item in value]
    return value


class StepInterpreter:
    """
    Executes workflow steps for one execution at a time.

    Responsibilities:
    - Dispatch each step to the handler for its kind
    - Suspend at wait steps by scheduling a resume job
    - Apply the bounded per-step retry policy
    - Persist every transition atomically with its log entry
    """

    def __init__(
        self,
        workflow_repo: WorkflowRepository,
        execution_repo: ExecutionRepository,
        collaborators: Optional[Collaborators] = None,
        config: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.workflow_repo = workflow_repo
        self.execution_repo = execution_repo
        self.collaborators = collaborators or Collaborators()
        self.config = config or get_config()
        self.clock = clock

        self._handlers: Dict[StepKind, StepHandler] = {
            StepKind.SEND_MESSAGE: self._send_message,
            StepKind.WAIT: self._wait,
            StepKind.BRANCH: self._branch,
            StepKind.CREATE_TASK: self._create_task,
            StepKind.MUTATE_RECORD: self._mutate_record,
            StepKind.CREATE_NOTIFICATION: self._create_notification,
            StepKind.CALL_WEBHOOK: self._call_webhook,
        }
        missing = set(StepKind) - set(self._handlers)
        if missing:
            raise InterpreterError(
                f"No handler for step kinds: {', '.join(sorted(k.value for k in missing))}"
            )

    def handle_job(self, job: Job, lease: Optional[Lease] = None) -> WorkflowExecution:
        """Run the execution a "run" job points at."""
        if job.execution_id is None:
            raise DataAnomalyError(f"Job {job.id} has no execution id")
        return self.tick(job.execution_id, lease)

    def tick(self, execution_id: UUID, lease: Optional[Lease] = None) -> WorkflowExecution:
        """
        Advance a running execution as far as it can go.

        Returns the execution as persisted. Step-level problems never raise;
        they end up in the execution status and log. A missing execution
        raises DataAnomalyError. Database errors propagate.

        ``lease`` is renewed before every step. When it reports the claim
        lost, the tick stops before calling another collaborator.
        """
        execution = self.execution_repo.get_execution_by_id(execution_id)
        if execution is None:
            raise DataAnomalyError(f"Execution {execution_id} not found")

        if execution.status != ExecutionStatus.RUNNING:
            logger.info(f"Execution {execution_id} is {execution.status.value}; nothing to run")
            return execution

        try:
            workflow = self.workflow_repo.get_workflow_by_id(execution.workflow_id)
            if workflow is None:
                self._finish(
                    execution,
                    ExecutionStatus.FAILED,
                    error=f"Workflow {execution.workflow_id} no longer exists",
                )
                return execution

            self._run_steps(execution, workflow, lease)
        except ConcurrentModificationError as e:
            logger.info(str(e))
            return self.execution_repo.get_execution_by_id(execution_id) or execution

        return execution

    def _run_steps(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        lease: Optional[Lease] = None,
    ) -> None:
        for _ in range(self.config.MAX_STEPS_PER_TICK):
            self._check_unchanged(execution, lease)

            if execution.current_step_id is None:
                self._advance(execution, None)
                return

            step = self._current_step(execution, workflow)
            if step is None:
                self._finish(
                    execution,
                    ExecutionStatus.FAILED,
                    error=f"Step {execution.current_step_id} no longer exists",
                )
                return

            try:
                config = parse_step_config(step.kind, step.config)
            except StepConfigError as e:
                self._fail(execution, step, str(e), step.config)
                return

            logger.debug(f"Execution {execution.id}: running step '{step.name}' ({step.kind.value})")
            if not self._handlers[step.kind](execution, workflow, step, config):
                return

        self._finish(
            execution,
            ExecutionStatus.FAILED,
            error=(
                f"Exceeded {self.config.MAX_STEPS_PER_TICK} steps in one tick "
                f"without reaching a wait step"
            ),
        )

    def _check_unchanged(self, execution: WorkflowExecution, lease: Optional[Lease] = None) -> None:
        """Stop if the stored execution moved on (e.g. it was cancelled) or the claim lapsed."""
        if lease is not None and not lease():
            raise ConcurrentModificationError(
                f"Claim on execution {execution.id} lapsed during tick; stopping"
            )
        state = self.execution_repo.get_state(execution.id)
        if state != (ExecutionStatus.RUNNING, execution.version):
            stored = f"{state[0].value} v{state[1]}" if state else "missing"
            raise ConcurrentModificationError(
                f"Execution {execution.id} changed during tick "
                f"(expected running v{execution.version}, found {stored})"
            )

    def _current_step(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
    ) -> Optional[WorkflowStep]:
        """
        The step the pointer names.

        When the execution suspended in front of this step, the definition
        captured at suspension wins over the live one.
        """
        step = workflow.get_step(execution.current_step_id)
        snapshot = execution.context.pop(RESUME_STEP_KEY, None)
        if step is None or not snapshot or snapshot.get("id") != str(step.id):
            return step

        if snapshot.get("config") != step.config or snapshot.get("kind") != step.kind.value:
            logger.warning(
                f"Step '{step.name}' changed while execution {execution.id} was waiting; "
                f"using the definition captured at suspension"
            )
        return replace(
            step,
            kind=StepKind(snapshot.get("kind", step.kind.value)),
            config=snapshot.get("config", step.config),
        )

    # ============================================
    # TRANSITIONS
    # ============================================

    def _save(
        self,
        execution: WorkflowExecution,
        log_entry: Optional[ExecutionLogEntry] = None,
        jobs: Iterable[Job] = (),
    ) -> None:
        expected = execution.version
        if not self.execution_repo.save_transition(execution, log_entry, jobs):
            raise ConcurrentModificationError(
                f"Execution {execution.id} changed since version {expected}; stopping tick"
            )

    def _set_status(self, execution: WorkflowExecution, status: ExecutionStatus) -> None:
        if execution.status != status:
            ExecutionStateMachine.validate_transition(execution.status, status)
            execution.status = status

    def _advance(
        self,
        execution: WorkflowExecution,
        next_step: Optional[WorkflowStep],
        log_entry: Optional[ExecutionLogEntry] = None,
    ) -> bool:
        """Move the pointer; with nothing left to run the execution completes."""
        execution.move_to(next_step)
        if next_step is None:
            self._finish(execution, ExecutionStatus.COMPLETED, log_entry=log_entry)
            return False

        self._save(execution, log_entry)
        return True

    def _suspend(
        self,
        execution: WorkflowExecution,
        resume_at: datetime,
        log_entry: ExecutionLogEntry,
    ) -> None:
        self._set_status(execution, ExecutionStatus.WAITING)
        execution.resume_at = resume_at
        job = Job.for_execution(
            JobKind.RESUME,
            execution,
            scheduled_for=resume_at,
            max_attempts=self.config.JOB_MAX_ATTEMPTS,
        )
        self._save(execution, log_entry, [job])
        logger.info(f"Execution {execution.id} waiting until {resume_at.isoformat()}")

    def _finish(
        self,
        execution: WorkflowExecution,
        status: ExecutionStatus,
        error: Optional[str] = None,
        log_entry: Optional[ExecutionLogEntry] = None,
    ) -> None:
        self._set_status(execution, status)
        execution.error = error
        execution.resume_at = None
        execution.completed_at = self.clock()
        self._save(execution, log_entry)

        if error:
            logger.warning(f"Execution {execution.id} {status.value}: {error}")
        else:
            logger.info(f"Execution {execution.id} {status.value}")

    def _fail(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        error: str,
        input_data: Dict[str, Any],
        output_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        log_entry = ExecutionLogEntry.for_step(
            execution.id, step, StepOutcome.FAILED,
            f"Step '{step.name}' failed",
            input_data, output_data, error,
        )
        self._finish(
            execution,
            ExecutionStatus.FAILED,
            error=f"Step '{step.name}' failed: {error}",
            log_entry=log_entry,
        )

    def _step_failed(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        error: str,
        input_data: Dict[str, Any],
        output_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Retry the step later if it has attempts left, otherwise fail.

        A retry suspends the execution in front of the same step. The delay
        doubles with every attempt.
        """
        attempt = execution.step_attempts + 1
        execution.step_attempts = attempt

        if attempt >= step.max_attempts:
            self._fail(execution, step, error, input_data, output_data)
            return False

        delay = self.config.STEP_RETRY_DELAY * (2 ** (attempt - 1))
        resume_at = self.clock() + timedelta(seconds=delay)
        execution.context[RESUME_STEP_KEY] = step.snapshot()
        log_entry = ExecutionLogEntry.for_step(
            execution.id, step, StepOutcome.RETRYING,
            f"Attempt {attempt}/{step.max_attempts} failed; retrying at {resume_at.isoformat()}",
            input_data, output_data, error,
        )
        self._suspend(execution, resume_at, log_entry)
        return False

    def _perform(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        step: WorkflowStep,
        input_data: Dict[str, Any],
        action: Callable[[], ActionResult],
    ) -> bool:
        """Run a side-effecting step through its collaborator."""
        try:
            result = action()
        except Exception as e:
            logger.warning(
                f"Step '{step.name}' of execution {execution.id} raised: {e}",
                exc_info=True,
            )
            result = ActionResult.failure(f"{type(e).__name__}: {e}")

        if not result.success:
            return self._step_failed(
                execution, step, result.error or "Step failed", input_data, result.output or None
            )

        if result.output:
            execution.context.setdefault(STEP_OUTPUTS_KEY, {})[step.name] = result.output

        log_entry = ExecutionLogEntry.for_step(
            execution.id, step, StepOutcome.COMPLETED,
            f"Step '{step.name}' completed",
            input_data, result.output,
        )
        return self._advance(execution, workflow.successor(step), log_entry)

    # ============================================
    # STEP HANDLERS
    # ============================================

    def _send_message(self, execution, workflow, step, config: SendMessageConfig) -> bool:
        rendered = render(asdict(config), execution.context)
        return self._perform(
            execution, workflow, step, rendered,
            lambda: self.collaborators.messages.send(config.channel, rendered, execution.context),
        )

    def _wait(self, execution, workflow, step, config: WaitConfig) -> bool:
        resume_at = self.clock() + config.to_timedelta()
        successor = workflow.successor(step)

        execution.move_to(successor)
        if successor is not None:
            execution.context[RESUME_STEP_KEY] = successor.snapshot()

        log_entry = ExecutionLogEntry.for_step(
            execution.id, step, StepOutcome.WAITING,
            f"Waiting {config.duration} {config.unit.value}",
            step.config, {"resume_at": resume_at.isoformat()},
        )
        self._suspend(execution, resume_at, log_entry)
        return False

    def _branch(self, execution, workflow, step, config: BranchConfig) -> bool:
        try:
            if config.source == ConditionSource.SUBJECT:
                actual = self.collaborators.conditions.resolve(
                    config.field, execution.context, execution.subject
                )
            else:
                actual = get_nested(execution.context, config.field)
            outcome = evaluate(config.operator, actual, config.value, now=self.clock())
        except ConditionError as e:
            return self._step_failed(execution, step, str(e), step.config)
        except Exception as e:
            logger.warning(f"Resolving '{config.field}' for execution {execution.id} raised: {e}")
            return self._step_failed(execution, step, f"{type(e).__name__}: {e}", step.config)

        target_id = step.on_true_step_id if outcome else step.on_false_step_id
        logger.debug(
            f"Execution {execution.id}: branch '{step.name}' is {outcome}, "
            f"next step {target_id or 'none'}"
        )

        if target_id is None:
            return self._advance(execution, None)

        target = workflow.get_step(target_id)
        if target is None:
            self._fail(execution, step, f"Branch target {target_id} no longer exists", step.config)
            return False
        return self._advance(execution, target)

    def _task_payload(self, execution: WorkflowExecution, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = render(fields, execution.context)
        payload.update({
            "tenant_id": execution.tenant_id,
            "execution_id": str(execution.id),
            "entity_kind": execution.subject.entity_kind,
            "entity_id": execution.subject.entity_id,
        })
        return payload

    def _create_task(self, execution, workflow, step, config: CreateTaskConfig) -> bool:
        fields = asdict(config)
        due_in_days = fields.pop("due_in_days")
        payload = self._task_payload(execution, fields)
        if due_in_days is not None:
            payload["due_at"] = (self.clock() + timedelta(days=due_in_days)).isoformat()

        return self._perform(
            execution, workflow, step, payload,
            lambda: self.collaborators.tasks.create("task", payload),
        )

    def _create_notification(self, execution, workflow, step, config: CreateNotificationConfig) -> bool:
        payload = self._task_payload(execution, asdict(config))
        return self._perform(
            execution, workflow, step, payload,
            lambda: self.collaborators.tasks.create("notification", payload),
        )

    def _mutate_record(self, execution, workflow, step, config: MutateRecordConfig) -> bool:
        entity_kind = render(config.entity_kind, execution.context) or execution.subject.entity_kind
        entity_id = render(config.entity_id, execution.context) or execution.subject.entity_id
        patch = render(config.patch, execution.context)
        input_data = {"entity_kind": entity_kind, "entity_id": entity_id, "patch": patch}

        if not entity_kind or entity_id is None:
            return self._step_failed(execution, step, "No record to update", input_data)

        return self._perform(
            execution, workflow, step, input_data,
            lambda: self.collaborators.records.update(entity_kind, str(entity_id), patch),
        )

    def _call_webhook(self, execution, workflow, step, config: CallWebhookConfig) -> bool:
        url = render(config.url, execution.context)
        payload = render(config.payload, execution.context) or {
            "execution_id": str(execution.id),
            "workflow_id": str(execution.workflow_id),
            "subject": execution.subject.to_dict(),
            "context": execution.context,
        }
        headers = render(config.headers, execution.context)

        return self._perform(
            execution, workflow, step, {"url": url, "payload": payload},
            lambda: self.collaborators.webhooks.post(url, payload, headers),
        )
