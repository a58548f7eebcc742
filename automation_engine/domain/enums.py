"""
Domain enums for workflow automation.

These enums are closed sets: trigger kinds, step kinds, execution and job
states. The state machines enforce valid transitions between the states.
"""

from enum import Enum


class TriggerKind(str, Enum):
    """
    Domain event classes that can start a workflow.

    - STAGE_CHANGE: A record (usually a lead) moved to another pipeline stage
    - RECORD_CREATED: A client, guest or other record was created
    - DATE_APPROACHING: An event date is a given number of days away
    - PAYMENT_OVERDUE: A payment passed its due date
    - EXTERNAL_RESPONSE: An RSVP, proposal or contract response arrived
    - SCHEDULED: Fired by a cron-like schedule
    - MANUAL: Started explicitly by a user
    """
    STAGE_CHANGE = "stage_change"
    RECORD_CREATED = "record_created"
    DATE_APPROACHING = "date_approaching"
    PAYMENT_OVERDUE = "payment_overdue"
    EXTERNAL_RESPONSE = "external_response"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class StepKind(str, Enum):
    """
    Kinds of workflow steps.

    WAIT is the only kind that suspends an execution. BRANCH moves the
    position pointer without a side effect. Every other kind delegates to an
    external collaborator.
    """
    SEND_MESSAGE = "send_message"
    WAIT = "wait"
    BRANCH = "branch"
    CREATE_TASK = "create_task"
    MUTATE_RECORD = "mutate_record"
    CREATE_NOTIFICATION = "create_notification"
    CALL_WEBHOOK = "call_webhook"


class ExecutionStatus(str, Enum):
    """
    Status of a workflow execution.

    State machine transitions:
    RUNNING → WAITING → RUNNING (suspension at a wait step or step retry)
    RUNNING → COMPLETED (steps exhausted or branch to an empty target)
    RUNNING → FAILED (unrecoverable step error)
    RUNNING | WAITING → CANCELLED (administrative cancellation)
    """
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepOutcome(str, Enum):
    """Outcome recorded in an execution log entry."""
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"
    RETRYING = "retrying"


class JobStatus(str, Enum):
    """
    Status of a job in the job store.

    PENDING → IN_PROGRESS (claimed) → DONE
    IN_PROGRESS → PENDING (retry or reaped stale claim)
    IN_PROGRESS → FAILED (attempts exhausted or fatal error)
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class JobKind(str, Enum):
    """Kinds of jobs the worker pool dispatches."""
    RUN = "run"
    RESUME = "resume"


class WaitUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    DATE_PASSED = "date_passed"


class ConditionSource(str, Enum):
    """Where a branch step reads its field from."""
    CONTEXT = "context"
    SUBJECT = "subject"
