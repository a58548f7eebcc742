# Domain models
from .enums import (
    ConditionOperator,
    ConditionSource,
    ExecutionStatus,
    JobKind,
    JobStatus,
    StepKind,
    StepOutcome,
    TriggerKind,
    WaitUnit,
)
from .entities import (
    ExecutionLogEntry,
    Job,
    SubjectRef,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
    utcnow,
)
from .state_machine import ExecutionStateMachine, InvalidTransitionError
from .step_configs import StepConfigError, parse_step_config
from .triggers import TriggerConfigError, trigger_matches, validate_trigger_config

__all__ = [
    "ConditionOperator",
    "ConditionSource",
    "ExecutionStatus",
    "JobKind",
    "JobStatus",
    "StepKind",
    "StepOutcome",
    "TriggerKind",
    "WaitUnit",
    "ExecutionLogEntry",
    "Job",
    "SubjectRef",
    "Workflow",
    "WorkflowExecution",
    "WorkflowStep",
    "utcnow",
    "ExecutionStateMachine",
    "InvalidTransitionError",
    "StepConfigError",
    "parse_step_config",
    "TriggerConfigError",
    "trigger_matches",
    "validate_trigger_config",
]
