# Service layer
from .collaborators import (
    ActionResult,
    Collaborators,
    ConditionEvaluator,
    MessageSender,
    RecordMutator,
    TaskCreator,
    WebhookCaller,
)
from .workflow_service import (
    WorkflowService,
    WorkflowServiceError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .interpreter import (
    StepInterpreter,
    InterpreterError,
    ConcurrentModificationError,
    DataAnomalyError,
)
from .dispatcher import TriggerDispatcher
from .resumer import Resumer
from .execution_service import (
    ExecutionService,
    ExecutionServiceError,
    ExecutionNotFoundError,
    ExecutionStateError,
)

__all__ = [
    "ActionResult",
    "Collaborators",
    "ConditionEvaluator",
    "MessageSender",
    "RecordMutator",
    "TaskCreator",
    "WebhookCaller",
    "WorkflowService",
    "WorkflowServiceError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
    "StepInterpreter",
    "InterpreterError",
    "ConcurrentModificationError",
    "DataAnomalyError",
    "TriggerDispatcher",
    "Resumer",
    "ExecutionService",
    "ExecutionServiceError",
    "ExecutionNotFoundError",
    "ExecutionStateError",
]
