"""
Outbound collaborators used by the step interpreter.

The engine does not send messages, create tasks or touch business records
itself. Each side effect goes through one of the interfaces below, and every
call reports back with an ``ActionResult``. The default implementations are
enough to run a development worker: webhooks are real HTTP calls, everything
else is logged.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from automation_engine.domain import SubjectRef
from automation_engine.domain.conditions import MISSING, get_nested

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of a collaborator call."""
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(success=True, output=output or {})

    @classmethod
    def failure(cls, error: str, output: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(success=False, output=output or {}, error=error)


class MessageSender(ABC):
    """Delivers a rendered message over a channel (email, sms, ...)."""

    @abstractmethod
    def send(
        self,
        kind: str,
        rendered_config: Dict[str, Any],
        context: Dict[str, Any],
    ) -> ActionResult:
        pass


class RecordMutator(ABC):
    """Applies a field patch to a business record."""

    @abstractmethod
    def update(self, entity_kind: str, entity_id: str, patch: Dict[str, Any]) -> ActionResult:
        pass


class TaskCreator(ABC):
    """Creates tasks and notifications. ``kind`` is "task" or "notification"."""

    @abstractmethod
    def create(self, kind: str, payload: Dict[str, Any]) -> ActionResult:
        pass


class WebhookCaller(ABC):
    """Posts a JSON payload to an external URL."""

    @abstractmethod
    def post(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> ActionResult:
        pass


class ConditionEvaluator(ABC):
    """
    Resolves the value a branch step compares.

    Returns ``MISSING`` when the field does not exist on the subject.
    """

    @abstractmethod
    def resolve(self, field: str, context: Dict[str, Any], subject: SubjectRef) -> Any:
        pass


# ============================================
# DEFAULT IMPLEMENTATIONS
# ============================================

class LoggingMessageSender(MessageSender):
    """Logs the message instead of delivering it."""

    def send(self, kind, rendered_config, context):
        logger.info(
            f"[{kind}] to={rendered_config.get('recipient')} "
            f"subject={rendered_config.get('subject')!r}"
        )
        return ActionResult.ok({"channel": kind, "delivered": False})


class LoggingRecordMutator(RecordMutator):
    def update(self, entity_kind, entity_id, patch):
        logger.info(f"Would update {entity_kind} {entity_id} with {sorted(patch)}")
        return ActionResult.ok({"entity_kind": entity_kind, "entity_id": entity_id})


class LoggingTaskCreator(TaskCreator):
    def create(self, kind, payload):
        logger.info(f"Would create {kind}: {payload.get('title')!r}")
        return ActionResult.ok({"kind": kind})


class HttpWebhookCaller(WebhookCaller):
    """
    Webhook caller backed by requests.

    Any 2xx status counts as success. Transport errors are reported as a
    failed result rather than raised, so the interpreter applies the step's
    retry policy.
    """

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def post(self, url, payload, headers=None):
        logger.info(f"Making POST request to {url}")

        try:
            response = self.session.post(
                url,
                json=payload,
                headers=headers or {},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            return ActionResult.failure(f"Webhook request failed: {e}")

        try:
            response_data = response.json()
        except (json.JSONDecodeError, ValueError):
            response_data = {"text": response.text}

        output = {"status_code": response.status_code, "response": response_data}
        if not 200 <= response.status_code < 300:
            return ActionResult.failure(
                f"Webhook returned status {response.status_code}", output
            )
        return ActionResult.ok(output)


class ContextConditionEvaluator(ConditionEvaluator):
    """
    Resolves subject fields from the execution context.

    Looks under ``context["subject"]`` first, then at the top level. Real
    deployments replace this with a lookup against the live record.
    """

    def resolve(self, field, context, subject):
        record = context.get("subject")
        if isinstance(record, dict):
            value = get_nested(record, field)
            if value is not MISSING:
                return value
        return get_nested(context, field)


@dataclass
class Collaborators:
    """The set of collaborators one interpreter talks to."""
    messages: MessageSender = field(default_factory=LoggingMessageSender)
    records: RecordMutator = field(default_factory=LoggingRecordMutator)
    tasks: TaskCreator = field(default_factory=LoggingTaskCreator)
    webhooks: WebhookCaller = field(default_factory=HttpWebhookCaller)
    conditions: ConditionEvaluator = field(default_factory=ContextConditionEvaluator)
