"""
Typed configuration for each step kind.

Step configs are stored as JSON. ``parse_step_config`` turns the stored dict
into one of the frozen dataclasses below, so handlers in the interpreter
work with a known shape instead of probing a free-form dict.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Union

from .enums import ConditionOperator, ConditionSource, StepKind, WaitUnit


class StepConfigError(ValueError):
    """Raised when a step configuration is malformed."""

    def __init__(self, kind: StepKind, message: str):
        self.kind = kind
        super().__init__(f"Invalid {kind.value} config: {message}")


@dataclass(frozen=True)
class SendMessageConfig:
    """
    Config schema:
    {
        "channel": "email" | "sms" | "whatsapp",
        "recipient": "{client_email}",
        "subject": "Following up on your inquiry",
        "body": "Hi {first_name}, ...",
        "template_id": null
    }
    """
    channel: str
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    template_id: Optional[str] = None


@dataclass(frozen=True)
class WaitConfig:
    """
    Config schema:
    {
        "duration": 2,
        "unit": "minutes" | "hours" | "days" | "weeks"
    }
    """
    duration: int
    unit: WaitUnit = WaitUnit.MINUTES

    def to_timedelta(self) -> timedelta:
        return timedelta(**{self.unit.value: self.duration})


@dataclass(frozen=True)
class BranchConfig:
    """
    Config schema:
    {
        "field": "stage",
        "operator": "equals",
        "value": "negotiating",
        "source": "context" | "subject"
    }

    True/false targets live on the step itself (``on_true_step_id`` and
    ``on_false_step_id``), not in the config.
    """
    field: str
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    source: ConditionSource = ConditionSource.CONTEXT


@dataclass(frozen=True)
class CreateTaskConfig:
    title: str
    description: Optional[str] = None
    assignee: Optional[str] = None
    due_in_days: Optional[int] = None


@dataclass(frozen=True)
class MutateRecordConfig:
    """
    Config schema:
    {
        "patch": {"stage": "follow_up"},
        "entity_kind": null,  # defaults to the execution subject
        "entity_id": null
    }
    """
    patch: Dict[str, Any] = field(default_factory=dict)
    entity_kind: Optional[str] = None
    entity_id: Optional[str] = None


@dataclass(frozen=True)
class CreateNotificationConfig:
    title: str
    message: Optional[str] = None
    recipient: Optional[str] = None


@dataclass(frozen=True)
class CallWebhookConfig:
    url: str
    payload: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


StepConfig = Union[
    SendMessageConfig,
    WaitConfig,
    BranchConfig,
    CreateTaskConfig,
    MutateRecordConfig,
    CreateNotificationConfig,
    CallWebhookConfig,
]


def _require_str(kind: StepKind, raw: Dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise StepConfigError(kind, f"'{key}' is required")
    return value


def _optional_dict(kind: StepKind, raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise StepConfigError(kind, f"'{key}' must be an object")
    return dict(value)


def _parse_send_message(raw: Dict[str, Any]) -> SendMessageConfig:
    kind = StepKind.SEND_MESSAGE
    config = SendMessageConfig(
        channel=raw.get("channel", "email"),
        recipient=raw.get("recipient"),
        subject=raw.get("subject"),
        body=raw.get("body"),
        template_id=raw.get("template_id"),
    )
    if not config.body and not config.template_id and not config.subject:
        raise StepConfigError(kind, "one of 'body', 'subject' or 'template_id' is required")
    return config


def _parse_wait(raw: Dict[str, Any]) -> WaitConfig:
    kind = StepKind.WAIT
    duration = raw.get("duration")
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise StepConfigError(kind, "'duration' must be a positive integer")
    try:
        unit = WaitUnit(raw.get("unit", WaitUnit.MINUTES.value))
    except ValueError:
        raise StepConfigError(kind, f"unknown unit '{raw.get('unit')}'")
    return WaitConfig(duration=duration, unit=unit)


def _parse_branch(raw: Dict[str, Any]) -> BranchConfig:
    kind = StepKind.BRANCH
    field_name = _require_str(kind, raw, "field")
    try:
        operator = ConditionOperator(raw.get("operator", ConditionOperator.EQUALS.value))
        source = ConditionSource(raw.get("source", ConditionSource.CONTEXT.value))
    except ValueError as e:
        raise StepConfigError(kind, str(e))
    return BranchConfig(
        field=field_name,
        operator=operator,
        value=raw.get("value"),
        source=source,
    )


def _parse_create_task(raw: Dict[str, Any]) -> CreateTaskConfig:
    kind = StepKind.CREATE_TASK
    due_in_days = raw.get("due_in_days")
    if due_in_days is not None and (not isinstance(due_in_days, int) or due_in_days < 0):
        raise StepConfigError(kind, "'due_in_days' must be a non-negative integer")
    return CreateTaskConfig(
        title=_require_str(kind, raw, "title"),
        description=raw.get("description"),
        assignee=raw.get("assignee"),
        due_in_days=due_in_days,
    )


def _parse_mutate_record(raw: Dict[str, Any]) -> MutateRecordConfig:
    kind = StepKind.MUTATE_RECORD
    patch = _optional_dict(kind, raw, "patch")
    if not patch:
        raise StepConfigError(kind, "'patch' must not be empty")
    return MutateRecordConfig(
        patch=patch,
        entity_kind=raw.get("entity_kind"),
        entity_id=raw.get("entity_id"),
    )


def _parse_create_notification(raw: Dict[str, Any]) -> CreateNotificationConfig:
    kind = StepKind.CREATE_NOTIFICATION
    return CreateNotificationConfig(
        title=_require_str(kind, raw, "title"),
        message=raw.get("message"),
        recipient=raw.get("recipient"),
    )


def _parse_call_webhook(raw: Dict[str, Any]) -> CallWebhookConfig:
    kind = StepKind.CALL_WEBHOOK
    url = _require_str(kind, raw, "url")
    if not url.startswith(("http://", "https://")):
        raise StepConfigError(kind, "'url' must be an http(s) URL")
    return CallWebhookConfig(
        url=url,
        payload=_optional_dict(kind, raw, "payload"),
        headers=_optional_dict(kind, raw, "headers"),
    )


_PARSERS: Dict[StepKind, Callable[[Dict[str, Any]], StepConfig]] = {
    StepKind.SEND_MESSAGE: _parse_send_message,
    StepKind.WAIT: _parse_wait,
    StepKind.BRANCH: _parse_branch,
    StepKind.CREATE_TASK: _parse_create_task,
    StepKind.MUTATE_RECORD: _parse_mutate_record,
    StepKind.CREATE_NOTIFICATION: _parse_create_notification,
    StepKind.CALL_WEBHOOK: _parse_call_webhook,
}

def check_parser_coverage(parsers: Dict[StepKind, Callable] = _PARSERS) -> None:
    """Raise if some step kind has no config parser."""
    missing = set(StepKind) - set(parsers)
    if missing:
        raise RuntimeError(
            f"No config parser for step kinds: {', '.join(sorted(k.value for k in missing))}"
        )


check_parser_coverage()


def parse_step_config(kind: StepKind, raw: Optional[Dict[str, Any]]) -> StepConfig:
    """Parse a stored config dict into the typed config for ``kind``."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise StepConfigError(kind, "config must be an object")
    return _PARSERS[kind](raw)

