"""
Trigger configuration and matching.

A workflow's trigger config is a JSON object. A few keys are options that
shape how the trigger fires (``OPTION_KEYS``); every other key is a filter
the event payload has to satisfy before the workflow starts.
"""

from typing import Any, Dict, Optional

from .enums import TriggerKind


class TriggerConfigError(ValueError):
    """Raised when a trigger configuration is malformed."""

    def __init__(self, kind: TriggerKind, message: str):
        self.kind = kind
        super().__init__(f"Invalid {kind.value} trigger config: {message}")


OPTION_KEYS: Dict[TriggerKind, frozenset] = {
    TriggerKind.SCHEDULED: frozenset({"cron", "timezone"}),
    TriggerKind.DATE_APPROACHING: frozenset({"days_before"}),
}


def validate_trigger_config(kind: TriggerKind, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Check ``config`` for ``kind`` and return it. Raises TriggerConfigError."""
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise TriggerConfigError(kind, "config must be an object")

    if kind == TriggerKind.SCHEDULED:
        cron = config.get("cron")
        if not isinstance(cron, str) or len(cron.split()) != 5:
            raise TriggerConfigError(kind, "'cron' must be a five-field cron expression")
        timezone = config.get("timezone")
        if timezone is not None and not isinstance(timezone, str):
            raise TriggerConfigError(kind, "'timezone' must be a string")

    elif kind == TriggerKind.DATE_APPROACHING:
        days_before = config.get("days_before")
        if days_before is not None and (
            isinstance(days_before, bool) or not isinstance(days_before, int) or days_before < 0
        ):
            raise TriggerConfigError(kind, "'days_before' must be a non-negative integer")

    elif kind == TriggerKind.STAGE_CHANGE:
        for key in ("to_stage", "from_stage"):
            value = config.get(key)
            if value is not None and not isinstance(value, (str, list)):
                raise TriggerConfigError(kind, f"'{key}' must be a string or a list")

    return config


def _filter_matches(expected: Any, payload: Dict[str, Any], key: str) -> bool:
    if key not in payload:
        return False
    actual = payload[key]
    if isinstance(expected, list):
        return actual in expected
    return actual == expected


def trigger_matches(kind: TriggerKind, config: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """Whether an event ``payload`` satisfies a workflow's trigger ``config``."""
    config = config or {}

    if kind == TriggerKind.DATE_APPROACHING and config.get("days_before") is not None:
        if payload.get("days_until") != config["days_before"]:
            return False

    options = OPTION_KEYS.get(kind, frozenset())
    return all(
        _filter_matches(expected, payload, key)
        for key, expected in config.items()
        if key not in options
    )
