"""
Pre-built automations a tenant can copy into a new workflow.
"""

from typing import Any, Dict, List

from automation_engine.domain import StepKind, TriggerKind

WORKFLOW_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "New Lead Follow-Up",
        "description": "Automatically send follow-up emails to new leads",
        "trigger_kind": TriggerKind.STAGE_CHANGE,
        "trigger_config": {"to_stage": "new"},
        "steps": [
            {"kind": StepKind.WAIT, "name": "Wait 1 day",
             "config": {"duration": 1, "unit": "days"}},
            {"kind": StepKind.SEND_MESSAGE, "name": "Send follow-up email",
             "config": {"channel": "email", "subject": "Following up on your inquiry"}},
            {"kind": StepKind.WAIT, "name": "Wait 3 days",
             "config": {"duration": 3, "unit": "days"}},
            {"kind": StepKind.CREATE_TASK, "name": "Create follow-up task",
             "config": {"title": "Follow up with lead"}},
        ],
    },
    {
        "name": "Payment Reminder",
        "description": "Send reminders for overdue payments",
        "trigger_kind": TriggerKind.PAYMENT_OVERDUE,
        "trigger_config": {},
        "steps": [
            {"kind": StepKind.SEND_MESSAGE, "name": "Send reminder email",
             "config": {"channel": "email", "subject": "Payment Reminder"}},
            {"kind": StepKind.WAIT, "name": "Wait 7 days",
             "config": {"duration": 1, "unit": "weeks"}},
            {"kind": StepKind.SEND_MESSAGE, "name": "Send SMS reminder",
             "config": {"channel": "sms", "body": "Payment is overdue"}},
        ],
    },
    {
        "name": "RSVP Thank You",
        "description": "Send thank you message when a guest RSVPs",
        "trigger_kind": TriggerKind.RECORD_CREATED,
        "trigger_config": {"record_kind": "rsvp"},
        "steps": [
            {"kind": StepKind.SEND_MESSAGE, "name": "Send thank you email",
             "config": {"channel": "email", "subject": "Thank you for your RSVP!"}},
        ],
    },
    {
        "name": "Event Countdown",
        "description": "Send a reminder one week before the event",
        "trigger_kind": TriggerKind.DATE_APPROACHING,
        "trigger_config": {"days_before": 7},
        "steps": [
            {"kind": StepKind.SEND_MESSAGE, "name": "Send 7-day reminder",
             "config": {"channel": "email", "subject": "One Week to Go!"}},
            {"kind": StepKind.WAIT, "name": "Wait 6 days",
             "config": {"duration": 6, "unit": "days"}},
            {"kind": StepKind.SEND_MESSAGE, "name": "Send final reminder",
             "config": {"channel": "email", "subject": "Tomorrow is the Big Day!"}},
        ],
    },
    {
        "name": "Proposal Accepted",
        "description": "Welcome a client once their proposal is accepted",
        "trigger_kind": TriggerKind.STAGE_CHANGE,
        "trigger_config": {"to_stage": "won"},
        "steps": [
            {"kind": StepKind.SEND_MESSAGE, "name": "Send congratulations email",
             "config": {"channel": "email", "subject": "Welcome aboard!"}},
            {"kind": StepKind.CREATE_TASK, "name": "Create onboarding task",
             "config": {"title": "Complete client onboarding"}},
        ],
    },
]
