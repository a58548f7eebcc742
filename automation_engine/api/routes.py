"""
API routes for the workflow automation engine.

Defines REST endpoints for workflow definitions, event intake and
execution administration.
"""

import logging
from uuid import UUID

from flask import Blueprint, Flask, current_app, g, jsonify, request

from automation_engine.domain import ExecutionStatus, SubjectRef, TriggerKind
from automation_engine.persistence import (
    Database,
    ExecutionRepository,
    JobRepository,
    LogRepository,
    WorkflowRepository,
)
from automation_engine.services import (
    ConcurrentModificationError,
    ExecutionNotFoundError,
    ExecutionService,
    ExecutionStateError,
    TriggerDispatcher,
    WorkflowNotFoundError,
    WorkflowService,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)

# Create blueprints
workflows_bp = Blueprint("workflows", __name__, url_prefix="/api/v1/workflows")
templates_bp = Blueprint("templates", __name__, url_prefix="/api/v1/templates")
events_bp = Blueprint("events", __name__, url_prefix="/api/v1/events")
executions_bp = Blueprint("executions", __name__, url_prefix="/api/v1/executions")
jobs_bp = Blueprint("jobs", __name__, url_prefix="/api/v1/jobs")
stats_bp = Blueprint("stats", __name__, url_prefix="/api/v1/stats")


def get_db() -> Database:
    """Get database from Flask app config."""
    return current_app.config["DATABASE"]


def get_workflow_service() -> WorkflowService:
    """Get or create WorkflowService."""
    if "workflow_service" not in g:
        db = get_db()
        g.workflow_service = WorkflowService(WorkflowRepository(db), ExecutionRepository(db))
    return g.workflow_service


def get_execution_service() -> ExecutionService:
    """Get or create ExecutionService."""
    if "execution_service" not in g:
        db = get_db()
        g.execution_service = ExecutionService(
            ExecutionRepository(db),
            WorkflowRepository(db),
            LogRepository(db),
        )
    return g.execution_service


def get_dispatcher() -> TriggerDispatcher:
    """Get or create TriggerDispatcher."""
    if "dispatcher" not in g:
        db = get_db()
        g.dispatcher = TriggerDispatcher(
            WorkflowRepository(db),
            ExecutionRepository(db),
            current_app.config["APP_CONFIG"],
        )
    return g.dispatcher


def get_job_repository() -> JobRepository:
    if "job_repo" not in g:
        g.job_repo = JobRepository(get_db(), current_app.config["APP_CONFIG"])
    return g.job_repo


# ============================================
# WORKFLOW ENDPOINTS
# ============================================

@workflows_bp.route("", methods=["POST"])
def create_workflow():
    """
    Create a new workflow definition.

    Request body:
    {
        "tenant_id": "tenant-1",
        "name": "Lead follow-up",
        "trigger_kind": "stage_change",
        "trigger_config": {"to_stage": "negotiating"},
        "description": "...",
        "steps": [{"kind": "wait", "name": "Wait", "config": {...}}],
        "is_active": false
    }

    Response: 201 Created
    """
    data = request.get_json()

    if not data:
        return jsonify({"error": "Request body required"}), 400

    for field in ("tenant_id", "name", "trigger_kind"):
        if not data.get(field):
            return jsonify({"error": f"{field} is required"}), 400

    try:
        service = get_workflow_service()
        workflow = service.create_workflow(
            tenant_id=data["tenant_id"],
            name=data["name"],
            trigger_kind=TriggerKind(data["trigger_kind"]),
            trigger_config=data.get("trigger_config"),
            description=data.get("description", ""),
            steps=data.get("steps"),
            is_active=bool(data.get("is_active", False)),
            metadata=data.get("metadata"),
        )

        return jsonify(workflow_to_dict(workflow)), 201

    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


@workflows_bp.route("/<workflow_id>", methods=["GET"])
def get_workflow(workflow_id: str):
    """
    Get a workflow by ID, with its steps.

    Response: 200 OK
    """
    try:
        service = get_workflow_service()
        workflow = service.get_workflow(UUID(workflow_id))
        return jsonify(workflow_to_dict(workflow)), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>", methods=["PATCH"])
def update_workflow(workflow_id: str):
    """
    Update the definition-level fields of a workflow.

    Request body (all optional):
    {
        "name": "...",
        "description": "...",
        "trigger_config": {...},
        "is_active": true,
        "metadata": {...}
    }

    Response: 200 OK
    """
    data = request.get_json()

    if not data:
        return jsonify({"error": "Request body required"}), 400

    try:
        service = get_workflow_service()
        workflow = service.update_workflow(
            UUID(workflow_id),
            name=data.get("name"),
            description=data.get("description"),
            trigger_config=data.get("trigger_config"),
            is_active=data.get("is_active"),
            metadata=data.get("metadata"),
        )
        return jsonify(workflow_to_dict(workflow)), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>", methods=["DELETE"])
def delete_workflow(workflow_id: str):
    """
    Delete a workflow that has no executions.

    Response: 200 OK, 409 Conflict when executions exist
    """
    try:
        service = get_workflow_service()
        service.delete_workflow(UUID(workflow_id))
        return jsonify({"deleted": workflow_id}), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 409
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>/validate", methods=["GET"])
def validate_workflow(workflow_id: str):
    """
    Report every problem with a stored workflow.

    Response: 200 OK
    """
    try:
        service = get_workflow_service()
        errors = service.validate_workflow(UUID(workflow_id))
        return jsonify({"valid": not errors, "errors": errors}), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("", methods=["GET"])
def list_workflows():
    """
    List workflows with optional filters.

    Query params:
    - tenant_id: Filter by tenant
    - active: "true" or "false"
    - trigger_kind: Filter by trigger kind
    - limit: Max results (default 100)
    - offset: Pagination offset (default 0)

    Response: 200 OK
    """
    tenant_id = request.args.get("tenant_id")
    active = request.args.get("active")
    trigger_kind = request.args.get("trigger_kind")
    limit = int(request.args.get("limit", 100))
    offset = int(request.args.get("offset", 0))

    is_active = None if active is None else active.lower() == "true"
    trigger_enum = TriggerKind(trigger_kind) if trigger_kind else None

    service = get_workflow_service()
    workflows = service.list_workflows(
        tenant_id=tenant_id,
        is_active=is_active,
        trigger_kind=trigger_enum,
        limit=limit,
        offset=offset,
    )

    return jsonify({
        "workflows": [workflow_to_dict(w) for w in workflows],
        "count": len(workflows),
        "limit": limit,
        "offset": offset,
    }), 200


@workflows_bp.route("/<workflow_id>/steps", methods=["POST"])
def add_workflow_step(workflow_id: str):
    """
    Add a step to a workflow.

    Request body:
    {
        "name": "Wait two days",
        "kind": "wait",
        "config": {"duration": 2, "unit": "days"},
        "position": 0,  # optional, defaults to the end
        "next_step_id": null,
        "on_true_step_id": null,
        "on_false_step_id": null,
        "max_attempts": 1
    }

    Response: 201 Created
    """
    data = request.get_json()

    if not data:
        return jsonify({"error": "Request body required"}), 400

    for field in ("name", "kind"):
        if field not in data:
            return jsonify({"error": f"{field} is required"}), 400

    try:
        service = get_workflow_service()
        step = service.add_step(
            workflow_id=UUID(workflow_id),
            name=data["name"],
            kind=data["kind"],
            config=data.get("config"),
            position=data.get("position"),
            next_step_id=data.get("next_step_id"),
            on_true_step_id=data.get("on_true_step_id"),
            on_false_step_id=data.get("on_false_step_id"),
            max_attempts=data.get("max_attempts", 1),
        )

        return jsonify(step_to_dict(step)), 201

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>/steps/<step_id>", methods=["PATCH"])
def update_workflow_step(workflow_id: str, step_id: str):
    """
    Update fields of one step.

    Request body: any of name, kind, config, next_step_id, on_true_step_id,
    on_false_step_id, max_attempts.

    Response: 200 OK
    """
    data = request.get_json()

    if not data:
        return jsonify({"error": "Request body required"}), 400

    try:
        service = get_workflow_service()
        step = service.update_step(UUID(workflow_id), step_id, data)
        return jsonify(step_to_dict(step)), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>/steps/<step_id>", methods=["DELETE"])
def remove_workflow_step(workflow_id: str, step_id: str):
    """
    Remove a step no other step points at.

    Response: 200 OK, 409 Conflict when the step is still referenced
    """
    try:
        service = get_workflow_service()
        service.remove_step(UUID(workflow_id), step_id)
        return jsonify({"deleted": step_id}), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 409
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>/reorder", methods=["POST"])
def reorder_workflow_steps(workflow_id: str):
    """
    Reassign step positions.

    Request body:
    {
        "step_ids": ["<id of first step>", "<id of second step>", ...]
    }

    Response: 200 OK
    """
    data = request.get_json()

    if not data or not isinstance(data.get("step_ids"), list):
        return jsonify({"error": "step_ids list is required"}), 400

    try:
        service = get_workflow_service()
        workflow = service.reorder_steps(UUID(workflow_id), data["step_ids"])
        return jsonify(workflow_to_dict(workflow)), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>/activate", methods=["POST"])
def activate_workflow(workflow_id: str):
    """
    Activate a workflow so its trigger starts executions.

    Response: 200 OK
    """
    try:
        service = get_workflow_service()
        workflow = service.activate_workflow(UUID(workflow_id))
        return jsonify(workflow_to_dict(workflow)), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>/deactivate", methods=["POST"])
def deactivate_workflow(workflow_id: str):
    """
    Deactivate a workflow.

    Response: 200 OK
    """
    try:
        service = get_workflow_service()
        workflow = service.deactivate_workflow(UUID(workflow_id))
        return jsonify(workflow_to_dict(workflow)), 200

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


@workflows_bp.route("/<workflow_id>/trigger", methods=["POST"])
def trigger_workflow(workflow_id: str):
    """
    Start a workflow manually.

    Request body:
    {
        "tenant_id": "tenant-1",
        "payload": {},
        "subject": {"entity_kind": "lead", "entity_id": "42"},
        "event_id": "optional-idempotency-id"
    }

    Response: 201 Created
    """
    data = request.get_json()

    if not data:
        return jsonify({"error": "Request body required"}), 400

    if not data.get("tenant_id"):
        return jsonify({"error": "tenant_id is required"}), 400

    try:
        dispatcher = get_dispatcher()
        execution_id = dispatcher.trigger_manual(
            workflow_id=UUID(workflow_id),
            tenant_id=data["tenant_id"],
            payload=data.get("payload"),
            subject=SubjectRef.from_dict(data.get("subject")),
            event_id=data.get("event_id"),
        )
        return jsonify({"execution_id": str(execution_id)}), 201

    except WorkflowNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "Invalid workflow ID"}), 400


# ============================================
# TEMPLATE ENDPOINTS
# ============================================

@templates_bp.route("", methods=["GET"])
def list_templates():
    """
    List the pre-built workflow templates.

    Response: 200 OK
    """
    service = get_workflow_service()
    templates = service.list_templates()
    return jsonify({
        "templates": [template_to_dict(index, t) for index, t in enumerate(templates)],
        "count": len(templates),
    }), 200


@templates_bp.route("/<int:template_index>", methods=["POST"])
def create_from_template(template_index: int):
    """
    Create an inactive workflow from a template.

    Request body:
    {
        "tenant_id": "tenant-1",
        "name": "optional name override"
    }

    Response: 201 Created
    """
    data = request.get_json()

    if not data or not data.get("tenant_id"):
        return jsonify({"error": "tenant_id is required"}), 400

    try:
        service = get_workflow_service()
        workflow = service.create_from_template(
            template_index,
            tenant_id=data["tenant_id"],
            name=data.get("name"),
        )
        return jsonify(workflow_to_dict(workflow)), 201

    except WorkflowValidationError as e:
        return jsonify({"error": str(e)}), 404


# ============================================
# EVENT ENDPOINTS
# ============================================

@events_bp.route("", methods=["POST"])
def receive_event():
    """
    Receive a domain event and start the workflows it triggers.

    Request body:
    {
        "tenant_id": "tenant-1",
        "trigger_kind": "stage_change",
        "payload": {"to_stage": "negotiating"},
        "subject": {"entity_kind": "lead", "entity_id": "42"},
        "event_id": "evt-123"
    }

    Response: 202 Accepted
    """
    data = request.get_json()

    if not data:
        return jsonify({"error": "Request body required"}), 400

    for field in ("tenant_id", "trigger_kind"):
        if not data.get(field):
            return jsonify({"error": f"{field} is required"}), 400

    try:
        trigger_kind = TriggerKind(data["trigger_kind"])
    except ValueError:
        return jsonify({"error": f"Unknown trigger kind: {data['trigger_kind']}"}), 400

    dispatcher = get_dispatcher()
    execution_ids = dispatcher.on_event(
        tenant_id=data["tenant_id"],
        trigger_kind=trigger_kind,
        payload=data.get("payload"),
        subject=SubjectRef.from_dict(data.get("subject")),
        event_id=data.get("event_id"),
    )

    return jsonify({
        "execution_ids": [str(e) for e in execution_ids],
        "count": len(execution_ids),
    }), 202


# ============================================
# EXECUTION ENDPOINTS
# ============================================

@executions_bp.route("", methods=["GET"])
def list_executions():
    """
    List executions with optional filters.

    Query params:
    - workflow_id: Filter by workflow ID
    - tenant_id: Filter by tenant
    - status: Filter by status
    - limit: Max results (default 100)
    - offset: Pagination offset (default 0)

    Response: 200 OK
    """
    workflow_id = request.args.get("workflow_id")
    tenant_id = request.args.get("tenant_id")
    status = request.args.get("status")
    limit = int(request.args.get("limit", 100))
    offset = int(request.args.get("offset", 0))

    workflow_uuid = UUID(workflow_id) if workflow_id else None
    status_enum = ExecutionStatus(status) if status else None

    service = get_execution_service()
    executions = service.list_executions(
        workflow_id=workflow_uuid,
        tenant_id=tenant_id,
        status=status_enum,
        limit=limit,
        offset=offset,
    )

    return jsonify({
        "executions": [execution_to_dict(e) for e in executions],
        "count": len(executions),
        "limit": limit,
        "offset": offset,
    }), 200


@executions_bp.route("/<execution_id>", methods=["GET"])
def get_execution(execution_id: str):
    """
    Get execution status, current step, resume time and error.

    Response: 200 OK
    """
    try:
        service = get_execution_service()
        status = service.get_status(UUID(execution_id))
        return jsonify(status), 200

    except ExecutionNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError:
        return jsonify({"error": "Invalid execution ID"}), 400


@executions_bp.route("/<execution_id>/cancel", methods=["POST"])
def cancel_execution(execution_id: str):
    """
    Cancel a running or waiting execution.

    Response: 200 OK
    """
    try:
        service = get_execution_service()
        execution = service.cancel(UUID(execution_id))
        return jsonify(execution_to_dict(execution)), 200

    except ExecutionNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ExecutionStateError as e:
        return jsonify({"error": str(e)}), 409
    except ConcurrentModificationError as e:
        return jsonify({"error": str(e)}), 409
    except ValueError:
        return jsonify({"error": "Invalid execution ID"}), 400


@executions_bp.route("/<execution_id>/logs", methods=["GET"])
def get_execution_logs(execution_id: str):
    """
    Get the log of an execution.

    Query params:
    - limit: Max results (default 1000)
    - offset: Pagination offset (default 0)

    Response: 200 OK
    """
    limit = int(request.args.get("limit", 1000))
    offset = int(request.args.get("offset", 0))

    try:
        service = get_execution_service()
        logs = service.get_logs(
            execution_id=UUID(execution_id),
            limit=limit,
            offset=offset,
        )

        return jsonify({
            "logs": [log_to_dict(log) for log in logs],
            "count": len(logs),
            "limit": limit,
            "offset": offset,
        }), 200

    except ExecutionNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError:
        return jsonify({"error": "Invalid execution ID"}), 400


# ============================================
# STATS ENDPOINTS
# ============================================

@stats_bp.route("", methods=["GET"])
def tenant_stats():
    """
    Workflow counts and executions per status for one tenant.

    Query params:
    - tenant_id: required

    Response: 200 OK
    """
    tenant_id = request.args.get("tenant_id")
    if not tenant_id:
        return jsonify({"error": "tenant_id is required"}), 400

    service = get_execution_service()
    return jsonify(service.get_stats(tenant_id)), 200


# ============================================
# JOB ENDPOINTS
# ============================================

@jobs_bp.route("/stats", methods=["GET"])
def job_stats():
    """
    Count jobs per status.

    Query params:
    - tenant_id: Restrict to one tenant

    Response: 200 OK
    """
    stats = get_job_repository().get_stats(tenant_id=request.args.get("tenant_id"))
    return jsonify(stats), 200


@jobs_bp.route("/<job_id>/retry", methods=["POST"])
def retry_job(job_id: str):
    """
    Requeue a permanently failed job with fresh attempts.

    Response: 200 OK, 409 Conflict when the job is not failed
    """
    try:
        job_uuid = UUID(job_id)
    except ValueError:
        return jsonify({"error": "Invalid job ID"}), 400

    job_repo = get_job_repository()
    if job_repo.get_job(job_uuid) is None:
        return jsonify({"error": f"Job {job_id} not found"}), 404
    if not job_repo.retry_job(job_uuid):
        return jsonify({"error": f"Job {job_id} is not failed"}), 409

    logger.info(f"Job {job_id} requeued by request")
    return jsonify({"id": job_id, "status": "pending"}), 200


# ============================================
# SERIALIZATION HELPERS
# ============================================

def _iso(value):
    return value.isoformat() if value else None


def _id(value):
    return str(value) if value else None


def workflow_to_dict(workflow) -> dict:
    """Convert Workflow to API response dict."""
    return {
        "id": str(workflow.id),
        "tenant_id": workflow.tenant_id,
        "name": workflow.name,
        "description": workflow.description,
        "trigger_kind": workflow.trigger_kind.value,
        "trigger_config": workflow.trigger_config,
        "is_active": workflow.is_active,
        "steps": [step_to_dict(s) for s in workflow.steps],
        "metadata": workflow.metadata,
        "created_at": workflow.created_at.isoformat(),
        "updated_at": workflow.updated_at.isoformat(),
    }


def step_to_dict(step) -> dict:
    """Convert WorkflowStep to API response dict."""
    return {
        "id": str(step.id),
        "workflow_id": str(step.workflow_id),
        "name": step.name,
        "kind": step.kind.value,
        "position": step.position,
        "config": step.config,
        "next_step_id": _id(step.next_step_id),
        "on_true_step_id": _id(step.on_true_step_id),
        "on_false_step_id": _id(step.on_false_step_id),
        "max_attempts": step.max_attempts,
        "created_at": step.created_at.isoformat(),
        "updated_at": step.updated_at.isoformat(),
    }


def execution_to_dict(execution) -> dict:
    """Convert WorkflowExecution to API response dict."""
    return {
        "id": str(execution.id),
        "workflow_id": str(execution.workflow_id),
        "tenant_id": execution.tenant_id,
        "trigger_kind": execution.trigger_kind.value,
        "status": execution.status.value,
        "subject": execution.subject.to_dict(),
        "current_step_id": _id(execution.current_step_id),
        "current_position": execution.current_position,
        "resume_at": _iso(execution.resume_at),
        "context": execution.context,
        "error": execution.error,
        "started_at": _iso(execution.started_at),
        "completed_at": _iso(execution.completed_at),
        "created_at": execution.created_at.isoformat(),
        "updated_at": execution.updated_at.isoformat(),
    }


def log_to_dict(log) -> dict:
    """Convert ExecutionLogEntry to API response dict."""
    return {
        "id": str(log.id),
        "execution_id": str(log.execution_id),
        "step_id": _id(log.step_id),
        "step_kind": log.step_kind.value if log.step_kind else None,
        "step_name": log.step_name,
        "outcome": log.outcome.value,
        "message": log.message,
        "input_data": log.input_data,
        "output_data": log.output_data,
        "error": log.error,
        "timestamp": log.timestamp.isoformat(),
    }


def template_to_dict(index: int, template: dict) -> dict:
    return {
        "index": index,
        "name": template["name"],
        "description": template["description"],
        "trigger_kind": template["trigger_kind"].value,
        "trigger_config": template["trigger_config"],
        "steps": [
            {"kind": s["kind"].value, "name": s["name"], "config": s["config"]}
            for s in template["steps"]
        ],
    }


# ============================================
# ROUTE REGISTRATION
# ============================================

def register_routes(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    app.register_blueprint(workflows_bp)
    app.register_blueprint(templates_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(executions_bp)
    app.register_blueprint(jobs_bp)
    app.register_blueprint(stats_bp)
    logger.info("Routes registered")
