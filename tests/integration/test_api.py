"""
Integration tests for API endpoints.

Routes run against services backed by the in-memory repositories from
conftest, so requests exercise the real service and interpreter code.
"""

import pytest
import json
from unittest.mock import patch
from uuid import UUID, uuid4

from automation_engine.domain import ExecutionStatus, JobKind, JobStatus, TriggerKind
from automation_engine.services import ExecutionService, WorkflowService


SEND = {"kind": "send_message", "name": "Send", "config": {"subject": "Hello"}}
WAIT = {"kind": "wait", "name": "Wait", "config": {"duration": 1, "unit": "days"}}


@pytest.fixture
def services(workflow_repo, execution_repo, log_repo, job_repo, dispatcher):
    """Route the API's service getters to in-memory backed services."""
    workflow_service = WorkflowService(workflow_repo, execution_repo)
    execution_service = ExecutionService(execution_repo, workflow_repo, log_repo)

    with patch('automation_engine.api.routes.get_workflow_service', return_value=workflow_service), \
            patch('automation_engine.api.routes.get_execution_service', return_value=execution_service), \
            patch('automation_engine.api.routes.get_dispatcher', return_value=dispatcher), \
            patch('automation_engine.api.routes.get_job_repository', return_value=job_repo):
        yield


def post(client, url, body):
    return client.post(url, data=json.dumps(body), content_type="application/json")


class TestHealthEndpoint:
    def test_health_check(self, client, mock_db):
        """Test GET /health."""
        mock_db.execute_one.return_value = {"n": 0}

        response = client.get("/health")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data == {
            "status": "healthy",
            "database": "healthy",
            "workers": "healthy",
            "overdue_jobs": 0,
        }

    def test_health_check_reports_stalled_workers(self, client, mock_db):
        mock_db.execute_one.return_value = {"n": 4}

        response = client.get("/health")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == "degraded"
        assert data["database"] == "healthy"
        assert data["workers"] == "stalled"
        assert data["overdue_jobs"] == 4
        query, params = mock_db.execute_one.call_args[0]
        assert "scheduled_for < %s" in query
        assert params[0] == "pending"

    def test_health_check_database_down(self, client, mock_db):
        mock_db.health_check.return_value = False

        response = client.get("/health")

        assert response.status_code == 503
        data = json.loads(response.data)
        assert data["status"] == "unhealthy"
        assert data["database"] == "unhealthy"
        assert data["workers"] == "unknown"
        mock_db.execute_one.assert_not_called()


@pytest.mark.usefixtures("services")
class TestWorkflowEndpoints:
    """Integration tests for workflow API endpoints."""

    def test_create_workflow(self, client):
        """Test POST /api/v1/workflows."""
        response = post(client, "/api/v1/workflows", {
            "tenant_id": "tenant-1",
            "name": "Lead follow-up",
            "trigger_kind": "stage_change",
            "trigger_config": {"to_stage": "new"},
            "steps": [WAIT, SEND],
        })

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data["name"] == "Lead follow-up"
        assert data["is_active"] is False
        assert [s["kind"] for s in data["steps"]] == ["wait", "send_message"]
        assert [s["position"] for s in data["steps"]] == [0, 1]

    def test_create_workflow_missing_name(self, client):
        """Test POST /api/v1/workflows without name."""
        response = post(client, "/api/v1/workflows", {"tenant_id": "tenant-1", "trigger_kind": "manual"})

        assert response.status_code == 400
        assert "name" in json.loads(response.data)["error"].lower()

    def test_create_workflow_empty_body(self, client):
        """Test POST /api/v1/workflows with empty body."""
        response = post(client, "/api/v1/workflows", None)

        assert response.status_code == 400

    def test_create_workflow_unknown_trigger(self, client):
        response = post(client, "/api/v1/workflows", {
            "tenant_id": "tenant-1", "name": "x", "trigger_kind": "moon_phase",
        })

        assert response.status_code == 400

    def test_create_workflow_invalid_step(self, client):
        response = post(client, "/api/v1/workflows", {
            "tenant_id": "tenant-1",
            "name": "x",
            "trigger_kind": "manual",
            "steps": [{"kind": "wait", "name": "Wait", "config": {}}],
        })

        assert response.status_code == 400
        assert "duration" in json.loads(response.data)["error"]

    def test_get_workflow(self, client, make_workflow):
        """Test GET /api/v1/workflows/<id>."""
        workflow = make_workflow([SEND])

        response = client.get(f"/api/v1/workflows/{workflow.id}")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["id"] == str(workflow.id)
        assert data["steps"][0]["name"] == "Send"

    def test_get_workflow_not_found(self, client):
        """Test GET /api/v1/workflows/<id> with non-existent ID."""
        response = client.get(f"/api/v1/workflows/{uuid4()}")

        assert response.status_code == 404

    def test_get_workflow_invalid_id(self, client):
        """Test GET /api/v1/workflows/<id> with invalid UUID."""
        response = client.get("/api/v1/workflows/not-a-uuid")

        assert response.status_code == 400

    def test_list_workflows(self, client, make_workflow):
        make_workflow([SEND])
        make_workflow([SEND], is_active=False)
        make_workflow([SEND], tenant_id="tenant-2")

        response = client.get("/api/v1/workflows?tenant_id=tenant-1&active=true")

        assert response.status_code == 200
        assert json.loads(response.data)["count"] == 1

    def test_add_step_and_activate(self, client):
        created = json.loads(post(client, "/api/v1/workflows", {
            "tenant_id": "tenant-1", "name": "x", "trigger_kind": "manual",
        }).data)

        activate = client.post(f"/api/v1/workflows/{created['id']}/activate")
        assert activate.status_code == 400
        assert "without steps" in json.loads(activate.data)["error"]

        step = post(client, f"/api/v1/workflows/{created['id']}/steps", SEND)
        assert step.status_code == 201
        assert json.loads(step.data)["position"] == 0

        activate = client.post(f"/api/v1/workflows/{created['id']}/activate")
        assert activate.status_code == 200
        assert json.loads(activate.data)["is_active"] is True

        deactivate = client.post(f"/api/v1/workflows/{created['id']}/deactivate")
        assert json.loads(deactivate.data)["is_active"] is False

    def test_add_step_missing_kind(self, client, make_workflow):
        workflow = make_workflow([SEND])

        response = post(client, f"/api/v1/workflows/{workflow.id}/steps", {"name": "x"})

        assert response.status_code == 400
        assert "kind is required" in json.loads(response.data)["error"]

    def test_trigger_workflow(self, client, make_workflow, execution_repo):
        workflow = make_workflow([SEND])

        response = post(client, f"/api/v1/workflows/{workflow.id}/trigger", {
            "tenant_id": "tenant-1",
            "payload": {"note": "manual"},
            "subject": {"entity_kind": "lead", "entity_id": "5"},
        })

        assert response.status_code == 201
        execution_id = json.loads(response.data)["execution_id"]
        execution = execution_repo.get_execution_by_id(UUID(execution_id))
        assert execution.trigger_kind == TriggerKind.MANUAL

    def test_trigger_inactive_workflow(self, client, make_workflow):
        workflow = make_workflow([SEND], is_active=False)

        response = post(client, f"/api/v1/workflows/{workflow.id}/trigger", {"tenant_id": "tenant-1"})

        assert response.status_code == 400

    def test_trigger_other_tenant(self, client, make_workflow):
        workflow = make_workflow([SEND])

        response = post(client, f"/api/v1/workflows/{workflow.id}/trigger", {"tenant_id": "tenant-2"})

        assert response.status_code == 404

    def test_list_templates(self, client):
        response = client.get("/api/v1/templates")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["count"] == 5
        assert data["templates"][0]["name"] == "New Lead Follow-Up"
        assert data["templates"][0]["steps"][0]["kind"] == "wait"


@pytest.mark.usefixtures("services")
class TestWorkflowEditEndpoints:
    """Editing, deleting and validating stored workflows."""

    def test_update_workflow(self, client, make_workflow):
        workflow = make_workflow([SEND], trigger_config={"to_stage": "new"})

        response = client.patch(
            f"/api/v1/workflows/{workflow.id}",
            data=json.dumps({"name": "Renamed", "trigger_config": {"to_stage": "won"}}),
            content_type="application/json",
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["name"] == "Renamed"
        assert data["trigger_config"] == {"to_stage": "won"}

    def test_update_workflow_blank_name(self, client, make_workflow):
        workflow = make_workflow([SEND])

        response = client.patch(
            f"/api/v1/workflows/{workflow.id}",
            data=json.dumps({"name": "  "}),
            content_type="application/json",
        )

        assert response.status_code == 400

    def test_delete_unused_workflow(self, client, make_workflow, workflow_repo):
        workflow = make_workflow([SEND])

        response = client.delete(f"/api/v1/workflows/{workflow.id}")

        assert response.status_code == 200
        assert workflow_repo.get_workflow_by_id(workflow.id) is None

    def test_delete_workflow_with_executions_refused(self, client, make_workflow, workflow_repo):
        workflow = make_workflow([SEND])
        post(client, f"/api/v1/workflows/{workflow.id}/trigger", {"tenant_id": "tenant-1"})

        response = client.delete(f"/api/v1/workflows/{workflow.id}")

        assert response.status_code == 409
        assert "deactivate it instead" in json.loads(response.data)["error"]
        assert workflow_repo.get_workflow_by_id(workflow.id) is not None

    def test_delete_missing_workflow(self, client):
        response = client.delete(f"/api/v1/workflows/{uuid4()}")

        assert response.status_code == 404

    def test_validate_workflow(self, client, make_workflow):
        workflow = make_workflow([SEND, WAIT])

        response = client.get(f"/api/v1/workflows/{workflow.id}/validate")

        assert response.status_code == 200
        assert json.loads(response.data) == {"valid": True, "errors": []}

    def test_validate_reports_broken_config(self, client, make_workflow):
        workflow = make_workflow([{"name": "Wait", "kind": "wait", "config": {}}])

        data = json.loads(client.get(f"/api/v1/workflows/{workflow.id}/validate").data)

        assert data["valid"] is False
        assert "duration" in data["errors"][0]

    def test_update_step(self, client, make_workflow):
        workflow = make_workflow([SEND, WAIT])
        wait = workflow.steps[1]

        response = client.patch(
            f"/api/v1/workflows/{workflow.id}/steps/{wait.id}",
            data=json.dumps({"config": {"duration": 3, "unit": "hours"}, "max_attempts": 2}),
            content_type="application/json",
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["config"] == {"duration": 3, "unit": "hours"}
        assert data["max_attempts"] == 2

    def test_update_step_bad_attempts(self, client, make_workflow):
        workflow = make_workflow([SEND])

        response = client.patch(
            f"/api/v1/workflows/{workflow.id}/steps/{workflow.steps[0].id}",
            data=json.dumps({"max_attempts": "many"}),
            content_type="application/json",
        )

        assert response.status_code == 400
        assert "max_attempts" in json.loads(response.data)["error"]

    def test_update_unknown_step(self, client, make_workflow):
        workflow = make_workflow([SEND])

        response = client.patch(
            f"/api/v1/workflows/{workflow.id}/steps/{uuid4()}",
            data=json.dumps({"name": "x"}),
            content_type="application/json",
        )

        assert response.status_code == 404

    def test_remove_step(self, client, make_workflow, workflow_repo):
        workflow = make_workflow([SEND, WAIT])

        response = client.delete(f"/api/v1/workflows/{workflow.id}/steps/{workflow.steps[1].id}")

        assert response.status_code == 200
        assert [s.name for s in workflow_repo.get_workflow_by_id(workflow.id).steps] == ["Send"]

    def test_remove_referenced_step_refused(self, client, make_workflow):
        workflow = make_workflow([{**SEND, "next": "Wait"}, WAIT])

        response = client.delete(f"/api/v1/workflows/{workflow.id}/steps/{workflow.steps[1].id}")

        assert response.status_code == 409
        assert "referenced by: Send" in json.loads(response.data)["error"]

    def test_reorder_steps(self, client, make_workflow):
        workflow = make_workflow([SEND, WAIT])
        send, wait = workflow.steps

        response = post(client, f"/api/v1/workflows/{workflow.id}/reorder", {
            "step_ids": [str(wait.id), str(send.id)],
        })

        assert response.status_code == 200
        assert [s["name"] for s in json.loads(response.data)["steps"]] == ["Wait", "Send"]

    def test_reorder_requires_every_step(self, client, make_workflow):
        workflow = make_workflow([SEND, WAIT])

        response = post(client, f"/api/v1/workflows/{workflow.id}/reorder", {
            "step_ids": [str(workflow.steps[0].id)],
        })

        assert response.status_code == 400

    def test_reorder_missing_body(self, client, make_workflow):
        workflow = make_workflow([SEND])

        response = post(client, f"/api/v1/workflows/{workflow.id}/reorder", {"order": []})

        assert response.status_code == 400


@pytest.mark.usefixtures("services")
class TestTemplateEndpoints:
    def test_create_from_template(self, client, workflow_repo):
        response = post(client, "/api/v1/templates/0", {"tenant_id": "tenant-1"})

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data["name"] == "New Lead Follow-Up"
        assert data["is_active"] is False
        assert data["metadata"] == {"template": "New Lead Follow-Up"}
        assert workflow_repo.get_workflow_by_id(UUID(data["id"])) is not None

    def test_create_from_template_custom_name(self, client):
        response = post(client, "/api/v1/templates/1", {"tenant_id": "tenant-1", "name": "Mine"})

        assert json.loads(response.data)["name"] == "Mine"

    def test_unknown_template(self, client):
        response = post(client, "/api/v1/templates/99", {"tenant_id": "tenant-1"})

        assert response.status_code == 404

    def test_template_requires_tenant(self, client):
        response = post(client, "/api/v1/templates/0", {"name": "x"})

        assert response.status_code == 400


@pytest.mark.usefixtures("services")
class TestEventEndpoints:
    def test_receive_event(self, client, make_workflow):
        make_workflow([SEND], trigger_config={"to_stage": "won"})

        response = post(client, "/api/v1/events", {
            "tenant_id": "tenant-1",
            "trigger_kind": "stage_change",
            "payload": {"to_stage": "won"},
            "subject": {"entity_kind": "lead", "entity_id": "1"},
            "event_id": "evt-1",
        })

        assert response.status_code == 202
        data = json.loads(response.data)
        assert data["count"] == 1

        again = post(client, "/api/v1/events", {
            "tenant_id": "tenant-1",
            "trigger_kind": "stage_change",
            "payload": {"to_stage": "won"},
            "subject": {"entity_kind": "lead", "entity_id": "1"},
            "event_id": "evt-1",
        })
        assert json.loads(again.data)["execution_ids"] == data["execution_ids"]

    def test_unknown_trigger_kind(self, client):
        response = post(client, "/api/v1/events", {"tenant_id": "tenant-1", "trigger_kind": "moon_phase"})

        assert response.status_code == 400
        assert "Unknown trigger kind" in json.loads(response.data)["error"]

    def test_missing_tenant(self, client):
        response = post(client, "/api/v1/events", {"trigger_kind": "stage_change"})

        assert response.status_code == 400


@pytest.mark.usefixtures("services")
class TestExecutionEndpoints:
    """Integration tests for execution API endpoints."""

    def start(self, client, make_workflow, steps):
        workflow = make_workflow(steps)
        response = post(client, f"/api/v1/workflows/{workflow.id}/trigger", {"tenant_id": "tenant-1"})
        return json.loads(response.data)["execution_id"]

    def test_get_execution(self, client, make_workflow):
        execution_id = self.start(client, make_workflow, [SEND])

        response = client.get(f"/api/v1/executions/{execution_id}")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == ExecutionStatus.RUNNING.value
        assert data["current_position"] == 0

    def test_get_execution_not_found(self, client):
        """Test GET /api/v1/executions/<id> with non-existent ID."""
        response = client.get(f"/api/v1/executions/{uuid4()}")

        assert response.status_code == 404

    def test_cancel_execution(self, client, make_workflow):
        execution_id = self.start(client, make_workflow, [SEND])

        response = client.post(f"/api/v1/executions/{execution_id}/cancel")

        assert response.status_code == 200
        assert json.loads(response.data)["status"] == "cancelled"

        again = client.post(f"/api/v1/executions/{execution_id}/cancel")
        assert again.status_code == 409

    def test_execution_logs(self, client, make_workflow, interpreter):
        execution_id = self.start(client, make_workflow, [SEND, WAIT])
        interpreter.tick(UUID(execution_id))

        response = client.get(f"/api/v1/executions/{execution_id}/logs")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert [log["outcome"] for log in data["logs"]] == ["completed", "waiting"]
        assert data["logs"][1]["output_data"]["resume_at"]

    def test_list_executions(self, client, make_workflow):
        self.start(client, make_workflow, [SEND])

        response = client.get("/api/v1/executions?tenant_id=tenant-1&status=running")

        assert response.status_code == 200
        assert json.loads(response.data)["count"] == 1

    def test_job_stats(self, client, make_workflow):
        self.start(client, make_workflow, [SEND])

        response = client.get("/api/v1/jobs/stats")

        assert response.status_code == 200
        assert json.loads(response.data)["pending"] == 1


@pytest.mark.usefixtures("services")
class TestStatsEndpoints:
    def test_tenant_stats(self, client, make_workflow):
        workflow = make_workflow([SEND])
        make_workflow([SEND], is_active=False)
        post(client, f"/api/v1/workflows/{workflow.id}/trigger", {"tenant_id": "tenant-1"})

        response = client.get("/api/v1/stats?tenant_id=tenant-1")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["workflows"] == {"total": 2, "active": 1}
        assert data["executions"]["running"] == 1
        assert data["executions"]["completed"] == 0

    def test_tenant_stats_requires_tenant(self, client):
        response = client.get("/api/v1/stats")

        assert response.status_code == 400


@pytest.mark.usefixtures("services")
class TestJobEndpoints:
    def test_retry_failed_job(self, client, job_repo):
        job_id = job_repo.enqueue(JobKind.RUN, {"execution_id": str(uuid4())})
        job_repo.fail(job_id, "bad data", retry=False)

        response = client.post(f"/api/v1/jobs/{job_id}/retry")

        assert response.status_code == 200
        job = job_repo.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.last_error is None

    def test_retry_pending_job_conflicts(self, client, job_repo):
        job_id = job_repo.enqueue(JobKind.RUN, {"execution_id": str(uuid4())})

        response = client.post(f"/api/v1/jobs/{job_id}/retry")

        assert response.status_code == 409

    def test_retry_unknown_job(self, client):
        assert client.post(f"/api/v1/jobs/{uuid4()}/retry").status_code == 404
        assert client.post("/api/v1/jobs/nope/retry").status_code == 400
