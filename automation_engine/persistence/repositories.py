"""
Repository implementations for data access.

These repositories provide a clean interface between the domain layer
and the persistence layer. They handle all SQL queries and data mapping.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from automation_engine.domain import (
    ExecutionLogEntry,
    ExecutionStatus,
    Job,
    JobKind,
    JobStatus,
    StepKind,
    StepOutcome,
    SubjectRef,
    TriggerKind,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
    utcnow,
)
from .database import Database
from .job_store import insert_job

logger = logging.getLogger(__name__)


def _uuid(value: Any) -> Optional[UUID]:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))


def _str_or_none(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value is not None else None


def _json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class WorkflowRepository:
    """Repository for workflow definitions and their steps."""

    STEP_COLUMNS = """
        (id, workflow_id, name, kind, position, config, next_step_id,
         on_true_step_id, on_false_step_id, max_attempts, created_at, updated_at)
    """

    def __init__(self, db: Database):
        self.db = db

    def create_workflow(self, workflow: Workflow) -> Workflow:
        """Create a new workflow together with any steps it already holds."""
        query = """
            INSERT INTO workflows
            (id, tenant_id, name, description, trigger_kind, trigger_config,
             is_active, metadata, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        params = (
            str(workflow.id),
            workflow.tenant_id,
            workflow.name,
            workflow.description,
            workflow.trigger_kind.value,
            json.dumps(workflow.trigger_config),
            workflow.is_active,
            json.dumps(workflow.metadata),
            workflow.created_at,
            workflow.updated_at,
        )

        with self.db.transaction() as cur:
            cur.execute(query, params)
            row = cur.fetchone()

            for step in workflow.steps:
                self._insert_step(cur, step)

        return self._row_to_workflow(row, workflow.steps)

    def update_workflow(self, workflow: Workflow) -> Workflow:
        """Persist the mutable fields of a workflow definition."""
        query = """
            UPDATE workflows
            SET name = %s, description = %s, trigger_config = %s, is_active = %s,
                metadata = %s, updated_at = %s
            WHERE id = %s
        """
        workflow.updated_at = utcnow()
        self.db.execute(query, (
            workflow.name,
            workflow.description,
            json.dumps(workflow.trigger_config),
            workflow.is_active,
            json.dumps(workflow.metadata),
            workflow.updated_at,
            str(workflow.id),
        ))
        return workflow

    def delete_workflow(self, workflow_id: UUID) -> bool:
        """Hard-delete a workflow; its steps cascade."""
        deleted = self.db.execute_rowcount(
            "DELETE FROM workflows WHERE id = %s", (str(workflow_id),)
        )
        return deleted > 0

    def _insert_step(self, cursor, step: WorkflowStep) -> None:
        """Create a workflow step (internal helper)."""
        query = f"""
            INSERT INTO workflow_steps {self.STEP_COLUMNS}
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        cursor.execute(query, self._step_params(step))

    def _step_params(self, step: WorkflowStep) -> tuple:
        return (
            str(step.id),
            str(step.workflow_id),
            step.name,
            step.kind.value,
            step.position,
            json.dumps(step.config),
            _str_or_none(step.next_step_id),
            _str_or_none(step.on_true_step_id),
            _str_or_none(step.on_false_step_id),
            step.max_attempts,
            step.created_at,
            step.updated_at,
        )

    def add_step(self, step: WorkflowStep) -> WorkflowStep:
        """Add a step to an existing workflow."""
        query = f"""
            INSERT INTO workflow_steps {self.STEP_COLUMNS}
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        row = self.db.execute_one(query, self._step_params(step))
        return self._row_to_step(row)

    def update_step(self, step: WorkflowStep) -> WorkflowStep:
        """Persist every mutable field of a step."""
        query = """
            UPDATE workflow_steps
            SET name = %s, kind = %s, position = %s, config = %s, next_step_id = %s,
                on_true_step_id = %s, on_false_step_id = %s, max_attempts = %s, updated_at = %s
            WHERE id = %s
            RETURNING *
        """
        row = self.db.execute_one(query, (
            step.name,
            step.kind.value,
            step.position,
            json.dumps(step.config),
            _str_or_none(step.next_step_id),
            _str_or_none(step.on_true_step_id),
            _str_or_none(step.on_false_step_id),
            step.max_attempts,
            utcnow(),
            str(step.id),
        ))
        return self._row_to_step(row)

    def delete_step(self, step_id: UUID) -> bool:
        deleted = self.db.execute_rowcount(
            "DELETE FROM workflow_steps WHERE id = %s", (str(step_id),)
        )
        return deleted > 0

    def update_positions(self, workflow_id: UUID, positions: Sequence[Tuple[UUID, int]]) -> None:
        """
        Rewrite step positions in one transaction.

        The (workflow_id, position) uniqueness check is deferred to commit,
        so steps may swap positions.
        """
        now = utcnow()
        with self.db.transaction() as cur:
            for step_id, position in positions:
                cur.execute(
                    """
                    UPDATE workflow_steps SET position = %s, updated_at = %s
                    WHERE id = %s AND workflow_id = %s
                    """,
                    (position, now, str(step_id), str(workflow_id)),
                )

    def get_workflow_by_id(self, workflow_id: UUID) -> Optional[Workflow]:
        """Get a workflow by ID with all its steps."""
        row = self.db.execute_one("SELECT * FROM workflows WHERE id = %s", (str(workflow_id),))

        if not row:
            return None

        steps = self.get_steps_by_workflow_id(workflow_id)
        return self._row_to_workflow(row, steps)

    def get_steps_by_workflow_id(self, workflow_id: UUID) -> List[WorkflowStep]:
        """Get all steps for a workflow, ordered by position."""
        query = """
            SELECT * FROM workflow_steps
            WHERE workflow_id = %s
            ORDER BY position
        """
        rows = self.db.execute(query, (str(workflow_id),))
        return [self._row_to_step(row) for row in rows]

    def find_active_by_trigger(self, tenant_id: str, trigger_kind: TriggerKind) -> List[Workflow]:
        """Active workflows of a tenant listening for ``trigger_kind``."""
        query = """
            SELECT * FROM workflows
            WHERE tenant_id = %s AND trigger_kind = %s AND is_active
            ORDER BY created_at
        """
        rows = self.db.execute(query, (tenant_id, trigger_kind.value))
        return [
            self._row_to_workflow(row, self.get_steps_by_workflow_id(_uuid(row["id"])))
            for row in rows
        ]

    def list_workflows(
        self,
        tenant_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        trigger_kind: Optional[TriggerKind] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Workflow]:
        """List workflows with optional filters."""
        conditions = []
        params: List[Any] = []

        if tenant_id:
            conditions.append("tenant_id = %s")
            params.append(tenant_id)

        if is_active is not None:
            conditions.append("is_active = %s")
            params.append(is_active)

        if trigger_kind:
            conditions.append("trigger_kind = %s")
            params.append(trigger_kind.value)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT * FROM workflows
            {where_clause}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
        """
        params.extend([limit, offset])

        rows = self.db.execute(query, tuple(params))
        return [
            self._row_to_workflow(row, self.get_steps_by_workflow_id(_uuid(row["id"])))
            for row in rows
        ]

    def count_workflows(self, tenant_id: str) -> Dict[str, int]:
        query = """
            SELECT COUNT(*) AS total, COUNT(*) FILTER (WHERE is_active) AS active
            FROM workflows WHERE tenant_id = %s
        """
        row = self.db.execute_one(query, (tenant_id,)) or {}
        return {"total": int(row.get("total") or 0), "active": int(row.get("active") or 0)}

    def _row_to_workflow(self, row: dict, steps: List[WorkflowStep]) -> Workflow:
        """Convert database row to Workflow entity."""
        return Workflow(
            id=_uuid(row["id"]),
            tenant_id=row["tenant_id"],
            name=row["name"],
            description=row["description"] or "",
            trigger_kind=TriggerKind(row["trigger_kind"]),
            trigger_config=_json(row.get("trigger_config"), {}),
            is_active=row["is_active"],
            steps=steps,
            metadata=_json(row.get("metadata"), {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_step(self, row: dict) -> WorkflowStep:
        """Convert database row to WorkflowStep entity."""
        return WorkflowStep(
            id=_uuid(row["id"]),
            workflow_id=_uuid(row["workflow_id"]),
            name=row["name"],
            kind=StepKind(row["kind"]),
            position=row["position"],
            config=_json(row.get("config"), {}),
            next_step_id=_uuid(row.get("next_step_id")),
            on_true_step_id=_uuid(row.get("on_true_step_id")),
            on_false_step_id=_uuid(row.get("on_false_step_id")),
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class ExecutionRepository:
    """
    Repository for workflow execution persistence.

    Every write that moves an execution goes through ``save_transition``,
    which updates the execution row, appends its log entry and enqueues any
    follow-up jobs in one transaction, guarded by the row version.
    """

    def __init__(self, db: Database):
        self.db = db

    def create_execution(
        self,
        execution: WorkflowExecution,
        jobs: Iterable[Job] = (),
    ) -> Optional[WorkflowExecution]:
        """
        Insert a new execution and its initial jobs atomically.

        Returns None when another execution already owns the dedup key;
        nothing is written in that case.
        """
        query = """
            INSERT INTO workflow_executions
            (id, workflow_id, tenant_id, trigger_kind, trigger_payload, entity_kind, entity_id,
             status, current_step_id, current_position, resume_at, context, error, dedup_key,
             step_attempts, version, started_at, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (dedup_key) DO NOTHING
            RETURNING *
        """
        params = (
            str(execution.id),
            str(execution.workflow_id),
            execution.tenant_id,
            execution.trigger_kind.value,
            json.dumps(execution.trigger_payload),
            execution.subject.entity_kind,
            execution.subject.entity_id,
            execution.status.value,
            _str_or_none(execution.current_step_id),
            execution.current_position,
            execution.resume_at,
            json.dumps(execution.context),
            execution.error,
            execution.dedup_key,
            execution.step_attempts,
            execution.version,
            execution.started_at,
            execution.created_at,
            execution.updated_at,
        )

        with self.db.transaction() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
            if row is None:
                return None
            for job in jobs:
                insert_job(cur, job)

        return self._row_to_execution(row)

    def get_execution_by_id(self, execution_id: UUID) -> Optional[WorkflowExecution]:
        """Get an execution by ID."""
        row = self.db.execute_one(
            "SELECT * FROM workflow_executions WHERE id = %s", (str(execution_id),)
        )
        return self._row_to_execution(row) if row else None

    def get_execution_by_dedup_key(self, dedup_key: str) -> Optional[WorkflowExecution]:
        row = self.db.execute_one(
            "SELECT * FROM workflow_executions WHERE dedup_key = %s", (dedup_key,)
        )
        return self._row_to_execution(row) if row else None

    def get_state(self, execution_id: UUID) -> Optional[Tuple[ExecutionStatus, int]]:
        """Current (status, version) of an execution, without the payload columns."""
        row = self.db.execute_one(
            "SELECT status, version FROM workflow_executions WHERE id = %s",
            (str(execution_id),),
        )
        if not row:
            return None
        return ExecutionStatus(row["status"]), row["version"]

    def save_transition(
        self,
        execution: WorkflowExecution,
        log_entry: Optional[ExecutionLogEntry] = None,
        jobs: Iterable[Job] = (),
    ) -> bool:
        """
        Persist the in-memory execution if nobody else wrote it first.

        The update only applies when the stored version still equals
        ``execution.version``. On success the version is bumped on both
        sides and the log entry and jobs are written in the same
        transaction. Returns False, writing nothing, when the version moved.
        """
        now = utcnow()
        query = """
            UPDATE workflow_executions
            SET status = %s, current_step_id = %s, current_position = %s, resume_at = %s,
                context = %s, error = %s, step_attempts = %s, completed_at = %s,
                updated_at = %s, version = version + 1
            WHERE id = %s AND version = %s
        """
        params = (
            execution.status.value,
            _str_or_none(execution.current_step_id),
            execution.current_position,
            execution.resume_at,
            json.dumps(execution.context),
            execution.error,
            execution.step_attempts,
            execution.completed_at,
            now,
            str(execution.id),
            execution.version,
        )

        with self.db.transaction() as cur:
            cur.execute(query, params)
            if cur.rowcount == 0:
                logger.info(
                    f"Execution {execution.id} changed since version {execution.version}; "
                    f"transition to {execution.status.value} discarded"
                )
                return False
            if log_entry is not None:
                LogRepository.insert_log(cur, log_entry)
            for job in jobs:
                insert_job(cur, job)

        execution.version += 1
        execution.updated_at = now
        return True

    def list_executions(
        self,
        workflow_id: Optional[UUID] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowExecution]:
        """List executions with optional filters."""
        conditions = []
        params: List[Any] = []

        if workflow_id:
            conditions.append("workflow_id = %s")
            params.append(str(workflow_id))

        if tenant_id:
            conditions.append("tenant_id = %s")
            params.append(tenant_id)

        if status:
            conditions.append("status = %s")
            params.append(status.value)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT * FROM workflow_executions
            {where_clause}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
        """
        params.extend([limit, offset])

        rows = self.db.execute(query, tuple(params))
        return [self._row_to_execution(row) for row in rows]

    def count_for_workflow(self, workflow_id: UUID) -> int:
        row = self.db.execute_one(
            "SELECT COUNT(*) AS n FROM workflow_executions WHERE workflow_id = %s",
            (str(workflow_id),),
        )
        return int(row["n"]) if row else 0

    def count_by_status(self, tenant_id: str) -> Dict[str, int]:
        query = """
            SELECT status, COUNT(*) AS n FROM workflow_executions
            WHERE tenant_id = %s
            GROUP BY status
        """
        rows = self.db.execute(query, (tenant_id,))
        return {row["status"]: int(row["n"]) for row in rows}

    def find_overdue_waiting(self, before: datetime, limit: int = 100) -> List[WorkflowExecution]:
        """
        Waiting executions past their resume time with no live resume job.

        These only exist if a resume job was lost; the resumer re-enqueues
        one for each.
        """
        query = """
            SELECT e.* FROM workflow_executions e
            WHERE e.status = %s AND e.resume_at <= %s
            AND NOT EXISTS (
                SELECT 1 FROM jobs j
                WHERE j.kind = %s AND j.payload ->> 'execution_id' = e.id::text
                AND j.status IN (%s, %s)
            )
            ORDER BY e.resume_at
            LIMIT %s
        """
        rows = self.db.execute(query, (
            ExecutionStatus.WAITING.value,
            before,
            JobKind.RESUME.value,
            JobStatus.PENDING.value,
            JobStatus.IN_PROGRESS.value,
            limit,
        ))
        return [self._row_to_execution(row) for row in rows]

    def _row_to_execution(self, row: dict) -> WorkflowExecution:
        """Convert database row to WorkflowExecution entity."""
        return WorkflowExecution(
            id=_uuid(row["id"]),
            workflow_id=_uuid(row["workflow_id"]),
            tenant_id=row["tenant_id"],
            trigger_kind=TriggerKind(row["trigger_kind"]),
            status=ExecutionStatus(row["status"]),
            trigger_payload=_json(row.get("trigger_payload"), {}),
            subject=SubjectRef(
                entity_kind=row.get("entity_kind"),
                entity_id=row.get("entity_id"),
            ),
            current_step_id=_uuid(row.get("current_step_id")),
            current_position=row.get("current_position"),
            resume_at=row.get("resume_at"),
            context=_json(row.get("context"), {}),
            error=row.get("error"),
            dedup_key=row.get("dedup_key"),
            step_attempts=row.get("step_attempts") or 0,
            version=row["version"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class LogRepository:
    """Repository for the append-only execution log."""

    INSERT_SQL = """
        INSERT INTO workflow_execution_logs
        (id, execution_id, step_id, step_kind, step_name, outcome, message,
         input_data, output_data, error, timestamp)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    """

    def __init__(self, db: Database):
        self.db = db

    @classmethod
    def insert_log(cls, cursor, entry: ExecutionLogEntry) -> None:
        """Append a log entry using an open cursor."""
        cursor.execute(cls.INSERT_SQL, (
            str(entry.id),
            str(entry.execution_id),
            _str_or_none(entry.step_id),
            entry.step_kind.value if entry.step_kind else None,
            entry.step_name,
            entry.outcome.value,
            entry.message,
            json.dumps(entry.input_data),
            json.dumps(entry.output_data) if entry.output_data is not None else None,
            entry.error,
            entry.timestamp,
        ))

    def get_logs_by_execution_id(
        self,
        execution_id: UUID,
        limit: int = 1000,
        offset: int = 0,
    ) -> List[ExecutionLogEntry]:
        """Get log entries for an execution in the order they were written."""
        query = """
            SELECT * FROM workflow_execution_logs
            WHERE execution_id = %s
            ORDER BY timestamp
            LIMIT %s OFFSET %s
        """
        rows = self.db.execute(query, (str(execution_id), limit, offset))
        return [self._row_to_log(row) for row in rows]

    def _row_to_log(self, row: dict) -> ExecutionLogEntry:
        """Convert database row to ExecutionLogEntry entity."""
        step_kind = row.get("step_kind")
        return ExecutionLogEntry(
            id=_uuid(row["id"]),
            execution_id=_uuid(row["execution_id"]),
            outcome=StepOutcome(row["outcome"]),
            step_id=_uuid(row.get("step_id")),
            step_kind=StepKind(step_kind) if step_kind else None,
            step_name=row.get("step_name"),
            message=row.get("message") or "",
            input_data=_json(row.get("input_data"), {}),
            output_data=_json(row.get("output_data"), None),
            error=row.get("error"),
            timestamp=row["timestamp"],
        )
