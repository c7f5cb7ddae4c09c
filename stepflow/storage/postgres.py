from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from stepflow.logging import get_logger
from stepflow.storage.common import (
    EXECUTION_TRANSITIONS,
    allowed_step_sources,
    normalize_email,
)
from stepflow.storage.errors import ConstraintViolation
from stepflow.storage.models import (
    WORKFLOW_STATUSES,
    Execution,
    ExecutionStep,
    Session,
    StepDefinition,
    User,
    Workflow,
    WorkflowSchedule,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        handle TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        steps JSONB NOT NULL DEFAULT '[]'::jsonb,
        status TEXT NOT NULL DEFAULT 'draft',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_execution (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'running',
        trigger TEXT NOT NULL DEFAULT 'manual',
        started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        completed_at TIMESTAMPTZ,
        input_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        output_data JSONB,
        error_message TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_execution_step (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL REFERENCES workflow_execution(id) ON DELETE CASCADE,
        step_index INTEGER NOT NULL,
        step_id TEXT NOT NULL,
        step_name TEXT NOT NULL,
        step_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        input_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        output_data JSONB,
        error_message TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        logs JSONB NOT NULL DEFAULT '[]'::jsonb,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        UNIQUE (execution_id, step_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_schedule (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        workflow_id TEXT NOT NULL REFERENCES workflow(id) ON DELETE CASCADE,
        cron TEXT NOT NULL,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        next_run_at TIMESTAMPTZ,
        last_run_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (workflow_id, user_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_user_idx ON workflow (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS workflow_execution_wf_idx ON workflow_execution (workflow_id, started_at DESC)",
    "CREATE INDEX IF NOT EXISTS workflow_schedule_due_idx ON workflow_schedule (enabled, next_run_at)",
]


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class PostgresStore:
    """Postgres-backed store for workflows, executions and schedules."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this store needs if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # user / auth
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            handle=handle,
            is_active=is_active,
            meta=meta.copy() if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, handle, created_at, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        handle,
                        user.created_at,
                        is_active,
                        _dumps(user.meta),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            meta=row.get("meta"),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id, ttl_minutes=ttl_minutes, user_agent=user_agent, meta=meta
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        _dumps(meta),
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            meta=row.get("meta"),
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    # workflows
    def _workflow_from_row(self, row: dict) -> Workflow:
        return Workflow(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            description=row.get("description") or "",
            steps=list(row.get("steps") or []),
            status=row.get("status", "draft"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_workflow(
        self,
        user_id: str,
        name: str,
        *,
        description: str = "",
        steps: Optional[List[dict]] = None,
        status: str = "draft",
    ) -> Workflow:
        if status not in WORKFLOW_STATUSES:
            raise ConstraintViolation("invalid workflow status", {"status": status})
        workflow = Workflow(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            description=description,
            steps=[dict(step) for step in (steps or [])],
            status=status,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO workflow (id, user_id, name, description, steps, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        workflow.id,
                        user_id,
                        name,
                        description,
                        _dumps(workflow.steps),
                        status,
                        workflow.created_at,
                        workflow.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return workflow

    def get_workflow(
        self, workflow_id: str, user_id: Optional[str] = None
    ) -> Optional[Workflow]:
        query = "SELECT * FROM workflow WHERE id = %s"
        params: list[Any] = [workflow_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._workflow_from_row(row) if row else None

    def list_workflows(
        self, user_id: str, status: Optional[str] = None, limit: int = 100
    ) -> List[Workflow]:
        query = "SELECT * FROM workflow WHERE user_id = %s"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = %s"
            params.append(status)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._workflow_from_row(row) for row in rows]

    def update_workflow(
        self,
        workflow_id: str,
        user_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        steps: Optional[List[dict]] = None,
        status: Optional[str] = None,
    ) -> Optional[Workflow]:
        if status is not None and status not in WORKFLOW_STATUSES:
            raise ConstraintViolation("invalid workflow status", {"status": status})
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workflow
                SET name = COALESCE(%s, name),
                    description = COALESCE(%s, description),
                    steps = COALESCE(%s::jsonb, steps),
                    status = COALESCE(%s, status),
                    updated_at = now()
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (
                    name,
                    description,
                    _dumps(steps) if steps is not None else None,
                    status,
                    workflow_id,
                    user_id,
                ),
            ).fetchone()
        return self._workflow_from_row(row) if row else None

    def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM workflow WHERE id = %s AND user_id = %s RETURNING id",
                (workflow_id, user_id),
            ).fetchone()
        return row is not None

    # executions
    def _execution_from_row(self, row: dict) -> Execution:
        return Execution(
            id=str(row["id"]),
            workflow_id=str(row["workflow_id"]),
            user_id=str(row["user_id"]),
            status=row.get("status", "running"),
            trigger=row.get("trigger", "manual"),
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
            input_data=row.get("input_data") or {},
            output_data=row.get("output_data"),
            error_message=row.get("error_message"),
        )

    def create_execution(
        self,
        workflow_id: str,
        user_id: str,
        *,
        trigger: str = "manual",
        input_data: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        execution = Execution(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            user_id=user_id,
            trigger=trigger,
            input_data=dict(input_data or {}),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_execution (id, workflow_id, user_id, status, trigger, started_at, input_data)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    execution.id,
                    workflow_id,
                    user_id,
                    execution.status,
                    trigger,
                    execution.started_at,
                    _dumps(execution.input_data),
                ),
            )
        return execution

    def get_execution(
        self, execution_id: str, user_id: Optional[str] = None
    ) -> Optional[Execution]:
        query = "SELECT * FROM workflow_execution WHERE id = %s"
        params: list[Any] = [execution_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._execution_from_row(row) if row else None

    def list_executions(
        self, workflow_id: str, user_id: Optional[str] = None, limit: int = 50
    ) -> List[Execution]:
        query = "SELECT * FROM workflow_execution WHERE workflow_id = %s"
        params: list[Any] = [workflow_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        query += " ORDER BY started_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._execution_from_row(row) for row in rows]

    def update_execution(
        self,
        execution_id: str,
        *,
        status: str,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Execution:
        sources = [src for src, targets in EXECUTION_TRANSITIONS.items() if status in targets]
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workflow_execution
                SET status = %s,
                    output_data = COALESCE(%s::jsonb, output_data),
                    error_message = COALESCE(%s, error_message),
                    completed_at = now()
                WHERE id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (status, _dumps(output_data), error_message, execution_id, sources),
            ).fetchone()
            if row is None:
                current = conn.execute(
                    "SELECT status FROM workflow_execution WHERE id = %s",
                    (execution_id,),
                ).fetchone()
        if row is None:
            if current is None:
                raise ConstraintViolation(
                    "execution not found", {"execution_id": execution_id}
                )
            raise ConstraintViolation(
                "illegal execution transition",
                {"execution_id": execution_id, "from": current["status"], "to": status},
            )
        return self._execution_from_row(row)

    # execution steps
    def _step_from_row(self, row: dict) -> ExecutionStep:
        return ExecutionStep(
            id=str(row["id"]),
            execution_id=str(row["execution_id"]),
            step_index=int(row["step_index"]),
            step_id=row["step_id"],
            step_name=row["step_name"],
            step_type=row["step_type"],
            status=row.get("status", "pending"),
            input_data=row.get("input_data") or {},
            output_data=row.get("output_data"),
            error_message=row.get("error_message"),
            attempts=int(row.get("attempts") or 0),
            logs=list(row.get("logs") or []),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
        )

    def create_execution_steps(
        self, execution_id: str, definitions: Sequence[StepDefinition]
    ) -> List[ExecutionStep]:
        records = [
            ExecutionStep(
                id=str(uuid.uuid4()),
                execution_id=execution_id,
                step_index=index,
                step_id=definition.id,
                step_name=definition.name,
                step_type=definition.kind,
                input_data=dict(definition.parameters),
            )
            for index, definition in enumerate(definitions)
        ]
        if not records:
            return []
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO workflow_execution_step
                            (id, execution_id, step_index, step_id, step_name, step_type, status, input_data)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        [
                            (
                                rec.id,
                                rec.execution_id,
                                rec.step_index,
                                rec.step_id,
                                rec.step_name,
                                rec.step_type,
                                rec.status,
                                _dumps(rec.input_data),
                            )
                            for rec in records
                        ],
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "execution not found", {"execution_id": execution_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "execution steps already created", {"execution_id": execution_id}
            )
        return records

    def update_execution_step(
        self,
        record_id: str,
        *,
        status: str,
        output_data: Any = None,
        error_message: Optional[str] = None,
        attempts: Optional[int] = None,
        logs: Optional[List[str]] = None,
    ) -> ExecutionStep:
        now = utcnow()
        started_at = now if status == "running" else None
        completed_at = None if status == "running" else now
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workflow_execution_step
                SET status = %s,
                    started_at = COALESCE(%s, started_at),
                    completed_at = COALESCE(%s, completed_at),
                    output_data = COALESCE(%s::jsonb, output_data),
                    error_message = COALESCE(%s, error_message),
                    attempts = COALESCE(%s, attempts),
                    logs = logs || %s::jsonb
                WHERE id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (
                    status,
                    started_at,
                    completed_at,
                    _dumps(output_data),
                    error_message,
                    attempts,
                    _dumps(list(logs or [])),
                    record_id,
                    allowed_step_sources(status),
                ),
            ).fetchone()
            if row is None:
                current = conn.execute(
                    "SELECT status FROM workflow_execution_step WHERE id = %s",
                    (record_id,),
                ).fetchone()
        if row is None:
            if current is None:
                raise ConstraintViolation(
                    "execution step not found", {"step_record_id": record_id}
                )
            raise ConstraintViolation(
                "illegal execution step transition",
                {"step_record_id": record_id, "from": current["status"], "to": status},
            )
        return self._step_from_row(row)

    def list_execution_steps(self, execution_id: str) -> List[ExecutionStep]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflow_execution_step WHERE execution_id = %s ORDER BY step_index",
                (execution_id,),
            ).fetchall()
        return [self._step_from_row(row) for row in rows]

    # schedules
    def _schedule_from_row(self, row: dict) -> WorkflowSchedule:
        return WorkflowSchedule(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            workflow_id=str(row["workflow_id"]),
            cron=row["cron"],
            timezone=row.get("timezone") or "UTC",
            enabled=row.get("enabled", True),
            next_run_at=row.get("next_run_at"),
            last_run_at=row.get("last_run_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def upsert_schedule(
        self,
        user_id: str,
        workflow_id: str,
        *,
        cron: str,
        timezone: str = "UTC",
        enabled: bool = True,
        next_run_at: Optional[datetime] = None,
    ) -> WorkflowSchedule:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workflow_schedule (id, user_id, workflow_id, cron, timezone, enabled, next_run_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (workflow_id, user_id) DO UPDATE
                    SET cron = EXCLUDED.cron,
                        timezone = EXCLUDED.timezone,
                        enabled = EXCLUDED.enabled,
                        next_run_at = EXCLUDED.next_run_at,
                        updated_at = now()
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        workflow_id,
                        cron,
                        timezone,
                        enabled,
                        next_run_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "workflow does not exist", {"workflow_id": workflow_id}
            )
        return self._schedule_from_row(row)

    def get_schedule(
        self, workflow_id: str, user_id: Optional[str] = None
    ) -> Optional[WorkflowSchedule]:
        query = "SELECT * FROM workflow_schedule WHERE workflow_id = %s"
        params: list[Any] = [workflow_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._schedule_from_row(row) if row else None

    def delete_schedule(self, workflow_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM workflow_schedule WHERE workflow_id = %s AND user_id = %s RETURNING id",
                (workflow_id, user_id),
            ).fetchone()
        return row is not None

    def list_due_schedules(
        self, now: datetime, limit: int = 25
    ) -> List[WorkflowSchedule]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_schedule
                WHERE enabled AND (next_run_at IS NULL OR next_run_at <= %s)
                ORDER BY next_run_at ASC NULLS FIRST
                LIMIT %s
                """,
                (now, limit),
            ).fetchall()
        return [self._schedule_from_row(row) for row in rows]

    def update_schedule(
        self,
        schedule_id: str,
        *,
        enabled: Optional[bool] = None,
        next_run_at: Optional[datetime] = None,
        last_run_at: Optional[datetime] = None,
    ) -> Optional[WorkflowSchedule]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workflow_schedule
                SET enabled = COALESCE(%s, enabled),
                    next_run_at = COALESCE(%s, next_run_at),
                    last_run_at = COALESCE(%s, last_run_at),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (enabled, next_run_at, last_run_at, schedule_id),
            ).fetchone()
        return self._schedule_from_row(row) if row else None
