"""PostgreSQL implementation of the automation repository."""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import asyncpg

from ..contracts import ACTION_ADAPTER, Action, ActionResult, Workflow
from ..exceptions import DealNotFoundError, StoreError
from .models import (
    Notification,
    RunStatus,
    ScheduledAction,
    ScheduledActionStatus,
    WorkflowRun,
    derive_run_status,
)
from .repository import AutomationRepository

_SCHEDULED_COLUMNS = (
    "id, workflow_run_id, action, trigger_data, scheduled_for, status, attempts, "
    "lease_expires_at, executed_at, error_message, created_at"
)

# Server-side failures, protocol misuse and dropped connections.
_QUERY_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _loads(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class PostgresRepository(AutomationRepository):
    """Persist engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StoreError(f"Could not connect to database: {exc}") from exc

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a fresh connection, raising query failures as :class:`StoreError`."""
        conn = await self._connect()
        try:
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
            yield conn
        except _QUERY_ERRORS as exc:
            raise StoreError(str(exc)) from exc
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_config JSONB NOT NULL,
                actions JSONB NOT NULL,
                is_active BOOLEAN NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_type TEXT,
                trigger_data JSONB,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_run_results (
                id BIGSERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                action_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                success BOOLEAN NOT NULL,
                message TEXT NOT NULL,
                error_kind TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_actions (
                id TEXT PRIMARY KEY,
                workflow_run_id TEXT NOT NULL,
                action JSONB NOT NULL,
                trigger_data JSONB NOT NULL,
                scheduled_for TIMESTAMPTZ NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                lease_expires_at TIMESTAMPTZ,
                executed_at TIMESTAMPTZ,
                error_message TEXT,
                created_at TIMESTAMPTZ DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                deal_id TEXT NOT NULL,
                alert_type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS deals (
                id TEXT PRIMARY KEY,
                fields JSONB NOT NULL DEFAULT '{}'::jsonb
            )
            """
        )

    @staticmethod
    def _row_to_workflow(row: asyncpg.Record) -> Workflow:
        return Workflow(
            id=row["id"],
            name=row["name"],
            trigger_type=row["trigger_type"],
            trigger_config=_loads(row["trigger_config"]) or {},
            actions=_loads(row["actions"]) or [],
            is_active=row["is_active"],
        )

    @staticmethod
    def _row_to_scheduled(row: asyncpg.Record) -> ScheduledAction:
        return ScheduledAction(
            id=row["id"],
            workflow_run_id=row["workflow_run_id"],
            action=ACTION_ADAPTER.validate_python(_loads(row["action"])),
            trigger_data=_loads(row["trigger_data"]) or {},
            scheduled_for=row["scheduled_for"],
            status=row["status"],
            attempts=row["attempts"],
            lease_expires_at=row["lease_expires_at"],
            executed_at=row["executed_at"],
            error_message=row["error_message"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Workflow catalog
    async def save_workflow(self, workflow: Workflow) -> None:
        wire = workflow.to_wire()
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO workflows (id, name, trigger_type, trigger_config, actions, is_active)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    trigger_type = EXCLUDED.trigger_type,
                    trigger_config = EXCLUDED.trigger_config,
                    actions = EXCLUDED.actions,
                    is_active = EXCLUDED.is_active
                """,
                workflow.id,
                workflow.name,
                wire["triggerType"],
                json.dumps(wire["triggerConfig"]),
                json.dumps(wire["actions"]),
                workflow.is_active,
            )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, name, trigger_type, trigger_config, actions, is_active FROM workflows WHERE id = $1",
                workflow_id,
            )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(self) -> list[Workflow]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT id, name, trigger_type, trigger_config, actions, is_active FROM workflows ORDER BY id"
            )
        return [self._row_to_workflow(r) for r in rows]

    # ------------------------------------------------------------------
    # Run ledger
    async def create_run(
        self,
        workflow_id: str,
        started_at: datetime,
        trigger_type: str | None = None,
        trigger_data: dict | None = None,
    ) -> str:
        run_id = str(uuid.uuid4())
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO workflow_runs (id, workflow_id, trigger_type, trigger_data, status, started_at) VALUES ($1, $2, $3, $4, $5, $6)",
                run_id,
                workflow_id,
                trigger_type,
                json.dumps(trigger_data or {}, default=str),
                RunStatus.RUNNING.value,
                started_at,
            )
        return run_id

    async def append_result(self, run_id: str, result: ActionResult) -> None:
        async with self._connection() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO workflow_run_results (run_id, action_id, action_type, success, message, error_kind)
                SELECT $1, $2, $3, $4, $5, $6 WHERE EXISTS (SELECT 1 FROM workflow_runs WHERE id = $1)
                RETURNING id
                """,
                run_id,
                result.action_id,
                result.type.value,
                result.success,
                result.message,
                result.error_kind,
            )
        if inserted is None:
            raise StoreError(f"Workflow run {run_id} not found")

    async def _results(self, conn: asyncpg.Connection, run_id: str) -> list[ActionResult]:
        rows = await conn.fetch(
            "SELECT action_id, action_type, success, message, error_kind FROM workflow_run_results WHERE run_id = $1 ORDER BY id",
            run_id,
        )
        return [
            ActionResult(
                action_id=r["action_id"],
                type=r["action_type"],
                success=r["success"],
                message=r["message"],
                error_kind=r["error_kind"],
            )
            for r in rows
        ]

    async def status(self, run_id: str) -> RunStatus | None:
        async with self._connection() as conn:
            exists = await conn.fetchval("SELECT 1 FROM workflow_runs WHERE id = $1", run_id)
            if not exists:
                return None
            results = await self._results(conn, run_id)
            outstanding = await conn.fetchval(
                "SELECT COUNT(*) FROM scheduled_actions WHERE workflow_run_id = $1 AND status IN ('pending', 'running')",
                run_id,
            )
        return derive_run_status(results, int(outstanding))

    async def settle_run(self, run_id: str, now: datetime) -> RunStatus | None:
        status = await self.status(run_id)
        if status is None:
            return None
        async with self._connection() as conn:
            if status == RunStatus.RUNNING:
                await conn.execute(
                    "UPDATE workflow_runs SET status = $1 WHERE id = $2",
                    status.value,
                    run_id,
                )
            else:
                await conn.execute(
                    "UPDATE workflow_runs SET status = $1, completed_at = COALESCE(completed_at, $2) WHERE id = $3",
                    status.value,
                    now,
                    run_id,
                )
        return status

    def _row_to_run(self, row: asyncpg.Record, results: list[ActionResult]) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            trigger_data=_loads(row["trigger_data"]) or {},
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            results=results,
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, workflow_id, trigger_type, trigger_data, status, started_at, completed_at FROM workflow_runs WHERE id = $1",
                run_id,
            )
            if not row:
                return None
            results = await self._results(conn, run_id)
        return self._row_to_run(row, results)

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        async with self._connection() as conn:
            if workflow_id is None:
                rows = await conn.fetch(
                    "SELECT id, workflow_id, trigger_type, trigger_data, status, started_at, completed_at FROM workflow_runs ORDER BY started_at"
                )
            else:
                rows = await conn.fetch(
                    "SELECT id, workflow_id, trigger_type, trigger_data, status, started_at, completed_at FROM workflow_runs WHERE workflow_id = $1 ORDER BY started_at",
                    workflow_id,
                )
            runs = [self._row_to_run(r, await self._results(conn, r["id"])) for r in rows]
        return runs

    # ------------------------------------------------------------------
    # Scheduled action store
    async def enqueue(
        self,
        run_id: str,
        action: Action,
        trigger_data: dict,
        not_before: datetime,
    ) -> str:
        action_id = str(uuid.uuid4())
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO scheduled_actions (id, workflow_run_id, action, trigger_data, scheduled_for, status) VALUES ($1, $2, $3, $4, $5, $6)",
                action_id,
                run_id,
                json.dumps(action.to_wire()),
                json.dumps(trigger_data, default=str),
                not_before,
                ScheduledActionStatus.PENDING.value,
            )
        return action_id

    async def claim_due(
        self, limit: int, now: datetime, lease_seconds: int
    ) -> list[ScheduledAction]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE scheduled_actions
                SET status = 'running', attempts = attempts + 1, lease_expires_at = $1
                WHERE id IN (
                    SELECT id FROM scheduled_actions
                    WHERE (status = 'pending' AND scheduled_for <= $2)
                       OR (status = 'running' AND lease_expires_at <= $2)
                    ORDER BY scheduled_for
                    LIMIT $3
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_SCHEDULED_COLUMNS}
                """,
                now + timedelta(seconds=lease_seconds),
                now,
                limit,
            )
        return [self._row_to_scheduled(r) for r in rows]

    async def mark_running(self, action_id: str, now: datetime, lease_seconds: int) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE scheduled_actions SET status = 'running', lease_expires_at = $1 WHERE id = $2",
                now + timedelta(seconds=lease_seconds),
                action_id,
            )

    async def mark_completed(self, action_id: str, executed_at: datetime) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE scheduled_actions SET status = 'completed', executed_at = $1, lease_expires_at = NULL WHERE id = $2 AND status = 'running'",
                executed_at,
                action_id,
            )

    async def mark_failed(
        self, action_id: str, error_message: str, executed_at: datetime
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE scheduled_actions SET status = 'failed', error_message = $1, executed_at = $2, lease_expires_at = NULL WHERE id = $3 AND status = 'running'",
                error_message,
                executed_at,
                action_id,
            )

    async def get_scheduled_action(self, action_id: str) -> ScheduledAction | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SCHEDULED_COLUMNS} FROM scheduled_actions WHERE id = $1",
                action_id,
            )
        return self._row_to_scheduled(row) if row else None

    async def list_scheduled_actions(
        self, run_id: str | None = None, status: str | None = None
    ) -> list[ScheduledAction]:
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            params.append(run_id)
            clauses.append(f"workflow_run_id = ${len(params)}")
        if status is not None:
            params.append(str(getattr(status, "value", status)))
            clauses.append(f"status = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_SCHEDULED_COLUMNS} FROM scheduled_actions{where} ORDER BY scheduled_for",
                *params,
            )
        return [self._row_to_scheduled(r) for r in rows]

    async def count_outstanding(self, run_id: str) -> int:
        async with self._connection() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM scheduled_actions WHERE workflow_run_id = $1 AND status IN ('pending', 'running')",
                run_id,
            )
        return int(count)

    # ------------------------------------------------------------------
    # Notifications and deals
    async def create_notification(self, notification: Notification) -> str:
        notification_id = str(uuid.uuid4())
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO notifications (id, user_id, deal_id, alert_type, title, message, created_at) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                notification_id,
                notification.user_id,
                notification.deal_id,
                notification.alert_type,
                notification.title,
                notification.message,
                notification.created_at or datetime.now(timezone.utc),
            )
        return notification_id

    async def list_notifications(self, user_id: str | None = None) -> list[Notification]:
        async with self._connection() as conn:
            if user_id is None:
                rows = await conn.fetch(
                    "SELECT id, user_id, deal_id, alert_type, title, message, created_at FROM notifications ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    "SELECT id, user_id, deal_id, alert_type, title, message, created_at FROM notifications WHERE user_id = $1 ORDER BY created_at",
                    user_id,
                )
        return [Notification(**dict(r)) for r in rows]

    async def save_deal(self, deal_id: str, fields: dict[str, Any]) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO deals (id, fields) VALUES ($1, $2) ON CONFLICT (id) DO UPDATE SET fields = EXCLUDED.fields",
                deal_id,
                json.dumps(fields, default=str),
            )

    async def update_deal_field(self, deal_id: str, field: str, value: Any) -> None:
        async with self._connection() as conn:
            result = await conn.execute(
                "UPDATE deals SET fields = jsonb_set(fields, ARRAY[$1::text], $2::jsonb, true) WHERE id = $3",
                field,
                json.dumps(value, default=str),
                deal_id,
            )
        if result.endswith(" 0"):
            raise DealNotFoundError(deal_id)

    async def get_deal(self, deal_id: str) -> dict[str, Any] | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT fields FROM deals WHERE id = $1", deal_id)
        return _loads(row["fields"]) if row else None
