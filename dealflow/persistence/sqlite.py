"""SQLite implementation of the automation repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

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


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so text comparison matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class SQLiteRepository(AutomationRepository):
    """Persist engine state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_config TEXT NOT NULL,
                actions TEXT NOT NULL,
                is_active INTEGER NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_type TEXT,
                trigger_data TEXT,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_run_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                action_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                success INTEGER NOT NULL,
                message TEXT NOT NULL,
                error_kind TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_actions (
                id TEXT PRIMARY KEY,
                workflow_run_id TEXT NOT NULL,
                action TEXT NOT NULL,
                trigger_data TEXT NOT NULL,
                scheduled_for TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                lease_expires_at TEXT,
                executed_at TEXT,
                error_message TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_scheduled_due ON scheduled_actions (status, scheduled_for)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                deal_id TEXT NOT NULL,
                alert_type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS deals (
                id TEXT PRIMARY KEY,
                fields TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(str(exc)) from exc
            return cur.rowcount

    def _execute_returning(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
                rows = cur.fetchall()
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(str(exc)) from exc
            return rows

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            name=row["name"],
            trigger_type=row["trigger_type"],
            trigger_config=json.loads(row["trigger_config"]),
            actions=json.loads(row["actions"]),
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_scheduled(row: sqlite3.Row) -> ScheduledAction:
        return ScheduledAction(
            id=row["id"],
            workflow_run_id=row["workflow_run_id"],
            action=ACTION_ADAPTER.validate_json(row["action"]),
            trigger_data=json.loads(row["trigger_data"]),
            scheduled_for=_parse_ts(row["scheduled_for"]),
            status=row["status"],
            attempts=row["attempts"],
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
            executed_at=_parse_ts(row["executed_at"]),
            error_message=row["error_message"],
            created_at=_parse_ts(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Workflow catalog
    async def save_workflow(self, workflow: Workflow) -> None:
        wire = workflow.to_wire()
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, name, trigger_type, trigger_config, actions, is_active) VALUES (?, ?, ?, ?, ?, ?)",
            workflow.id,
            workflow.name,
            wire["triggerType"],
            json.dumps(wire["triggerConfig"]),
            json.dumps(wire["actions"]),
            int(workflow.is_active),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, name, trigger_type, trigger_config, actions, is_active FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, name, trigger_type, trigger_config, actions, is_active FROM workflows ORDER BY id",
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
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_runs (id, workflow_id, trigger_type, trigger_data, status, started_at) VALUES (?, ?, ?, ?, ?, ?)",
            run_id,
            workflow_id,
            trigger_type,
            json.dumps(trigger_data or {}, default=str),
            RunStatus.RUNNING.value,
            _ts(started_at),
        )
        return run_id

    async def append_result(self, run_id: str, result: ActionResult) -> None:
        exists = await asyncio.to_thread(
            self._fetchone, "SELECT 1 FROM workflow_runs WHERE id = ?", run_id
        )
        if not exists:
            raise StoreError(f"Workflow run {run_id} not found")
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_run_results (run_id, action_id, action_type, success, message, error_kind) VALUES (?, ?, ?, ?, ?, ?)",
            run_id,
            result.action_id,
            result.type.value,
            int(result.success),
            result.message,
            result.error_kind,
        )

    async def _results(self, run_id: str) -> list[ActionResult]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT action_id, action_type, success, message, error_kind FROM workflow_run_results WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [
            ActionResult(
                action_id=r["action_id"],
                type=r["action_type"],
                success=bool(r["success"]),
                message=r["message"],
                error_kind=r["error_kind"],
            )
            for r in rows
        ]

    async def status(self, run_id: str) -> RunStatus | None:
        exists = await asyncio.to_thread(
            self._fetchone, "SELECT 1 FROM workflow_runs WHERE id = ?", run_id
        )
        if not exists:
            return None
        results = await self._results(run_id)
        return derive_run_status(results, await self.count_outstanding(run_id))

    async def settle_run(self, run_id: str, now: datetime) -> RunStatus | None:
        status = await self.status(run_id)
        if status is None:
            return None
        if status == RunStatus.RUNNING:
            await asyncio.to_thread(
                self._execute,
                "UPDATE workflow_runs SET status = ? WHERE id = ?",
                status.value,
                run_id,
            )
        else:
            await asyncio.to_thread(
                self._execute,
                "UPDATE workflow_runs SET status = ?, completed_at = COALESCE(completed_at, ?) WHERE id = ?",
                status.value,
                _ts(now),
                run_id,
            )
        return status

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, workflow_id, trigger_type, trigger_data, status, started_at, completed_at FROM workflow_runs WHERE id = ?",
            run_id,
        )
        if not row:
            return None
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            trigger_data=json.loads(row["trigger_data"]) if row["trigger_data"] else {},
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            results=await self._results(run_id),
        )

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        if workflow_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT id FROM workflow_runs ORDER BY started_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT id FROM workflow_runs WHERE workflow_id = ? ORDER BY started_at",
                workflow_id,
            )
        runs: list[WorkflowRun] = []
        for row in rows:
            run = await self.get_run(row["id"])
            if run is not None:
                runs.append(run)
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
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO scheduled_actions (id, workflow_run_id, action, trigger_data, scheduled_for, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            action_id,
            run_id,
            json.dumps(action.to_wire()),
            json.dumps(trigger_data, default=str),
            _ts(not_before),
            ScheduledActionStatus.PENDING.value,
            _ts(datetime.now(timezone.utc)),
        )
        return action_id

    async def claim_due(
        self, limit: int, now: datetime, lease_seconds: int
    ) -> list[ScheduledAction]:
        rows = await asyncio.to_thread(
            self._execute_returning,
            f"""
            UPDATE scheduled_actions
            SET status = 'running', attempts = attempts + 1, lease_expires_at = ?
            WHERE id IN (
                SELECT id FROM scheduled_actions
                WHERE (status = 'pending' AND scheduled_for <= ?)
                   OR (status = 'running' AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?)
                ORDER BY scheduled_for
                LIMIT ?
            )
            RETURNING {_SCHEDULED_COLUMNS}
            """,
            _ts(now + timedelta(seconds=lease_seconds)),
            _ts(now),
            _ts(now),
            limit,
        )
        return [self._row_to_scheduled(r) for r in rows]

    async def mark_running(self, action_id: str, now: datetime, lease_seconds: int) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE scheduled_actions SET status = 'running', lease_expires_at = ? WHERE id = ?",
            _ts(now + timedelta(seconds=lease_seconds)),
            action_id,
        )

    async def mark_completed(self, action_id: str, executed_at: datetime) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE scheduled_actions SET status = 'completed', executed_at = ?, lease_expires_at = NULL WHERE id = ? AND status = 'running'",
            _ts(executed_at),
            action_id,
        )

    async def mark_failed(
        self, action_id: str, error_message: str, executed_at: datetime
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE scheduled_actions SET status = 'failed', error_message = ?, executed_at = ?, lease_expires_at = NULL WHERE id = ? AND status = 'running'",
            error_message,
            _ts(executed_at),
            action_id,
        )

    async def get_scheduled_action(self, action_id: str) -> ScheduledAction | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_SCHEDULED_COLUMNS} FROM scheduled_actions WHERE id = ?",
            action_id,
        )
        return self._row_to_scheduled(row) if row else None

    async def list_scheduled_actions(
        self, run_id: str | None = None, status: str | None = None
    ) -> list[ScheduledAction]:
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            clauses.append("workflow_run_id = ?")
            params.append(run_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(getattr(status, "value", status)))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_SCHEDULED_COLUMNS} FROM scheduled_actions{where} ORDER BY scheduled_for",
            *params,
        )
        return [self._row_to_scheduled(r) for r in rows]

    async def count_outstanding(self, run_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(*) AS n FROM scheduled_actions WHERE workflow_run_id = ? AND status IN ('pending', 'running')",
            run_id,
        )
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Notifications and deals
    async def create_notification(self, notification: Notification) -> str:
        notification_id = str(uuid.uuid4())
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO notifications (id, user_id, deal_id, alert_type, title, message, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            notification_id,
            notification.user_id,
            notification.deal_id,
            notification.alert_type,
            notification.title,
            notification.message,
            _ts(notification.created_at or datetime.now(timezone.utc)),
        )
        return notification_id

    async def list_notifications(self, user_id: str | None = None) -> list[Notification]:
        query = "SELECT id, user_id, deal_id, alert_type, title, message, created_at FROM notifications"
        params: tuple[Any, ...] = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY created_at", *params)
        return [
            Notification(
                id=r["id"],
                user_id=r["user_id"],
                deal_id=r["deal_id"],
                alert_type=r["alert_type"],
                title=r["title"],
                message=r["message"],
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    async def save_deal(self, deal_id: str, fields: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO deals (id, fields) VALUES (?, ?)",
            deal_id,
            json.dumps(fields, default=str),
        )

    async def update_deal_field(self, deal_id: str, field: str, value: Any) -> None:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE deals SET fields = json_set(fields, ?, json(?)) WHERE id = ?",
            f'$."{field}"',
            json.dumps(value, default=str),
            deal_id,
        )
        if updated == 0:
            raise DealNotFoundError(deal_id)

    async def get_deal(self, deal_id: str) -> dict[str, Any] | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT fields FROM deals WHERE id = ?", deal_id
        )
        return json.loads(row["fields"]) if row else None
