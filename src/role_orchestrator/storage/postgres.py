"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from role_orchestrator.errors import StorageUnavailable
from role_orchestrator.models import (
    AgentIdentity,
    AuditLogEntry,
    IdempotencyRecord,
    Task,
)

logger = logging.getLogger(__name__)

_IDENTITY_COLUMNS = {"name", "role", "is_active", "metadata"}


def _parse_uuid(raw: str) -> uuid.UUID | None:
    """Primary keys are UUIDs; anything else cannot match a row."""
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


class PostgresStore:
    """Persist tasks, identities, audit entries, and idempotency records in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("ROLE_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_tasks (
                    id UUID PRIMARY KEY,
                    assigned_to_role TEXT NOT NULL,
                    input JSONB NOT NULL DEFAULT '{}'::jsonb,
                    priority INTEGER NOT NULL DEFAULT 5,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    output JSONB,
                    error TEXT,
                    created_by_agent_id TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    seq BIGSERIAL
                )
                """)
            # Older tables predate seq; existing rows are numbered in scan order.
            conn.execute("ALTER TABLE agent_tasks ADD COLUMN IF NOT EXISTS seq BIGSERIAL")
            # Serves the claim selection: role + status, then priority/creation order.
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_claim_order
                ON agent_tasks(assigned_to_role, status, priority, created_at, seq)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_status
                ON agent_tasks(status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_identities (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    credential_hash TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_audit_logs (
                    id BIGSERIAL PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    target_type TEXT,
                    target_id TEXT,
                    request_body JSONB,
                    result_body JSONB,
                    status TEXT NOT NULL,
                    idempotency_key TEXT,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    timestamp TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_audit_logs_agent_action
                ON agent_audit_logs(agent_id, action)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_audit_logs_timestamp
                ON agent_audit_logs(timestamp DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_idempotency_keys (
                    key TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    result_body JSONB NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (agent_id, key)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_idempotency_expires_at
                ON agent_idempotency_keys(expires_at)
                """)
            conn.commit()

    # -- tasks ---------------------------------------------------------------

    def insert_task(
        self,
        *,
        role: str,
        input: dict[str, Any],
        priority: int,
        created_by_agent_id: str | None,
    ) -> Task:
        now = datetime.now(tz=UTC)
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO agent_tasks (
                    id,
                    assigned_to_role,
                    input,
                    priority,
                    status,
                    retry_count,
                    created_by_agent_id,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, 'QUEUED', 0, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid.uuid4(),
                    role,
                    self._json_wrapper(input),
                    priority,
                    created_by_agent_id,
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise StorageUnavailable("Failed to persist task")
        return self._row_to_task(row)

    def select_next_queued(self, role: str) -> Task | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM agent_tasks
                WHERE assigned_to_role = %s AND status = 'QUEUED'
                ORDER BY priority ASC, created_at ASC, seq ASC
                LIMIT 1
                """,
                (role,),
            ).fetchone()
        return self._row_to_task(row) if row is not None else None

    def mark_running(self, task_id: str) -> Task | None:
        row_id = _parse_uuid(task_id)
        if row_id is None:
            return None
        now = datetime.now(tz=UTC)
        # The status predicate makes this the compare-and-set: a concurrent
        # claimer that already flipped the row leaves zero rows to update.
        return self._update_returning(
            """
            UPDATE agent_tasks
            SET status = 'RUNNING',
                started_at = %s,
                updated_at = %s
            WHERE id = %s AND status = 'QUEUED'
            RETURNING *
            """,
            (now, now, row_id),
        )

    def mark_done(self, task_id: str, output: dict[str, Any]) -> Task | None:
        row_id = _parse_uuid(task_id)
        if row_id is None:
            return None
        now = datetime.now(tz=UTC)
        return self._update_returning(
            """
            UPDATE agent_tasks
            SET status = 'DONE',
                output = %s,
                completed_at = %s,
                updated_at = %s
            WHERE id = %s AND status = 'RUNNING'
            RETURNING *
            """,
            (self._json_wrapper(output), now, now, row_id),
        )

    def mark_failed(self, task_id: str, error: str) -> Task | None:
        row_id = _parse_uuid(task_id)
        if row_id is None:
            return None
        now = datetime.now(tz=UTC)
        return self._update_returning(
            """
            UPDATE agent_tasks
            SET status = 'FAILED',
                error = %s,
                completed_at = %s,
                updated_at = %s
            WHERE id = %s AND status = 'RUNNING'
            RETURNING *
            """,
            (error, now, now, row_id),
        )

    def mark_requeued(self, task_id: str, *, max_retries: int) -> Task | None:
        row_id = _parse_uuid(task_id)
        if row_id is None:
            return None
        now = datetime.now(tz=UTC)
        return self._update_returning(
            """
            UPDATE agent_tasks
            SET status = 'QUEUED',
                retry_count = retry_count + 1,
                error = NULL,
                started_at = NULL,
                completed_at = NULL,
                updated_at = %s
            WHERE id = %s AND status = 'FAILED' AND retry_count < %s
            RETURNING *
            """,
            (now, row_id, max_retries),
        )

    def get_task(self, task_id: str) -> Task | None:
        row_id = _parse_uuid(task_id)
        if row_id is None:
            return None
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM agent_tasks WHERE id = %s",
                (row_id,),
            ).fetchone()
        return self._row_to_task(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: str | None,
        role: str | None,
        limit: int,
    ) -> list[Task]:
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = %s")
            params.append(status)
        if role is not None:
            conditions.append("assigned_to_role = %s")
            params.append(role)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT * FROM agent_tasks {where} ORDER BY created_at DESC, seq DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def delete_finished_before(self, cutoff: datetime) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                """
                DELETE FROM agent_tasks
                WHERE status IN ('DONE', 'FAILED') AND completed_at < %s
                """,
                (cutoff,),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    # -- identities ----------------------------------------------------------

    def insert_identity(
        self,
        *,
        name: str,
        role: str,
        credential_hash: str,
        metadata: dict[str, Any],
    ) -> AgentIdentity:
        now = datetime.now(tz=UTC)
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO agent_identities (
                    id,
                    name,
                    role,
                    credential_hash,
                    is_active,
                    metadata,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, TRUE, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid.uuid4(),
                    name,
                    role,
                    credential_hash,
                    self._json_wrapper(metadata),
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise StorageUnavailable("Failed to persist agent identity")
        return self._row_to_identity(row)

    def get_identity(self, identity_id: str) -> AgentIdentity | None:
        row_id = _parse_uuid(identity_id)
        if row_id is None:
            return None
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM agent_identities WHERE id = %s",
                (row_id,),
            ).fetchone()
        return self._row_to_identity(row) if row is not None else None

    def list_identities(self, *, active_only: bool = False) -> list[AgentIdentity]:
        query = "SELECT * FROM agent_identities"
        if active_only:
            query += " WHERE is_active = TRUE"
        query += " ORDER BY created_at ASC"
        with self._session() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_identity(row) for row in rows]

    def update_identity(self, identity_id: str, changes: dict[str, Any]) -> AgentIdentity | None:
        unknown = set(changes) - _IDENTITY_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported identity fields: {sorted(unknown)}")
        row_id = _parse_uuid(identity_id)
        if row_id is None:
            return None
        assignments: list[str] = []
        params: list[Any] = []
        for column in sorted(changes):
            value = changes[column]
            assignments.append(f"{column} = %s")
            params.append(self._json_wrapper(value) if column == "metadata" else value)
        assignments.append("updated_at = %s")
        params.extend([datetime.now(tz=UTC), row_id])
        return self._update_returning(
            f"""
            UPDATE agent_identities
            SET {", ".join(assignments)}
            WHERE id = %s
            RETURNING *
            """,
            tuple(params),
            mapper=self._row_to_identity,
        )

    # -- audit ---------------------------------------------------------------

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO agent_audit_logs (
                    agent_id,
                    action,
                    target_type,
                    target_id,
                    request_body,
                    result_body,
                    status,
                    idempotency_key,
                    metadata,
                    timestamp
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    entry.agent_id,
                    entry.action,
                    entry.target_type,
                    entry.target_id,
                    self._json_optional(entry.request_body),
                    self._json_optional(entry.result_body),
                    entry.status,
                    entry.idempotency_key,
                    self._json_wrapper(entry.metadata),
                    entry.timestamp,
                ),
            ).fetchone()
            conn.commit()
        if row is None or row.get("id") is None:
            raise StorageUnavailable("Failed to persist audit entry")
        return entry.model_copy(update={"id": int(row["id"])})

    def query_audit(
        self,
        *,
        agent_id: str | None,
        action: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[AuditLogEntry]:
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (("agent_id", agent_id), ("action", action), ("status", status)):
            if value is not None:
                conditions.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM agent_audit_logs
                {where}
                ORDER BY timestamp DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params),
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]

    # -- idempotency ---------------------------------------------------------

    def get_idempotency(self, agent_id: str, key: str) -> IdempotencyRecord | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM agent_idempotency_keys
                WHERE agent_id = %s AND key = %s
                """,
                (agent_id, key),
            ).fetchone()
        if row is None:
            return None
        return IdempotencyRecord(
            key=row["key"],
            agent_id=row["agent_id"],
            result_body=self._parse_json_optional(row["result_body"]) or {},
            expires_at=self._parse_datetime(row["expires_at"]),
            created_at=self._parse_datetime(row["created_at"]),
        )

    def put_idempotency(self, record: IdempotencyRecord) -> None:
        # An expired record may still occupy the key when its delete failed.
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO agent_idempotency_keys (key, agent_id, result_body, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (agent_id, key) DO UPDATE
                SET result_body = EXCLUDED.result_body,
                    expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at
                WHERE agent_idempotency_keys.expires_at <= EXCLUDED.created_at
                """,
                (
                    record.key,
                    record.agent_id,
                    self._json_wrapper(record.result_body),
                    record.expires_at,
                    record.created_at,
                ),
            )
            conn.commit()

    def delete_idempotency(self, agent_id: str, key: str) -> None:
        with self._session() as conn:
            conn.execute(
                "DELETE FROM agent_idempotency_keys WHERE agent_id = %s AND key = %s",
                (agent_id, key),
            )
            conn.commit()

    def delete_expired_idempotency(self, now: datetime) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                "DELETE FROM agent_idempotency_keys WHERE expires_at <= %s",
                (now,),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    # -- plumbing ------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Open a connection and surface driver failures as StorageUnavailable."""
        try:
            with self._lock, self._connect() as conn:
                yield conn
        except self._psycopg.Error as exc:
            logger.error("postgres_store event=driver_error error=%s", type(exc).__name__)
            raise StorageUnavailable("Backing store is unavailable") from exc

    def _update_returning(
        self,
        query: str,
        params: tuple[Any, ...],
        *,
        mapper: Any = None,
    ) -> Any:
        with self._session() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        if row is None:
            return None
        return (mapper or self._row_to_task)(row)

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _json_optional(self, value: dict[str, Any] | None) -> Any:
        return self._json_wrapper(value) if value is not None else None

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _parse_datetime_optional(cls, raw: Any) -> datetime | None:
        return cls._parse_datetime(raw) if raw is not None else None

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        return Task(
            id=str(row["id"]),
            assigned_to_role=row["assigned_to_role"],
            input=cls._parse_json_optional(row["input"]) or {},
            priority=int(row["priority"]),
            status=row["status"],
            retry_count=int(row["retry_count"]),
            output=cls._parse_json_optional(row["output"]),
            error=row["error"],
            created_by_agent_id=row["created_by_agent_id"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
            started_at=cls._parse_datetime_optional(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
        )

    @classmethod
    def _row_to_identity(cls, row: Any) -> AgentIdentity:
        return AgentIdentity(
            id=str(row["id"]),
            name=row["name"],
            role=row["role"],
            credential_hash=row["credential_hash"],
            is_active=bool(row["is_active"]),
            metadata=cls._parse_json_optional(row["metadata"]) or {},
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_audit(cls, row: Any) -> AuditLogEntry:
        return AuditLogEntry(
            id=int(row["id"]),
            agent_id=row["agent_id"],
            action=row["action"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            request_body=cls._parse_json_optional(row["request_body"]),
            result_body=cls._parse_json_optional(row["result_body"]),
            status=row["status"],
            idempotency_key=row["idempotency_key"],
            metadata=cls._parse_json_optional(row["metadata"]) or {},
            timestamp=cls._parse_datetime(row["timestamp"]),
        )
