"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from role_orchestrator.models import (
    AgentIdentity,
    AuditLogEntry,
    IdempotencyRecord,
    Task,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryStore:
    """Process-local implementation of every store protocol.

    Claims go through the same select-then-conditional-update sequence as the
    PostgreSQL backend, with only the compare-and-set guarded by the lock, so
    concurrent callers can still lose a race between the two steps.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        # Insertion sequence breaks created_at ties deterministically.
        self._task_seq: dict[str, int] = {}
        self._next_seq = itertools.count()
        self._identities: dict[str, AgentIdentity] = {}
        self._audit: list[AuditLogEntry] = []
        self._idempotency: dict[tuple[str, str], IdempotencyRecord] = {}

    def migrate(self) -> None:
        return None

    # -- tasks ---------------------------------------------------------------

    def insert_task(
        self,
        *,
        role: str,
        input: dict[str, Any],
        priority: int,
        created_by_agent_id: str | None,
    ) -> Task:
        now = self._clock()
        task = Task(
            id=str(uuid4()),
            assigned_to_role=role,
            input=dict(input),
            priority=priority,
            status="QUEUED",
            retry_count=0,
            created_at=now,
            updated_at=now,
            created_by_agent_id=created_by_agent_id,
        )
        with self._lock:
            self._task_seq[task.id] = next(self._next_seq)
            self._tasks[task.id] = task
        return task.model_copy(deep=True)

    def select_next_queued(self, role: str) -> Task | None:
        with self._lock:
            candidates = [
                task
                for task in self._tasks.values()
                if task.assigned_to_role == role and task.status == "QUEUED"
            ]
            if not candidates:
                return None
            candidates.sort(key=lambda t: (t.priority, t.created_at, self._task_seq[t.id]))
            return candidates[0].model_copy(deep=True)

    def mark_running(self, task_id: str) -> Task | None:
        return self._transition(
            task_id,
            allowed_from=("QUEUED",),
            changes=lambda now, _task: {"status": "RUNNING", "started_at": now},
        )

    def mark_done(self, task_id: str, output: dict[str, Any]) -> Task | None:
        return self._transition(
            task_id,
            allowed_from=("RUNNING",),
            changes=lambda now, _task: {
                "status": "DONE",
                "output": dict(output),
                "completed_at": now,
            },
        )

    def mark_failed(self, task_id: str, error: str) -> Task | None:
        return self._transition(
            task_id,
            allowed_from=("RUNNING",),
            changes=lambda now, _task: {
                "status": "FAILED",
                "error": error,
                "completed_at": now,
            },
        )

    def mark_requeued(self, task_id: str, *, max_retries: int) -> Task | None:
        return self._transition(
            task_id,
            allowed_from=("FAILED",),
            guard=lambda task: task.retry_count < max_retries,
            changes=lambda _now, task: {
                "status": "QUEUED",
                "retry_count": task.retry_count + 1,
                "error": None,
                "started_at": None,
                "completed_at": None,
            },
        )

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(
        self,
        *,
        status: str | None,
        role: str | None,
        limit: int,
    ) -> list[Task]:
        with self._lock:
            matches = [
                task
                for task in self._tasks.values()
                if (status is None or task.status == status)
                and (role is None or task.assigned_to_role == role)
            ]
            matches.sort(key=lambda t: (t.created_at, self._task_seq[t.id]), reverse=True)
            return [task.model_copy(deep=True) for task in matches[:limit]]

    def delete_finished_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                task_id
                for task_id, task in self._tasks.items()
                if task.status in ("DONE", "FAILED")
                and task.completed_at is not None
                and task.completed_at < cutoff
            ]
            for task_id in stale:
                del self._tasks[task_id]
                del self._task_seq[task_id]
        return len(stale)

    def _transition(
        self,
        task_id: str,
        *,
        allowed_from: tuple[str, ...],
        changes: Callable[[datetime, Task], dict[str, Any]],
        guard: Callable[[Task], bool] | None = None,
    ) -> Task | None:
        now = self._clock()
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.status not in allowed_from:
                return None
            if guard is not None and not guard(current):
                return None
            update = changes(now, current)
            update["updated_at"] = now
            updated = current.model_copy(update=update, deep=True)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    # -- identities ----------------------------------------------------------

    def insert_identity(
        self,
        *,
        name: str,
        role: str,
        credential_hash: str,
        metadata: dict[str, Any],
    ) -> AgentIdentity:
        now = self._clock()
        identity = AgentIdentity(
            id=str(uuid4()),
            name=name,
            role=role,
            credential_hash=credential_hash,
            is_active=True,
            metadata=dict(metadata),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._identities[identity.id] = identity
        return identity.model_copy(deep=True)

    def get_identity(self, identity_id: str) -> AgentIdentity | None:
        with self._lock:
            identity = self._identities.get(identity_id)
            return identity.model_copy(deep=True) if identity else None

    def list_identities(self, *, active_only: bool = False) -> list[AgentIdentity]:
        with self._lock:
            return [
                identity.model_copy(deep=True)
                for identity in sorted(self._identities.values(), key=lambda i: i.created_at)
                if identity.is_active or not active_only
            ]

    def update_identity(self, identity_id: str, changes: dict[str, Any]) -> AgentIdentity | None:
        with self._lock:
            current = self._identities.get(identity_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={**changes, "updated_at": self._clock()},
                deep=True,
            )
            self._identities[identity_id] = updated
            return updated.model_copy(deep=True)

    # -- audit ---------------------------------------------------------------

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            stored = entry.model_copy(update={"id": len(self._audit) + 1}, deep=True)
            self._audit.append(stored)
            return stored.model_copy(deep=True)

    def query_audit(
        self,
        *,
        agent_id: str | None,
        action: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[AuditLogEntry]:
        with self._lock:
            matches = [
                entry
                for entry in reversed(self._audit)
                if (agent_id is None or entry.agent_id == agent_id)
                and (action is None or entry.action == action)
                and (status is None or entry.status == status)
            ]
            return [entry.model_copy(deep=True) for entry in matches[offset : offset + limit]]

    # -- idempotency ---------------------------------------------------------

    def get_idempotency(self, agent_id: str, key: str) -> IdempotencyRecord | None:
        with self._lock:
            record = self._idempotency.get((agent_id, key))
            return record.model_copy(deep=True) if record else None

    def put_idempotency(self, record: IdempotencyRecord) -> None:
        with self._lock:
            self._idempotency[(record.agent_id, record.key)] = record.model_copy(deep=True)

    def delete_idempotency(self, agent_id: str, key: str) -> None:
        with self._lock:
            self._idempotency.pop((agent_id, key), None)

    def delete_expired_idempotency(self, now: datetime) -> int:
        with self._lock:
            expired = [
                composite
                for composite, record in self._idempotency.items()
                if record.is_expired(now)
            ]
            for composite in expired:
                del self._idempotency[composite]
        return len(expired)
