"""Storage interfaces for tasks, identities, audit entries, and idempotency records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from role_orchestrator.models import (
    AgentIdentity,
    AuditLogEntry,
    IdempotencyRecord,
    Task,
)


class TaskStore(Protocol):
    def insert_task(
        self,
        *,
        role: str,
        input: dict[str, Any],
        priority: int,
        created_by_agent_id: str | None,
    ) -> Task: ...

    def select_next_queued(self, role: str) -> Task | None: ...

    def mark_running(self, task_id: str) -> Task | None:
        """Conditional QUEUED -> RUNNING; ``None`` when another caller won."""
        ...

    def mark_done(self, task_id: str, output: dict[str, Any]) -> Task | None: ...

    def mark_failed(self, task_id: str, error: str) -> Task | None: ...

    def mark_requeued(self, task_id: str, *, max_retries: int) -> Task | None: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(
        self,
        *,
        status: str | None,
        role: str | None,
        limit: int,
    ) -> list[Task]: ...

    def delete_finished_before(self, cutoff: datetime) -> int: ...


class IdentityStore(Protocol):
    def insert_identity(
        self,
        *,
        name: str,
        role: str,
        credential_hash: str,
        metadata: dict[str, Any],
    ) -> AgentIdentity: ...

    def get_identity(self, identity_id: str) -> AgentIdentity | None: ...

    def list_identities(self, *, active_only: bool = False) -> list[AgentIdentity]: ...

    def update_identity(self, identity_id: str, changes: dict[str, Any]) -> AgentIdentity | None: ...


class AuditStore(Protocol):
    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def query_audit(
        self,
        *,
        agent_id: str | None,
        action: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[AuditLogEntry]: ...


class IdempotencyStore(Protocol):
    def get_idempotency(self, agent_id: str, key: str) -> IdempotencyRecord | None: ...

    def put_idempotency(self, record: IdempotencyRecord) -> None: ...

    def delete_idempotency(self, agent_id: str, key: str) -> None: ...

    def delete_expired_idempotency(self, now: datetime) -> int: ...


class OrchestratorStore(TaskStore, IdentityStore, AuditStore, IdempotencyStore, Protocol):
    def migrate(self) -> None: ...
