"""Storage backends and protocols."""

from role_orchestrator.storage.base import (
    AuditStore,
    IdempotencyStore,
    IdentityStore,
    OrchestratorStore,
    TaskStore,
)
from role_orchestrator.storage.memory import InMemoryStore
from role_orchestrator.storage.postgres import PostgresStore

__all__ = [
    "AuditStore",
    "IdempotencyStore",
    "IdentityStore",
    "InMemoryStore",
    "OrchestratorStore",
    "PostgresStore",
    "TaskStore",
]
