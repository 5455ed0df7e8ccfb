"""Append-only audit trail for agent actions and task executions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from role_orchestrator.models import AuditLogEntry
from role_orchestrator.storage.base import AuditStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AuditLogger:
    """Writes never raise: an unreachable audit store must not fail the caller."""

    def __init__(
        self,
        store: AuditStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
        default_limit: int = 100,
        max_limit: int = 500,
    ) -> None:
        self.store = store
        self._clock = clock
        self.default_limit = default_limit
        self.max_limit = max(default_limit, max_limit)

    def log_success(
        self,
        agent_id: str,
        action: str,
        *,
        target_type: str | None = None,
        target_id: str | None = None,
        request_body: dict[str, Any] | None = None,
        result_body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        return self._append(
            AuditLogEntry(
                agent_id=agent_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
                request_body=request_body,
                result_body=result_body,
                status="SUCCESS",
                idempotency_key=idempotency_key,
                metadata=metadata or {},
                timestamp=self._clock(),
            )
        )

    def log_failure(
        self,
        agent_id: str,
        action: str,
        error: str,
        *,
        target_type: str | None = None,
        target_id: str | None = None,
        request_body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        return self._append(
            AuditLogEntry(
                agent_id=agent_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
                request_body=request_body,
                result_body={"error": error},
                status="FAIL",
                idempotency_key=idempotency_key,
                metadata=metadata or {},
                timestamp=self._clock(),
            )
        )

    def query(
        self,
        *,
        agent_id: str | None = None,
        action: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """Newest first. Storage errors propagate to the caller."""
        if status is not None and status not in ("SUCCESS", "FAIL"):
            raise ValueError(f"Unknown audit status: {status}")
        bounded = self.default_limit if limit is None else max(1, min(limit, self.max_limit))
        return self.store.query_audit(
            agent_id=agent_id,
            action=action,
            status=status,
            limit=bounded,
            offset=max(0, offset),
        )

    def _append(self, entry: AuditLogEntry) -> AuditLogEntry | None:
        try:
            return self.store.append_audit(entry)
        except Exception:
            logger.exception(
                "audit event=write_failed agent_id=%s action=%s status=%s",
                entry.agent_id,
                entry.action,
                entry.status,
            )
            return None
