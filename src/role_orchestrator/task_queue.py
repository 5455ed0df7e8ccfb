"""Persistent per-role work queue with an atomic claim.

The queue is payload-agnostic: ``input`` is stored as given and validated
only by the executor that eventually runs it. Store failures propagate to the
caller as ``StorageUnavailable``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from role_orchestrator.models import TASK_ROLES, TASK_STATUSES, Task
from role_orchestrator.storage.base import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
MAX_TASK_RETRIES = 3


class TaskQueue:
    def __init__(
        self,
        store: TaskStore,
        *,
        max_retries: int = MAX_TASK_RETRIES,
        claim_attempts: int = 3,
        query_limit: int = 100,
        max_query_limit: int = 500,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.claim_attempts = max(1, claim_attempts)
        self.query_limit = query_limit
        self.max_query_limit = max(query_limit, max_query_limit)

    def enqueue(
        self,
        role: str,
        input: dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
        created_by: str | None = None,
    ) -> Task:
        _require_role(role)
        task = self.store.insert_task(
            role=role,
            input=input,
            priority=priority,
            created_by_agent_id=created_by,
        )
        logger.info(
            "task_queue event=enqueued task_id=%s role=%s priority=%s",
            task.id,
            role,
            priority,
        )
        return task

    def claim_next(self, role: str) -> Task | None:
        """Move the most urgent QUEUED task for ``role`` to RUNNING.

        Selection orders by priority then creation time. The transition is a
        conditional update on ``status='QUEUED'``; losing that race to another
        worker means re-selecting, up to ``claim_attempts`` times, before
        reporting an empty queue for this tick.
        """
        _require_role(role)
        for attempt in range(self.claim_attempts):
            candidate = self.store.select_next_queued(role)
            if candidate is None:
                return None
            claimed = self.store.mark_running(candidate.id)
            if claimed is not None:
                logger.info(
                    "task_queue event=claimed task_id=%s role=%s attempt=%d",
                    claimed.id,
                    role,
                    attempt + 1,
                )
                return claimed
            logger.debug(
                "task_queue event=claim_race_lost task_id=%s role=%s attempt=%d",
                candidate.id,
                role,
                attempt + 1,
            )
        return None

    def complete(self, task_id: str, output: dict[str, Any]) -> Task | None:
        task = self.store.mark_done(task_id, output)
        if task is None:
            logger.warning("task_queue event=complete_ignored task_id=%s", task_id)
        return task

    def fail(self, task_id: str, error: str) -> Task | None:
        task = self.store.mark_failed(task_id, error)
        if task is None:
            logger.warning("task_queue event=fail_ignored task_id=%s", task_id)
        return task

    def requeue(self, task_id: str) -> Task | None:
        """FAILED -> QUEUED with ``retry_count + 1``; refused at the retry ceiling."""
        task = self.store.mark_requeued(task_id, max_retries=self.max_retries)
        if task is None:
            current = self.store.get_task(task_id)
            if current is not None and current.retry_count >= self.max_retries:
                logger.warning(
                    "task_queue event=requeue_refused task_id=%s retry_count=%d max_retries=%d",
                    task_id,
                    current.retry_count,
                    self.max_retries,
                )
            return None
        logger.info(
            "task_queue event=requeued task_id=%s retry_count=%d",
            task.id,
            task.retry_count,
        )
        return task

    def get_by_status(self, status: str, role: str | None = None, limit: int | None = None) -> list[Task]:
        return self.list_tasks(status=status, role=role, limit=limit)

    def get_by_id(self, task_id: str) -> Task | None:
        return self.store.get_task(task_id)

    def list_tasks(
        self,
        *,
        status: str | None = None,
        role: str | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        if status is not None and status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        if role is not None:
            _require_role(role)
        bounded = self.query_limit if limit is None else max(1, min(limit, self.max_query_limit))
        return self.store.list_tasks(status=status, role=role, limit=bounded)

    def cleanup_finished(self, older_than_days: int = 30) -> int:
        """Delete DONE/FAILED tasks completed before the cutoff. Never called by the runner."""
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        removed = self.store.delete_finished_before(cutoff)
        logger.info(
            "task_queue event=cleanup removed=%d cutoff=%s",
            removed,
            cutoff.isoformat(),
        )
        return removed


def _require_role(role: str) -> None:
    if role not in TASK_ROLES:
        raise ValueError(f"Unknown task role: {role}")
