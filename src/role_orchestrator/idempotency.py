"""Replay-safe execution of side-effecting actions keyed by (agent, key)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from role_orchestrator.models import IdempotencyRecord, IdempotentResult
from role_orchestrator.storage.base import IdempotencyStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IdempotencyCache:
    """Return the stored result for a repeated key, or run the action once.

    The cache fails open: if the lookup itself cannot reach the store the
    action is executed. Errors from ``action`` propagate and nothing is stored,
    so the caller may retry with the same key.
    """

    def __init__(
        self,
        store: IdempotencyStore,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock

    def handle(
        self,
        agent_id: str,
        key: str | None,
        action: Callable[[], dict[str, Any]],
    ) -> IdempotentResult:
        if not key:
            return IdempotentResult(cached=False, result=action())
        now = self._clock()
        record = self._lookup(agent_id, key)
        if record is not None:
            if not record.is_expired(now):
                logger.info(
                    "idempotency event=replay agent_id=%s key=%s",
                    agent_id,
                    key,
                )
                return IdempotentResult(cached=True, result=record.result_body)
            self._discard(agent_id, key)

        result = action()
        self._remember(agent_id, key, result, now)
        return IdempotentResult(cached=False, result=result)

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_idempotency(self._clock())
        logger.info("idempotency event=purged removed=%d", removed)
        return removed

    def _lookup(self, agent_id: str, key: str) -> IdempotencyRecord | None:
        try:
            return self.store.get_idempotency(agent_id, key)
        except Exception:
            logger.exception(
                "idempotency event=lookup_failed agent_id=%s key=%s",
                agent_id,
                key,
            )
            return None

    def _discard(self, agent_id: str, key: str) -> None:
        try:
            self.store.delete_idempotency(agent_id, key)
        except Exception:
            logger.warning(
                "idempotency event=expired_delete_failed agent_id=%s key=%s",
                agent_id,
                key,
                exc_info=True,
            )

    def _remember(
        self,
        agent_id: str,
        key: str,
        result: dict[str, Any],
        now: datetime,
    ) -> None:
        try:
            record = IdempotencyRecord(
                key=key,
                agent_id=agent_id,
                result_body=result,
                expires_at=now + self.ttl,
                created_at=now,
            )
            self.store.put_idempotency(record)
        except Exception:
            # The action already ran; a replay will execute again.
            logger.exception(
                "idempotency event=store_failed agent_id=%s key=%s",
                agent_id,
                key,
            )
