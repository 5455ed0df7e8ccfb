"""Task outcome summaries, critical alerts, and the daily digest.

The ring buffer is process-local and advisory: it is lost on restart and is
not a compliance record. The audit log is the authoritative history.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter, deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib import error, request

from role_orchestrator.models import FINANCE_ROLE, DailyDigest, TaskSummary

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

CRITICAL_KEYWORDS = (
    "payment",
    "refund",
    "urgent",
    "critical",
    "down",
    "broken",
    "error",
    "failed",
    "security",
    "breach",
)
ALERT_INPUT_FIELDS = ("email", "subject", "message", "amount", "userId")
DIGEST_WINDOW = timedelta(hours=24)


class NotificationChannel(Protocol):
    def send(self, destination: str, text: str) -> bool: ...


class TelegramChannel:
    """Bot API ``sendMessage`` over urllib. Never raises; failures return ``False``."""

    def __init__(
        self,
        *,
        bot_token: str,
        timeout_s: float = 5.0,
        base_url: str = TELEGRAM_API_BASE,
    ) -> None:
        self.bot_token = bot_token
        self.timeout_s = timeout_s
        self.base_url = base_url.rstrip("/")

    def send(self, destination: str, text: str) -> bool:
        if not self.bot_token:
            logger.warning("telegram event=not_configured destination=%s text=%r", destination, text)
            return False

        req = request.Request(
            url=f"{self.base_url}/bot{self.bot_token}/sendMessage",
            data=json.dumps({"chat_id": destination, "text": text}).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = json.loads(response.read().decode("utf-8"))
        except (TimeoutError, ValueError, error.URLError) as exc:
            logger.error("telegram event=send_failed destination=%s reason=%s", destination, exc)
            return False

        if not body.get("ok"):
            logger.error(
                "telegram event=api_error destination=%s description=%s",
                destination,
                body.get("description"),
            )
            return False
        logger.info("telegram event=sent destination=%s", destination)
        return True


def _utcnow() -> datetime:
    return datetime.now(UTC)


def is_critical(role: str, success: bool, input: dict[str, Any], error: str | None = None) -> bool:
    haystack = json.dumps(input, default=str).lower() + (error or "").lower()
    if any(keyword in haystack for keyword in CRITICAL_KEYWORDS):
        return True
    return role == FINANCE_ROLE and not success


def format_critical_alert(summary: TaskSummary, input: dict[str, Any]) -> str:
    lines = [
        "CRITICAL ALERT",
        "",
        f"Agent: {summary.role}",
        f"Action: {summary.action}",
        f"Status: {summary.status.upper()}",
        f"Time: {summary.timestamp.isoformat()}",
    ]
    if summary.error:
        lines.extend(["", f"Error: {summary.error}"])
    # Only whitelisted fields leave the process.
    details = ", ".join(f"{field}: {input[field]}" for field in ALERT_INPUT_FIELDS if input.get(field))
    if details:
        lines.extend(["", f"Details: {details}"])
    lines.extend(["", f"Task ID: {summary.task_id}"])
    return "\n".join(lines)


class AdminNotifier:
    def __init__(
        self,
        channel: NotificationChannel | None,
        admin_destination: str | None = None,
        *,
        capacity: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.channel = channel
        self.admin_destination = admin_destination or None
        self._clock = clock
        self._lock = threading.Lock()
        # Newest first; appendleft evicts the oldest entry at capacity.
        self._recent: deque[TaskSummary] = deque(maxlen=capacity)

    def report_task(
        self,
        task_id: str,
        role: str,
        action: str,
        success: bool,
        input: dict[str, Any],
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> TaskSummary:
        summary = TaskSummary(
            task_id=task_id,
            role=role,
            action=action,
            status="success" if success else "failed",
            timestamp=self._clock(),
            error=error,
            is_critical=is_critical(role, success, input, error),
        )
        with self._lock:
            self._recent.appendleft(summary)

        logger.info(
            "notifier event=task_reported task_id=%s role=%s action=%s status=%s critical=%s",
            task_id,
            role,
            action,
            summary.status,
            summary.is_critical,
        )
        if summary.is_critical and self.admin_destination:
            self._send(format_critical_alert(summary, input))
        return summary

    def generate_daily_summary(self, now: datetime | None = None) -> DailyDigest:
        window_end = now or self._clock()
        window_start = window_end - DIGEST_WINDOW
        with self._lock:
            entries = [entry for entry in self._recent if entry.timestamp >= window_start]
        return DailyDigest(
            window_start=window_start,
            window_end=window_end,
            total=len(entries),
            by_status=dict(Counter(entry.status for entry in entries)),
            by_role=dict(Counter(entry.role for entry in entries)),
            critical=sum(1 for entry in entries if entry.is_critical),
        )

    def render_daily_summary(self, now: datetime | None = None) -> str:
        digest = self.generate_daily_summary(now)
        if digest.total == 0:
            return "Daily Agent Report\n\nNo tasks processed in the last 24 hours."
        lines = [
            "Daily Agent Report",
            "",
            f"Total Tasks: {digest.total}",
            f"Successful: {digest.by_status.get('success', 0)}",
            f"Failed: {digest.by_status.get('failed', 0)}",
            f"Critical: {digest.critical}",
            "",
            "By Agent:",
        ]
        for role, count in sorted(digest.by_role.items(), key=lambda item: (-item[1], item[0])):
            lines.append(f"- {role}: {count} tasks")
        return "\n".join(lines)

    def send_daily_summary(self) -> bool:
        if not self.admin_destination:
            logger.info("notifier event=daily_summary_skipped reason=no_destination")
            return False
        return self._send(self.render_daily_summary())

    def recent_tasks(self, limit: int = 50) -> list[TaskSummary]:
        with self._lock:
            return list(self._recent)[: max(0, limit)]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._recent)
        return {
            "total": len(entries),
            "success": sum(1 for entry in entries if entry.status == "success"),
            "failed": sum(1 for entry in entries if entry.status == "failed"),
            "critical": sum(1 for entry in entries if entry.is_critical),
            "by_role": dict(Counter(entry.role for entry in entries)),
        }

    def _send(self, text: str) -> bool:
        if self.channel is None or not self.admin_destination:
            return False
        try:
            return bool(self.channel.send(self.admin_destination, text))
        except Exception:
            logger.exception("notifier event=send_failed destination=%s", self.admin_destination)
            return False
