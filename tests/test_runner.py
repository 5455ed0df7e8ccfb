from __future__ import annotations

import threading
from typing import Any

from role_orchestrator.audit import AuditLogger
from role_orchestrator.errors import StorageUnavailable
from role_orchestrator.executors import build_executor_registry
from role_orchestrator.models import TASK_ROLES, AuditLogEntry, ExecutionResult, Task
from role_orchestrator.notifier import AdminNotifier
from role_orchestrator.runner import BackgroundRunner, TaskRunner
from role_orchestrator.storage import InMemoryStore
from role_orchestrator.task_queue import TaskQueue

from conftest import ADMIN_CHAT, RecordingChannel


class EchoExecutor:
    def __init__(self, role: str) -> None:
        self.role = role
        self.calls: list[dict[str, Any]] = []

    def execute(self, input: dict[str, Any]) -> ExecutionResult:
        self.calls.append(input)
        return ExecutionResult.ok(echo=input.get("action"))


class RaisingExecutor:
    role = "PRICING"

    def execute(self, input: dict[str, Any]) -> ExecutionResult:
        raise RuntimeError("pricing backend exploded")


def _echo_registry() -> dict[str, EchoExecutor]:
    return {role: EchoExecutor(role) for role in TASK_ROLES}


def test_tick_processes_one_task_per_role(
    queue: TaskQueue, audit: AuditLogger, notifier: AdminNotifier
) -> None:
    for role in TASK_ROLES:
        queue.enqueue(role, {"action": "noop"})
        queue.enqueue(role, {"action": "noop"})
    executors = _echo_registry()
    runner = TaskRunner(queue, executors, audit, notifier)

    summary = runner.run_single_tick()

    assert summary.tasks_processed == 7
    assert summary.tasks_succeeded == 7
    assert sorted(outcome.role for outcome in summary.details) == sorted(TASK_ROLES)
    assert all(len(executor.calls) == 1 for executor in executors.values())
    assert len(queue.get_by_status("QUEUED")) == 7
    assert len(queue.get_by_status("DONE")) == 7
    assert summary.finished_at is not None


def test_tick_with_default_executors_completes_planned_refund(
    queue: TaskQueue, audit: AuditLogger, notifier: AdminNotifier, channel: RecordingChannel
) -> None:
    task = queue.enqueue("FINANCE", {"action": "process_refund", "bookingId": 7, "amount": 50}, priority=1)
    runner = TaskRunner(queue, build_executor_registry(), audit, notifier)

    summary = runner.run_single_tick()

    assert summary.tasks_succeeded == 1
    done = queue.get_by_id(task.id)
    assert done.status == "DONE"
    assert done.output["status"] == "mock"
    # "refund" in the input makes the outcome critical.
    assert len(channel.sent) == 1


def test_missing_executor_fails_task_without_retry(
    queue: TaskQueue, audit: AuditLogger, notifier: AdminNotifier
) -> None:
    task = queue.enqueue("CALENDAR_SYNC", {"action": "sync_calendar", "calendarSourceId": 3})
    registry = build_executor_registry({"CALENDAR_SYNC": None})
    runner = TaskRunner(queue, registry, audit, notifier)

    summary = runner.run_single_tick()

    failed = queue.get_by_id(task.id)
    assert failed.status == "FAILED"
    assert "no executor" in failed.error
    assert failed.retry_count == 0
    assert summary.tasks_failed == 1
    assert queue.get_by_status("QUEUED") == []


def test_executor_exception_is_recorded_as_failure(
    queue: TaskQueue, audit: AuditLogger, notifier: AdminNotifier
) -> None:
    task = queue.enqueue("PRICING", {"action": "update_price"})
    runner = TaskRunner(queue, {"PRICING": RaisingExecutor()}, audit, notifier)

    summary = runner.run_single_tick()

    failed = queue.get_by_id(task.id)
    assert failed.status == "FAILED"
    assert failed.error == "pricing backend exploded"
    assert summary.details[0].status == "failed"


def test_outcomes_are_audited_under_runner_identity(
    queue: TaskQueue, audit: AuditLogger, notifier: AdminNotifier
) -> None:
    ok = queue.enqueue("SUPPORT", {"action": "create_ticket", "subject": "Wifi", "message": "Slow"})
    bad = queue.enqueue("MARKETING", {"action": "create_campaign"})
    runner = TaskRunner(queue, build_executor_registry(), audit, notifier)

    runner.run_single_tick()

    entries = {entry.target_id: entry for entry in audit.query(agent_id="task-runner")}
    assert entries[ok.id].status == "SUCCESS"
    assert entries[ok.id].action == "task:support"
    assert entries[bad.id].status == "FAIL"
    assert entries[bad.id].action == "task:marketing"
    assert "error" in entries[bad.id].result_body


def test_claim_failure_skips_only_that_role(audit: AuditLogger, notifier: AdminNotifier) -> None:
    class FlakyStore(InMemoryStore):
        def select_next_queued(self, role: str) -> Task | None:
            if role == "BOOKING_MANAGER":
                raise StorageUnavailable("partition offline")
            return super().select_next_queued(role)

    queue = TaskQueue(FlakyStore())
    queue.enqueue("BOOKING_MANAGER", {"action": "noop"})
    queue.enqueue("SUPPORT", {"action": "noop"})
    runner = TaskRunner(queue, _echo_registry(), audit, notifier)

    summary = runner.run_single_tick()

    assert summary.skipped_roles == ["BOOKING_MANAGER"]
    assert summary.tasks_processed == 1
    assert summary.details[0].role == "SUPPORT"


def test_audit_and_notifier_failures_do_not_abort_tick(queue: TaskQueue) -> None:
    class BrokenAuditStore(InMemoryStore):
        def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
            raise StorageUnavailable("audit table locked")

    class ExplodingNotifier:
        def report_task(self, *args: Any, **kwargs: Any) -> None:
            raise RuntimeError("notifier crashed")

    queue.enqueue("SUPPORT", {"action": "noop"})
    queue.enqueue("FINANCE", {"action": "noop"})
    runner = TaskRunner(queue, _echo_registry(), AuditLogger(BrokenAuditStore()), ExplodingNotifier())

    summary = runner.run_single_tick()

    assert summary.tasks_succeeded == 2
    assert len(queue.get_by_status("DONE")) == 2


def test_try_tick_skips_when_a_tick_is_running(
    queue: TaskQueue, audit: AuditLogger, notifier: AdminNotifier
) -> None:
    entered = threading.Event()
    release = threading.Event()

    class BlockingExecutor:
        role = "SUPPORT"

        def execute(self, input: dict[str, Any]) -> ExecutionResult:
            entered.set()
            release.wait(timeout=5)
            return ExecutionResult.ok()

    queue.enqueue("SUPPORT", {"action": "noop"})
    runner = TaskRunner(queue, {"SUPPORT": BlockingExecutor()}, audit, notifier)
    results: list[Any] = []
    worker = threading.Thread(target=lambda: results.append(runner.try_tick()))
    worker.start()
    assert entered.wait(timeout=5)

    assert runner.try_tick() is None

    release.set()
    worker.join(timeout=5)
    assert results[0].tasks_processed == 1


def test_runner_never_requeues_failed_tasks(
    queue: TaskQueue, audit: AuditLogger, notifier: AdminNotifier
) -> None:
    task = queue.enqueue("PRICING", {"action": "update_price"})
    runner = TaskRunner(queue, {"PRICING": RaisingExecutor()}, audit, notifier)

    runner.run_single_tick()
    second = runner.run_single_tick()

    assert second.tasks_processed == 0
    assert queue.get_by_id(task.id).status == "FAILED"


def test_background_runner_ticks_until_stopped(audit: AuditLogger) -> None:
    store = InMemoryStore()
    queue = TaskQueue(store)
    queue.enqueue("SUPPORT", {"action": "noop"})
    notifier = AdminNotifier(RecordingChannel(), ADMIN_CHAT)
    runner = TaskRunner(queue, _echo_registry(), audit, notifier)
    background = BackgroundRunner(runner, interval_s=0.01)

    background.start()
    try:
        for _ in range(200):
            if queue.get_by_status("DONE"):
                break
            threading.Event().wait(0.01)
    finally:
        background.stop()

    assert not background.running
    assert len(queue.get_by_status("DONE")) == 1
