"""Tick-based dispatcher: at most one task per role per tick."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime

from role_orchestrator.audit import AuditLogger
from role_orchestrator.executors import RoleExecutor
from role_orchestrator.models import TASK_ROLES, ExecutionResult, Task, TaskOutcome, TickSummary
from role_orchestrator.notifier import AdminNotifier
from role_orchestrator.task_queue import TaskQueue

logger = logging.getLogger(__name__)

RUNNER_AGENT_ID = "task-runner"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskRunner:
    """Claim, execute, persist, audit, and report one task per role.

    Roles are visited sequentially in ``roles`` order. A storage failure while
    claiming skips that role for the tick; audit and notifier failures are
    logged and never abort the cycle. The runner never requeues.
    """

    def __init__(
        self,
        queue: TaskQueue,
        executors: Mapping[str, RoleExecutor],
        audit: AuditLogger,
        notifier: AdminNotifier,
        *,
        roles: Sequence[str] = TASK_ROLES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.queue = queue
        self.executors = dict(executors)
        self.audit = audit
        self.notifier = notifier
        self.roles = tuple(roles)
        self._clock = clock
        self._tick_lock = threading.Lock()

    def try_tick(self) -> TickSummary | None:
        """Run a tick unless one is already in progress; ``None`` means skipped."""
        if not self._tick_lock.acquire(blocking=False):
            logger.info("task_runner event=tick_skipped reason=in_progress")
            return None
        try:
            return self.run_single_tick()
        finally:
            self._tick_lock.release()

    def run_single_tick(self) -> TickSummary:
        summary = TickSummary(started_at=self._clock())
        for role in self.roles:
            try:
                task = self.queue.claim_next(role)
            except Exception as exc:  # noqa: BLE001
                logger.error("task_runner event=claim_failed role=%s error=%s", role, exc)
                summary.skipped_roles.append(role)
                continue
            if task is None:
                continue
            outcome = self._process(task)
            if outcome is not None:
                summary.record(outcome)

        summary.finished_at = self._clock()
        if summary.tasks_processed:
            logger.info(
                "task_runner event=tick_done processed=%d succeeded=%d failed=%d skipped_roles=%s",
                summary.tasks_processed,
                summary.tasks_succeeded,
                summary.tasks_failed,
                ",".join(summary.skipped_roles) or "-",
            )
        return summary

    def _process(self, task: Task) -> TaskOutcome | None:
        role = task.assigned_to_role
        executor = self.executors.get(role)
        if executor is None:
            error = f"no executor registered for role {role}"
            logger.error("task_runner event=configuration_error task_id=%s role=%s", task.id, role)
            result = ExecutionResult.failed(error)
        else:
            result = self._execute(executor, task)

        try:
            if result.success:
                self.queue.complete(task.id, result.data or {})
            else:
                self.queue.fail(task.id, result.error or "executor reported failure")
        except Exception as exc:  # noqa: BLE001
            # The task stays RUNNING; it is left for an operator to inspect.
            logger.error(
                "task_runner event=persist_failed task_id=%s role=%s error=%s",
                task.id,
                role,
                exc,
            )
            return None

        status = "success" if result.success else "failed"
        if result.success:
            logger.info("task_runner event=task_done task_id=%s role=%s action=%s", task.id, role, task.action)
        else:
            logger.warning(
                "task_runner event=task_failed task_id=%s role=%s action=%s error=%s",
                task.id,
                role,
                task.action,
                result.error,
            )
        self._audit(task, result)
        self._report(task, result)
        return TaskOutcome(task_id=task.id, role=role, status=status, error=result.error)

    @staticmethod
    def _execute(executor: RoleExecutor, task: Task) -> ExecutionResult:
        try:
            result = executor.execute(dict(task.input))
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_runner event=executor_raised task_id=%s", task.id)
            return ExecutionResult.failed(str(exc) or type(exc).__name__)
        if not isinstance(result, ExecutionResult):
            return ExecutionResult.failed(f"executor returned {type(result).__name__}, expected ExecutionResult")
        return result

    def _audit(self, task: Task, result: ExecutionResult) -> None:
        action = f"task:{task.assigned_to_role.lower()}"
        try:
            if result.success:
                self.audit.log_success(
                    RUNNER_AGENT_ID,
                    action,
                    target_type="task",
                    target_id=task.id,
                    request_body=task.input,
                    result_body=result.data or {},
                )
            else:
                self.audit.log_failure(
                    RUNNER_AGENT_ID,
                    action,
                    result.error or "executor reported failure",
                    target_type="task",
                    target_id=task.id,
                    request_body=task.input,
                )
        except Exception:
            logger.exception("task_runner event=audit_failed task_id=%s", task.id)

    def _report(self, task: Task, result: ExecutionResult) -> None:
        try:
            self.notifier.report_task(
                task.id,
                task.assigned_to_role,
                task.action,
                result.success,
                task.input,
                output=result.data,
                error=result.error,
            )
        except Exception:
            logger.exception("task_runner event=notify_failed task_id=%s", task.id)


class BackgroundRunner:
    """Daemon thread calling ``TaskRunner.try_tick`` every ``interval_s`` seconds."""

    def __init__(self, runner: TaskRunner, *, interval_s: float = 30.0) -> None:
        self.runner = runner
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="task-runner", daemon=True)
        self._thread.start()
        logger.info("task_runner event=background_started interval_s=%s", self.interval_s)

    def stop(self, timeout_s: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
        logger.info("task_runner event=background_stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.runner.try_tick()
            except Exception:
                logger.exception("task_runner event=tick_crashed")
            self._stop.wait(self.interval_s)
