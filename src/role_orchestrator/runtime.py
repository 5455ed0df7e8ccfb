"""Wiring of stores and services shared by the HTTP app and the CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from role_orchestrator.audit import AuditLogger
from role_orchestrator.config import Settings
from role_orchestrator.errors import ConfigurationError
from role_orchestrator.executors import RoleExecutor, build_executor_registry
from role_orchestrator.idempotency import IdempotencyCache
from role_orchestrator.identity import IdentityService
from role_orchestrator.llm import LLMAdapter, build_llm_adapter
from role_orchestrator.notifier import AdminNotifier, NotificationChannel, TelegramChannel
from role_orchestrator.planner import LeadIntake, Planner
from role_orchestrator.runner import BackgroundRunner, TaskRunner
from role_orchestrator.storage import OrchestratorStore, PostgresStore
from role_orchestrator.task_queue import TaskQueue


@dataclass
class Runtime:
    settings: Settings
    store: OrchestratorStore
    queue: TaskQueue
    audit: AuditLogger
    idempotency: IdempotencyCache
    identities: IdentityService
    planner: Planner
    intake: LeadIntake
    channel: NotificationChannel | None
    notifier: AdminNotifier
    runner: TaskRunner
    background: BackgroundRunner


def build_runtime(
    settings: Settings,
    *,
    store: OrchestratorStore | None = None,
    executors: dict[str, RoleExecutor | None] | None = None,
    notification_channel: NotificationChannel | None = None,
    llm_adapter: LLMAdapter | None = None,
) -> Runtime:
    if store is None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise ConfigurationError(
                "Missing database URL. Set ROLE_ORCHESTRATOR_DATABASE_URL or DATABASE_URL."
            )
        store = PostgresStore(database_url)
        store.migrate()

    queue = TaskQueue(
        store,
        max_retries=settings.max_task_retries,
        claim_attempts=settings.claim_attempts,
        query_limit=settings.query_limit,
        max_query_limit=settings.max_query_limit,
    )
    audit = AuditLogger(store, default_limit=settings.query_limit, max_limit=settings.max_query_limit)
    channel = notification_channel or TelegramChannel(
        bot_token=settings.resolved_telegram_bot_token(),
        timeout_s=settings.notification_timeout_s,
    )
    notifier = AdminNotifier(
        channel,
        settings.resolved_admin_chat_id(),
        capacity=settings.recent_summary_capacity,
    )
    planner = Planner(
        mode=settings.planner_mode,
        llm_adapter=llm_adapter if llm_adapter is not None else build_llm_adapter(settings),
        timeout_s=settings.llm_timeout_s,
    )
    runner = TaskRunner(queue, build_executor_registry(executors), audit, notifier)
    return Runtime(
        settings=settings,
        store=store,
        queue=queue,
        audit=audit,
        idempotency=IdempotencyCache(store, ttl=timedelta(hours=settings.idempotency_ttl_hours)),
        identities=IdentityService(store, owner_key=settings.resolved_owner_agent_key()),
        planner=planner,
        intake=LeadIntake(planner, queue),
        channel=channel,
        notifier=notifier,
        runner=runner,
        background=BackgroundRunner(runner, interval_s=settings.runner_interval_s),
    )
