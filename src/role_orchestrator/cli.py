"""Operator commands: schema migration, agent keys, manual ticks, and reports."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence

from role_orchestrator.config import Settings, get_settings
from role_orchestrator.errors import OrchestratorError
from role_orchestrator.logging_config import configure_logging
from role_orchestrator.models import IDENTITY_ROLES
from role_orchestrator.runtime import Runtime, build_runtime
from role_orchestrator.storage import OrchestratorStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="role-orchestrator",
        description="Operate the role orchestrator against its PostgreSQL store.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL connection URL (default: ROLE_ORCHESTRATOR_DATABASE_URL or DATABASE_URL).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("migrate", help="Create tables and indexes if missing.")

    create_agent = commands.add_parser("create-agent", help="Register an agent and print its key once.")
    create_agent.add_argument("name")
    create_agent.add_argument("role", choices=IDENTITY_ROLES)
    create_agent.add_argument(
        "--metadata",
        default="{}",
        help="JSON object stored with the identity.",
    )

    list_agents = commands.add_parser("list-agents", help="List registered agents.")
    list_agents.add_argument("--active-only", action="store_true")

    commands.add_parser("tick", help="Run one runner tick and print its summary.")

    requeue = commands.add_parser("requeue", help="Move a FAILED task back to QUEUED.")
    requeue.add_argument("task_id")

    commands.add_parser(
        "daily-summary",
        help=(
            "Print the digest of tasks run by this process. The buffer is per-process, "
            "so a standalone invocation reports none; POST /api/agent/reports/daily/send "
            "sends the server's digest."
        ),
    )

    commands.add_parser("purge-idempotency", help="Delete expired idempotency records.")

    cleanup = commands.add_parser("cleanup-tasks", help="Delete finished tasks older than N days.")
    cleanup.add_argument("--older-than-days", type=int, default=30)
    return parser


def main(
    argv: Sequence[str] | None = None,
    *,
    store: OrchestratorStore | None = None,
    settings: Settings | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(settings.log_level)

    try:
        runtime = build_runtime(settings, store=store)
        return _dispatch(args, runtime)
    except OrchestratorError as exc:
        print(f"error: {exc.kind}: {exc.message}", file=sys.stderr)
        return 1


def _dispatch(args: argparse.Namespace, runtime: Runtime) -> int:
    if args.command == "migrate":
        # build_runtime already migrated a PostgreSQL store.
        runtime.store.migrate()
        print("Schema is up to date.")
        return 0

    if args.command == "create-agent":
        try:
            metadata = json.loads(args.metadata)
        except ValueError:
            metadata = None
        if not isinstance(metadata, dict):
            print("error: --metadata must be a JSON object", file=sys.stderr)
            return 2
        created = runtime.identities.create_identity(args.name, args.role, metadata)
        print(f"Created agent {created.identity.id} ({created.identity.role}).")
        print(f"API key (shown once): {created.api_key}")
        return 0

    if args.command == "list-agents":
        for identity in runtime.identities.list_identities(active_only=args.active_only):
            state = "active" if identity.is_active else "inactive"
            print(f"{identity.id}\t{identity.role}\t{state}\t{identity.name}")
        return 0

    if args.command == "tick":
        summary = runtime.runner.try_tick()
        if summary is None:
            print("A tick is already running.")
            return 1
        print(summary.model_dump_json(indent=2))
        return 0

    if args.command == "requeue":
        task = runtime.queue.requeue(args.task_id)
        if task is None:
            print(f"Task {args.task_id} was not requeued (missing, not FAILED, or at retry limit).")
            return 1
        print(f"Requeued task {task.id} (retry {task.retry_count}/{runtime.queue.max_retries}).")
        return 0

    if args.command == "daily-summary":
        print(runtime.notifier.render_daily_summary())
        return 0

    if args.command == "purge-idempotency":
        removed = runtime.idempotency.purge_expired()
        print(f"Removed {removed} expired idempotency record(s).")
        return 0

    if args.command == "cleanup-tasks":
        removed = runtime.queue.cleanup_finished(args.older_than_days)
        print(f"Removed {removed} finished task(s).")
        return 0

    raise AssertionError(f"unhandled command: {args.command}")
