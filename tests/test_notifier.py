from __future__ import annotations

from datetime import UTC, datetime, timedelta

from role_orchestrator.notifier import AdminNotifier, TelegramChannel, format_critical_alert, is_critical

from conftest import ADMIN_CHAT, RecordingChannel


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 5, 10, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def test_failed_finance_task_sends_one_alert(channel: RecordingChannel, notifier: AdminNotifier) -> None:
    summary = notifier.report_task(
        "task-1",
        "FINANCE",
        "create_checkout",
        False,
        {"amount": 500, "cardNumber": "4111111111111111"},
        error="payment gateway down",
    )

    assert summary.is_critical is True
    assert summary.status == "failed"
    assert len(channel.sent) == 1
    destination, text = channel.sent[0]
    assert destination == ADMIN_CHAT
    assert "CRITICAL ALERT" in text
    assert "Error: payment gateway down" in text
    assert "amount: 500" in text
    assert "4111" not in text
    assert "Task ID: task-1" in text


def test_routine_success_is_not_sent(channel: RecordingChannel, notifier: AdminNotifier) -> None:
    summary = notifier.report_task("task-2", "PRICING", "update_price", True, {"serviceId": 3})

    assert summary.is_critical is False
    assert channel.sent == []
    assert notifier.recent_tasks() == [summary]


def test_criticality_rules() -> None:
    assert is_critical("SUPPORT", True, {"message": "site is DOWN"})
    assert is_critical("MARKETING", False, {}, error="upstream error")
    assert is_critical("FINANCE", False, {})
    assert not is_critical("FINANCE", True, {"action": "create_checkout"})
    assert not is_critical("SUPPORT", False, {"subject": "question"}, error="bad input")


def test_alert_without_destination_is_recorded_but_not_sent(channel: RecordingChannel) -> None:
    notifier = AdminNotifier(channel, None)

    notifier.report_task("task-3", "FINANCE", "process_refund", False, {}, error="declined")

    assert channel.sent == []
    assert notifier.stats()["critical"] == 1


def test_channel_errors_are_swallowed() -> None:
    notifier = AdminNotifier(RecordingChannel(fail=True), ADMIN_CHAT)

    summary = notifier.report_task("task-4", "FINANCE", "process_refund", False, {}, error="declined")

    assert summary.is_critical is True
    assert notifier.send_daily_summary() is False


def test_ring_buffer_keeps_newest_entries() -> None:
    notifier = AdminNotifier(RecordingChannel(), ADMIN_CHAT, capacity=3)
    for index in range(5):
        notifier.report_task(f"task-{index}", "SUPPORT", "create_ticket", True, {})

    assert [entry.task_id for entry in notifier.recent_tasks()] == ["task-4", "task-3", "task-2"]
    assert [entry.task_id for entry in notifier.recent_tasks(limit=1)] == ["task-4"]
    assert notifier.stats()["total"] == 3


def test_daily_digest_covers_last_24_hours() -> None:
    clock = ManualClock()
    notifier = AdminNotifier(RecordingChannel(), ADMIN_CHAT, clock=clock)
    notifier.report_task("old", "SUPPORT", "create_ticket", True, {})
    clock.now += timedelta(hours=25)
    notifier.report_task("a", "SUPPORT", "create_ticket", True, {})
    notifier.report_task("b", "FINANCE", "process_refund", False, {}, error="declined")
    notifier.report_task("c", "SUPPORT", "update_ticket", True, {})

    digest = notifier.generate_daily_summary()

    assert digest.total == 3
    assert digest.by_status == {"success": 2, "failed": 1}
    assert digest.by_role == {"SUPPORT": 2, "FINANCE": 1}
    assert digest.critical == 1
    assert digest.window_end - digest.window_start == timedelta(hours=24)

    text = notifier.render_daily_summary()
    assert "Total Tasks: 3" in text
    assert text.index("- SUPPORT: 2 tasks") < text.index("- FINANCE: 1 tasks")


def test_empty_digest_and_sending() -> None:
    channel = RecordingChannel()
    notifier = AdminNotifier(channel, ADMIN_CHAT)

    assert notifier.render_daily_summary().endswith("No tasks processed in the last 24 hours.")
    assert notifier.send_daily_summary() is True
    assert channel.sent[0][0] == ADMIN_CHAT
    assert AdminNotifier(channel, "").send_daily_summary() is False


def test_format_critical_alert_omits_empty_sections(notifier: AdminNotifier) -> None:
    summary = notifier.report_task("task-5", "SUPPORT", "create_ticket", True, {"subject": "security breach"})

    text = format_critical_alert(summary, {"subject": "security breach", "secret": "hunter2"})

    assert "Error:" not in text
    assert "Details: subject: security breach" in text
    assert "hunter2" not in text


def test_telegram_channel_without_token_does_not_send() -> None:
    assert TelegramChannel(bot_token="").send(ADMIN_CHAT, "hello") is False
