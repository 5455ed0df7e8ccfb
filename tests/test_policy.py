from __future__ import annotations

from datetime import date, datetime

import pytest

from role_orchestrator.errors import ApprovalRequired, PermissionDenied
from role_orchestrator.policy import (
    check_permission,
    enforce_permission,
    is_post_payment_cancellation,
    validate_booking_creation,
    validate_refund,
    validate_vendor_suspension,
)

PAID_BOOKING = {"status": "confirmed", "payment_status": "paid"}


def test_owner_is_always_allowed() -> None:
    result = check_permission("OWNER", "anything:at-all", require_owner_approval=True)

    assert result.allowed is True
    assert result.requires_approval is False


def test_exact_grant_and_missing_grant() -> None:
    assert check_permission("SUPPORT", "tickets:create").allowed is True

    denied = check_permission("SUPPORT", "refunds:create")
    assert denied.allowed is False
    assert denied.requires_approval is False
    assert "SUPPORT" in denied.reason


def test_unknown_role_is_denied() -> None:
    assert check_permission("INTERN", "tasks:read").allowed is False


def test_wildcard_grants() -> None:
    table = {"AUDITOR": ("audit:*",), "ROOT": ("*",)}

    assert check_permission("AUDITOR", "audit:read", permissions=table).allowed is True
    assert check_permission("AUDITOR", "audit:export", permissions=table).allowed is True
    assert check_permission("AUDITOR", "tasks:read", permissions=table).allowed is False
    assert check_permission("ROOT", "tasks:delete", permissions=table).allowed is True


def test_high_risk_action_requires_approval_only_when_enabled() -> None:
    assert check_permission("FINANCE", "refunds:create").allowed is True

    gated = check_permission("FINANCE", "refunds:create", require_owner_approval=True)
    assert gated.allowed is False
    assert gated.requires_approval is True


def test_post_payment_cancellation_is_high_risk() -> None:
    plain = check_permission("BOOKING_MANAGER", "bookings:cancel", {"status": "pending"})
    assert plain.allowed is True
    assert plain.flags == []

    flagged = check_permission("BOOKING_MANAGER", "bookings:cancel", PAID_BOOKING)
    assert flagged.allowed is True
    assert flagged.flags == ["post_payment"]

    gated = check_permission(
        "BOOKING_MANAGER",
        "bookings:cancel",
        PAID_BOOKING,
        require_owner_approval=True,
    )
    assert gated.requires_approval is True
    assert "bookings:cancel-after-payment" in gated.reason


def test_post_payment_detection() -> None:
    assert is_post_payment_cancellation({"status": "confirmed", "payment_status": "succeeded"})
    assert not is_post_payment_cancellation({"status": "confirmed", "payment_status": "pending"})
    assert not is_post_payment_cancellation({"status": "pending", "payment_status": "paid"})


def test_enforce_permission_raises_distinct_errors() -> None:
    with pytest.raises(PermissionDenied):
        enforce_permission("MARKETING", "refunds:create")

    with pytest.raises(ApprovalRequired) as excinfo:
        enforce_permission("LEADER", "vendors:suspend", require_owner_approval=True)
    assert excinfo.value.details["action"] == "vendors:suspend"

    assert enforce_permission("LEADER", "vendors:suspend").allowed is True


@pytest.mark.parametrize(
    ("start", "end"),
    [
        ("2026-06-01", "2026-06-05"),
        (date(2026, 6, 1), date(2026, 6, 2)),
        ("2026-06-01T10:00:00Z", datetime(2026, 6, 1, 12, 0)),
    ],
)
def test_valid_booking_ranges(start: object, end: object) -> None:
    assert validate_booking_creation(start_date=start, end_date=end).allowed is True


def test_booking_rejections() -> None:
    reversed_range = validate_booking_creation(start_date="2026-06-05", end_date="2026-06-01")
    assert reversed_range.allowed is False
    assert "after start" in reversed_range.reason

    same_day = validate_booking_creation(start_date="2026-06-01", end_date="2026-06-01")
    assert same_day.allowed is False

    unavailable = validate_booking_creation(
        start_date="2026-06-01", end_date="2026-06-02", service_available=False
    )
    assert unavailable.reason == "Service is not available for booking"

    conflicts = validate_booking_creation(
        start_date="2026-06-01", end_date="2026-06-02", conflicting_bookings=2
    )
    assert "2 found" in conflicts.reason

    garbage = validate_booking_creation(start_date="next tuesday", end_date="2026-06-02")
    assert garbage.allowed is False
    assert garbage.reason.startswith("Invalid booking dates")


def test_refund_validation() -> None:
    assert validate_refund(booking_status="confirmed", amount=50, original_amount=100).allowed is True
    assert validate_refund(booking_status="completed").allowed is True

    assert validate_refund(booking_status="pending").allowed is False
    assert validate_refund(booking_status="confirmed", amount=0).allowed is False

    too_much = validate_refund(booking_status="confirmed", amount=150, original_amount=100)
    assert too_much.allowed is False
    assert "exceeds" in too_much.reason


def test_vendor_suspension_is_allowed_with_flags() -> None:
    clean = validate_vendor_suspension()
    assert clean.allowed is True
    assert clean.flags == []
    assert clean.reason is None

    busy = validate_vendor_suspension(has_active_bookings=True, outstanding_balance=120.5)
    assert busy.allowed is True
    assert busy.flags == ["notify_customers", "settle_balance"]
    assert "active bookings" in busy.reason
