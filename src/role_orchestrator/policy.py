"""Role-based permission checks and business-rule validators.

Everything here is pure: no I/O, no clock, no configuration lookups. Callers
pass ``require_owner_approval`` explicitly from their settings.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from role_orchestrator.errors import ApprovalRequired, PermissionDenied
from role_orchestrator.models import OWNER_ROLE, PolicyResult

AGENT_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "OWNER": ("*",),
    "LEADER": (
        "tasks:create",
        "tasks:read",
        "tasks:requeue",
        "vendors:read",
        "vendors:approve",
        "vendors:suspend",
        "bookings:read",
        "services:read",
        "audit:read",
    ),
    "VENDOR_ONBOARDING": (
        "vendors:create",
        "vendors:read",
        "vendors:update",
        "notifications:create",
    ),
    "BOOKING_MANAGER": (
        "bookings:create",
        "bookings:read",
        "bookings:update",
        "bookings:confirm",
        "bookings:cancel",
        "calendar:read",
        "services:read",
        "notifications:create",
    ),
    "CALENDAR_SYNC": (
        "calendar:create",
        "calendar:read",
        "calendar:sync",
        "calendar:update",
        "services:read",
    ),
    "PRICING": (
        "services:read",
        "services:update-price",
        "pricing-rules:create",
        "pricing-rules:read",
        "pricing-rules:update",
    ),
    "MARKETING": (
        "campaigns:create",
        "campaigns:read",
        "campaigns:update",
        "campaigns:launch",
        "content:generate",
        "services:read",
    ),
    "SUPPORT": (
        "tickets:create",
        "tickets:read",
        "tickets:update",
        "notifications:create",
    ),
    "FINANCE": (
        "checkout:create",
        "payments:read",
        "refunds:create",
        "bookings:read",
    ),
}

HIGH_RISK_ACTIONS = frozenset(
    {
        "refunds:create",
        "vendors:suspend",
        "bookings:cancel-after-payment",
    }
)

REFUNDABLE_BOOKING_STATUSES = ("confirmed", "completed", "cancelled")


def check_permission(
    role: str,
    action: str,
    target_data: dict[str, Any] | None = None,
    *,
    require_owner_approval: bool = False,
    permissions: dict[str, tuple[str, ...]] | None = None,
) -> PolicyResult:
    """Decide allow / deny / requires-approval for ``role`` performing ``action``.

    Grants are exact action names, ``prefix:*`` wildcards, or ``*``. A granted
    high-risk action turns into ``requires_approval`` when the approval flag
    is on, so callers can tell "needs escalation" apart from "denied".
    """
    if role == OWNER_ROLE:
        return PolicyResult(allowed=True)

    table = AGENT_PERMISSIONS if permissions is None else permissions
    granted = table.get(role, ())
    if not _is_granted(granted, action):
        return PolicyResult(
            allowed=False,
            reason=f"Role {role} does not have permission: {action}",
        )

    effective = action
    if action == "bookings:cancel" and target_data and is_post_payment_cancellation(target_data):
        # Cancelling a paid booking is the high-risk variant of the same grant.
        effective = "bookings:cancel-after-payment"

    if effective in HIGH_RISK_ACTIONS and require_owner_approval:
        return PolicyResult(
            allowed=False,
            requires_approval=True,
            reason=f"Action {effective} requires OWNER approval",
        )

    flags = ["post_payment"] if effective != action else []
    return PolicyResult(allowed=True, flags=flags)


def enforce_permission(
    role: str,
    action: str,
    target_data: dict[str, Any] | None = None,
    *,
    require_owner_approval: bool = False,
) -> PolicyResult:
    result = check_permission(
        role,
        action,
        target_data,
        require_owner_approval=require_owner_approval,
    )
    if result.allowed:
        return result
    message = result.reason or f"Action {action} is not permitted"
    if result.requires_approval:
        raise ApprovalRequired(message, details={"action": action, "role": role})
    raise PermissionDenied(message, details={"action": action, "role": role})


def _is_granted(granted: tuple[str, ...], action: str) -> bool:
    if "*" in granted or action in granted:
        return True
    prefix = action.split(":", 1)[0]
    return f"{prefix}:*" in granted


def is_post_payment_cancellation(booking: dict[str, Any]) -> bool:
    return booking.get("status") == "confirmed" and booking.get("payment_status") in (
        "paid",
        "succeeded",
    )


def validate_booking_creation(
    *,
    start_date: date | datetime | str,
    end_date: date | datetime | str,
    service_available: bool | None = None,
    conflicting_bookings: int | None = None,
) -> PolicyResult:
    if service_available is False:
        return PolicyResult(allowed=False, reason="Service is not available for booking")
    if conflicting_bookings:
        return PolicyResult(
            allowed=False,
            reason=f"Conflicting bookings exist ({conflicting_bookings} found)",
        )
    try:
        start = _coerce_datetime(start_date)
        end = _coerce_datetime(end_date)
    except ValueError as exc:
        return PolicyResult(allowed=False, reason=f"Invalid booking dates: {exc}")
    if start >= end:
        return PolicyResult(allowed=False, reason="End date must be after start date")
    return PolicyResult(allowed=True)


def validate_refund(
    *,
    booking_status: str,
    amount: float | None = None,
    original_amount: float | None = None,
) -> PolicyResult:
    if booking_status not in REFUNDABLE_BOOKING_STATUSES:
        return PolicyResult(
            allowed=False,
            reason=f"Cannot refund booking with status: {booking_status}",
        )
    if amount is not None and amount <= 0:
        return PolicyResult(allowed=False, reason="Refund amount must be positive")
    if amount is not None and original_amount is not None and amount > original_amount:
        return PolicyResult(
            allowed=False,
            reason=f"Refund amount ({amount}) exceeds original payment ({original_amount})",
        )
    return PolicyResult(allowed=True)


def validate_vendor_suspension(
    *,
    has_active_bookings: bool = False,
    outstanding_balance: float | None = None,
) -> PolicyResult:
    """Suspension is always allowed; active bookings must be flagged for notification."""
    flags: list[str] = []
    reasons: list[str] = []
    if has_active_bookings:
        flags.append("notify_customers")
        reasons.append("Vendor has active bookings. Ensure proper customer notification.")
    if outstanding_balance:
        flags.append("settle_balance")
        reasons.append(f"Vendor has an outstanding balance of {outstanding_balance}.")
    return PolicyResult(
        allowed=True,
        reason=" ".join(reasons) or None,
        flags=flags,
    )


def _coerce_datetime(value: date | datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    # Compare naive values as UTC so mixed inputs do not raise TypeError.
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value
