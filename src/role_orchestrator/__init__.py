"""Multi-role task orchestration: lead planning, per-role queues, and a tick-based runner."""

__version__ = "0.1.0"
