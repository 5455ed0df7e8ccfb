from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach one stream handler to the package logger; repeated calls only adjust the level."""
    package_logger = logging.getLogger("role_orchestrator")
    package_logger.setLevel(_coerce_level(level))
    if any(getattr(handler, "_role_orchestrator", False) for handler in package_logger.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._role_orchestrator = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)


def _coerce_level(level: str) -> int:
    resolved = logging.getLevelName(level.strip().upper())
    if isinstance(resolved, int):
        return resolved
    return logging.INFO
