"""Built-in functions every flow engine registers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from flow_engine.executor import FlowEngine

logger = structlog.get_logger()


def log_error(engine: FlowEngine, error_type: str, details: Any = "") -> None:
    """Append an entry to state["error_logs"] for later inspection."""
    entry = {
        "type": error_type,
        "details": details,
        "time": datetime.now(timezone.utc).isoformat(),
    }
    engine.state.append_to("error_logs", entry)
    logger.warning("flow_error_logged", error_type=error_type, details=str(details)[:200])


BUILTINS = {
    "log_error": log_error,
}
