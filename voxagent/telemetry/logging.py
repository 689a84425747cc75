from __future__ import annotations

import logging
from typing import Any

import numpy as np
import structlog

_configured = False


def _redact_audio(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace raw audio payloads with their size so log lines stay small."""
    for key, value in list(event_dict.items()):
        if isinstance(value, (bytes, bytearray)):
            event_dict[key] = f"<{len(value)} bytes>"
        elif isinstance(value, np.ndarray):
            event_dict[key] = f"<ndarray {value.shape}>"
    return event_dict


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    global _configured
    if _configured:
        return

    logging.basicConfig(format="%(message)s", level=level.upper())
    renderer: Any = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _redact_audio,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def bind_pipeline_context(session_id: str, mode: str) -> None:
    """Tag every log line emitted from this task and its children with the pipeline session."""
    structlog.contextvars.bind_contextvars(pipeline_session=session_id, pipeline_mode=mode)


def clear_pipeline_context() -> None:
    structlog.contextvars.unbind_contextvars("pipeline_session", "pipeline_mode")


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


__all__ = ["configure_logging", "bind_pipeline_context", "clear_pipeline_context", "get_logger"]
