from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .config import LogConfig

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    return str(value)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one structured log line: a JSON object keyed by ``event``."""
    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        payload[key] = _json_safe(value)
    if exc is not None:
        payload["exc"] = f"{type(exc).__name__}: {exc}"
    logger.log(
        level,
        json.dumps(payload, sort_keys=False),
        exc_info=exc if exc is not None and level >= logging.ERROR else None,
    )


def safe_log(
    logger: logging.Logger,
    level: int,
    message: str,
    exc: Optional[BaseException] = None,
) -> None:
    try:
        if exc is not None:
            logger.log(level, "%s: %s", message, exc)
        else:
            logger.log(level, message)
    except Exception:
        pass


def setup_rotating_logger(name: str, log_config: "LogConfig") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(log_config.level)
    if getattr(logger, "_support_relay_configured", False):
        return logger
    formatter = logging.Formatter(_LOG_FORMAT)
    if log_config.path is not None:
        log_config.path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_config.path,
            maxBytes=log_config.max_bytes,
            backupCount=log_config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    logger.propagate = False
    setattr(logger, "_support_relay_configured", True)
    return logger
