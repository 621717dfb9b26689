"""
日志配置模块 - 使用 structlog 提供结构化日志
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """添加 ISO 格式时间戳"""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _add_log_level(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """添加日志级别"""
    event_dict["level"] = method_name
    return event_dict


def _stringify_datetimes(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """水位线等 datetime 字段统一输出为 ISO 字符串"""
    for key, value in event_dict.items():
        if isinstance(value, datetime):
            event_dict[key] = value.isoformat()
    return event_dict


def _format_exception(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """格式化异常信息"""
    exc_info = event_dict.pop("exc_info", None)
    if exc_info:
        if isinstance(exc_info, BaseException):
            event_dict["exception"] = f"{type(exc_info).__name__}: {exc_info}"
        elif exc_info is True:
            import traceback

            event_dict["exception"] = traceback.format_exc()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    配置结构化日志

    参数:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        json_format: 是否使用 JSON 格式输出（定时任务 / CI 环境推荐）
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    if json_format:
        processors: list[Any] = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            _stringify_datetimes,
            _format_exception,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.contextvars.merge_contextvars,
            _add_timestamp,
            _add_log_level,
            structlog.processors.StackInfoRenderer(),
            _stringify_datetimes,
            _format_exception,
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                sort_keys=False,
                pad_level=False,
            ),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """
    获取结构化日志记录器

    参数:
        name: 日志记录器名称，通常为 __name__

    示例:
        >>> from mentor_sync.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("source_committed", source="goals", records=3)
        2026-01-01T10:30:00 [info] source_committed source=goals records=3
    """
    return structlog.get_logger(name)


def set_log_level(level: str) -> None:
    """动态设置日志级别"""
    logging.getLogger().setLevel(getattr(logging, level.upper()))


def bind_context(**kwargs: Any) -> None:
    """
    绑定上下文字段到当前协程内的所有日志记录

    示例:
        >>> bind_context(run_id="3f2a...")
        >>> logger.info("cycle_started")  # 自动包含 run_id
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """清除上下文字段"""
    structlog.contextvars.clear_contextvars()
