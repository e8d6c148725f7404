"""
Logging configuration for kubeforge.
统一的日志配置模块：标准库 root logger 负责输出（彩色控制台/JSON/文件轮转），
structlog 负责业务层的结构化事件并交给标准库渲染。
"""
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.typing import EventDict

from kubeforge.config import Settings, get_settings
from kubeforge.core.request_context import request_id_var

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_CONFIGURED = False

# LogRecord 自带属性，结构化字段不能覆盖
_RESERVED_ATTRS = frozenset(
    {
        "args", "asctime", "created", "exc_info", "exc_text", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs", "message", "msg", "name",
        "pathname", "process", "processName", "relativeCreated", "stack_info", "thread",
        "threadName", "taskName",
    }
)


class ContextFilter(logging.Filter):
    """把 request_id 自动注入 LogRecord。"""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        rid = getattr(record, "request_id", None) or request_id_var.get()
        if rid is not None:
            record.request_id = rid
        if not hasattr(record, "service"):
            record.service = "kubeforge"
        return True


class ColoredFormatter(logging.Formatter):
    """彩色日志格式化器（用于控制台输出）"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """JSON 结构化日志格式化器。

    输出 time, level, name, message 标准字段，并合并 structlog 传入的额外字段。
    manifest 正文可能包含 Secret 数据，相关键会被脱敏。
    """

    REDACT_KEYS = {"password", "secret", "token", "authorization", "manifest", "yaml"}

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        rid = getattr(record, "request_id", None) or request_id_var.get()
        if rid:
            payload["request_id"] = rid

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in payload:
                continue
            safe_key = str(key)
            payload[safe_key] = "***REDACTED***" if safe_key.lower() in self.REDACT_KEYS else value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def _avoid_reserved_keys(_logger: logging.Logger, _method_name: str, event_dict: EventDict) -> EventDict:
    """structlog 字段与 LogRecord 属性重名时加前缀，避免 makeRecord 报错。"""
    for key in [k for k in event_dict if k in _RESERVED_ATTRS]:
        event_dict[f"ctx_{key}"] = event_dict.pop(key)
    return event_dict


def _configure_structlog(json_output: bool) -> None:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        # 字段作为 extra 交给 JSONFormatter
        processors += [_avoid_reserved_keys, structlog.stdlib.render_to_log_kwargs]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(settings: Optional[Settings] = None, use_color: bool = True) -> logging.Logger:
    """配置日志系统（统一配置 root logger 与 structlog）

    Args:
        settings: 应用配置，默认读取环境变量
        use_color: 控制台为 TTY 时是否使用彩色输出

    Returns:
        logging.Logger: 应用日志记录器
    """
    global _CONFIGURED
    logger = logging.getLogger("kubeforge")
    if _CONFIGURED:
        return logger

    settings = settings or get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())

    for h in list(root.handlers):
        root.removeHandler(h)

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(context_filter)
    if settings.log_json:
        console_handler.setFormatter(JSONFormatter(datefmt=LOG_DATE_FORMAT))
    elif use_color and sys.stdout.isatty():
        console_handler.setFormatter(ColoredFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    else:
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(console_handler)

    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)
        if settings.log_json:
            file_handler.setFormatter(JSONFormatter(datefmt=LOG_DATE_FORMAT))
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(file_handler)

    # 让常见 logger 走 root handlers
    for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        named = logging.getLogger(log_name)
        named.handlers = []
        named.propagate = True

    # kubernetes 客户端的 urllib3 调试日志过于冗长
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    _configure_structlog(settings.log_json)
    _CONFIGURED = True
    return logger
