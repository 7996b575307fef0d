# mypy: disable-error-code="no-untyped-def, assignment, var-annotated"
"""
ShelfFlow 日志系统
- JSON 格式输出
- 必需字段：ts, level, trace_id, index, action, latency_ms, result, err
- 顾客/供应商联系方式脱敏（投影失败时记录的载荷里会带上 email/phone）
"""
import logging
import re
import sys
from typing import Any, Optional
from contextvars import ContextVar

import structlog
from structlog.processors import JSONRenderer, TimeStamper, add_log_level

# 日志上下文：请求或变更事件的 trace_id，以及当前索引集合
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
index_var: ContextVar[Optional[str]] = ContextVar("index", default=None)

EMAIL_PATTERN = re.compile(r"([a-zA-Z0-9])[a-zA-Z0-9._+-]*@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")


def mask_phone(value: str) -> str:
    """只保留最后 3 位数字"""
    digits = re.sub(r"\D", "", value)
    return "***" + digits[-3:] if len(digits) > 3 else "***"


class ContactMaskingProcessor:
    """联系方式脱敏：phone 字段只留尾号，任意字符串中的邮箱只留首字母和域名"""

    PHONE_KEYS = frozenset({"phone"})

    def __call__(self, logger, method_name, event_dict):
        return self._mask(event_dict)

    def _mask(self, value: Any, key: Optional[str] = None) -> Any:
        if isinstance(value, dict):
            return {k: self._mask(v, k) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._mask(item) for item in value]
        if isinstance(value, str):
            if key in self.PHONE_KEYS:
                return mask_phone(value)
            return EMAIL_PATTERN.sub(r"\1***@\2", value)
        return value


class ShelfFlowProcessor:
    """添加 ShelfFlow 上下文字段"""

    def __call__(self, logger, method_name, event_dict):
        if trace_id := trace_id_var.get():
            event_dict["trace_id"] = trace_id

        if index := index_var.get():
            event_dict.setdefault("index", index)

        # 重命名标准字段
        if "event" in event_dict:
            event_dict["action"] = event_dict.pop("event")

        if "exception" in event_dict:
            event_dict["err"] = str(event_dict.pop("exception"))

        return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", enable_pii_masking: bool = True) -> None:
    """配置日志系统

    structlog 与标准 logging 都输出到 stdout
    """
    level = getattr(logging, log_level.upper())

    processors = [
        TimeStamper(fmt="iso", utc=True, key="ts"),
        add_log_level,
        ShelfFlowProcessor(),
    ]

    if enable_pii_masking:
        processors.append(ContactMaskingProcessor())

    if log_format == "json":
        processors.append(JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 移除已有的 handlers，避免重复
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(stdout_handler)

    # 降低第三方库的日志级别
    for logger_name in ("httpx", "httpcore", "asyncio", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取日志记录器"""
    return structlog.get_logger(name)


class LogContext:
    """日志上下文管理器，用于设置请求/投影级别的上下文"""

    def __init__(self, trace_id: Optional[str] = None, index: Optional[str] = None):
        self.trace_id = trace_id
        self.index = index
        self._tokens = []

    def __enter__(self):
        if self.trace_id:
            self._tokens.append(trace_id_var.set(self.trace_id))
        if self.index:
            self._tokens.append(index_var.set(self.index))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
