"""
ShelfFlow 实用工具模块
"""

from .logger import get_logger, LogContext, setup_logging
from .errors import (
    ShelfFlowException,
    SchemaViolation,
    PublishFailure,
    SourceUnavailable,
    QueryTimeout,
    QueryRejected,
    InvalidArgument,
    ReferenceNotFound,
)

__all__ = [
    "get_logger",
    "LogContext",
    "setup_logging",
    "ShelfFlowException",
    "SchemaViolation",
    "PublishFailure",
    "SourceUnavailable",
    "QueryTimeout",
    "QueryRejected",
    "InvalidArgument",
    "ReferenceNotFound",
]
