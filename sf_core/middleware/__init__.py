"""
ShelfFlow 中间件
"""
from .logging import LoggingMiddleware
from .metrics import MetricsMiddleware, metrics_endpoint

__all__ = ["LoggingMiddleware", "MetricsMiddleware", "metrics_endpoint"]
