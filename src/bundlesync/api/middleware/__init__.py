"""API middleware package."""

from src.bundlesync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
