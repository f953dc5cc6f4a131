"""API middleware package."""

from src.botsync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
