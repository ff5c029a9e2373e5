"""Middleware package for the OpsGuard scheduler service."""

from opsguard.middleware.correlation import CORRELATION_ID_HEADER, CorrelationIdMiddleware

__all__ = ["CorrelationIdMiddleware", "CORRELATION_ID_HEADER"]
