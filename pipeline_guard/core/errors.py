"""
Error taxonomy for the pipeline.

Provider failures are recovered locally through fallbacks, rejections are
surfaced to the caller before any work begins, cache corruption is treated as
a miss, and configuration problems surface once at startup.
"""

from typing import Optional


class PipelineGuardError(Exception):
    """Base class for all Pipeline Guard errors."""


class ConfigurationError(PipelineGuardError, ValueError):
    """Raised when configuration is invalid or required credentials are missing."""


class ProviderError(PipelineGuardError):
    """Raised when a downstream provider call fails or times out."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class StorageError(PipelineGuardError):
    """Raised when the durable storage backend fails."""


class CacheCorruptionError(PipelineGuardError):
    """Raised when a durable cache entry cannot be decoded."""


class PipelineRejection(PipelineGuardError):
    """Raised when a pipeline run is refused before any provider call."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RateLimitedError(PipelineRejection):
    """Raised when the request-level rate limit has been reached."""

    def __init__(self, reason: str, operation: str):
        super().__init__(reason)
        self.operation = operation


class BudgetExceededError(PipelineRejection):
    """Raised when a run would exceed a spending cap."""

    def __init__(self, reason: str, boundary: Optional[str] = None):
        super().__init__(reason)
        self.boundary = boundary
