"""
Exception hierarchy for the profile acquisition pipeline.

HarvesterError (base)
├── ConfigurationError      missing/invalid job config or settings
├── QuotaExceededError      monthly API budget exhausted
├── StorageError            blob store or database failure
├── ProfileFetchError       terminal external API failure for one URN
├── RunCancelledError       run cancelled while waiting
└── JobAlreadyRunningError  overlapping run of the same job name
"""
from typing import Any, Optional


class HarvesterError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(HarvesterError):
    """A job configuration or setting is missing or invalid."""


class QuotaExceededError(HarvesterError):
    """The monthly call quota does not allow any further calls.

    When raised by the orchestrator's zero-progress short-circuit, ``history``
    holds the persisted QUOTA_EXCEEDED execution record.
    """

    def __init__(self, message: str, history: Optional[Any] = None):
        super().__init__(message)
        self.history = history


class StorageError(HarvesterError):
    """A blob upload or database write failed."""


class ProfileFetchError(HarvesterError):
    """The external API gave up on a URN."""

    def __init__(self, urn: str, kind: str, detail: str):
        super().__init__(detail)
        self.urn = urn
        self.kind = kind
        self.detail = detail


class RunCancelledError(HarvesterError):
    """The run's cancellation event fired during a wait."""

    def __init__(self, attempts: int = 0):
        super().__init__("run cancelled")
        self.attempts = attempts


class JobAlreadyRunningError(HarvesterError):
    """Another invocation of the same job name is still in flight."""

    def __init__(self, job_name: str):
        super().__init__(f"Job '{job_name}' is already running")
        self.job_name = job_name
