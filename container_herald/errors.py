"""
Container Herald — Error Taxonomy
═══════════════════════════════════════════════════
Source errors come from the Docker side, sink errors from the Discord
side. Both loops catch everything at their cycle boundary; these types
only decide what happens to the rest of the cycle.
"""

from typing import Optional


class HeraldError(Exception):
    """Base class for all Container Herald errors."""


class ConfigError(HeraldError):
    """Raised at startup when a required setting is missing or invalid."""


# ── Workload Source ────────────────────────────────────────

class SourceError(HeraldError):
    """Base class for Workload Source failures."""


class SourceUnavailable(SourceError):
    """The container runtime cannot be reached. The whole cycle is aborted."""


class WorkloadNotFound(SourceError):
    """A container vanished between listing and log fetch."""
    def __init__(self, workload_id: str):
        self.workload_id = workload_id
        super().__init__(f"Workload not found: {workload_id[:12]}")


class MalformedWorkload(SourceError):
    """A listed container is missing a required field."""
    def __init__(self, missing: list, record: dict):
        self.missing = missing
        self.record = record
        super().__init__(f"Workload is missing fields {missing}: {record!r}")


# ── Notification Sink ──────────────────────────────────────

class SinkError(HeraldError):
    """A Discord API call failed."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SinkUnavailable(SinkError):
    """Transport error, timeout or 5xx from Discord."""


class RateLimited(SinkError):
    """Discord answered 429. `retry_after` is in seconds."""
    def __init__(self, message: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(message, status=429)


class NotFound(SinkError):
    """The channel or message vanished on the Discord side."""
    def __init__(self, message: str):
        super().__init__(message, status=404)


class Unauthorized(SinkError):
    """The bot token was rejected (HTTP 401). Needs an operator."""
