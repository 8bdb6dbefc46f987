"""
Error taxonomy for the automation core.

Every error here is recovered at the component boundary that detects it and
turned into a terminal outcome for the enclosing job or request. None of them
is allowed to stop the work queue.
"""


class GemProjectsError(Exception):
    """Base class for all gem-projects errors."""


class ConfigError(GemProjectsError):
    """config.yaml / selectors.yaml missing or malformed."""


class SurfaceError(GemProjectsError):
    """A browser surface operation failed (tab closed, CDP gone, ...)."""


class SessionUnavailable(GemProjectsError):
    """A surface could not be created or never became ready."""

    def __init__(self, thread_key, reason):
        super().__init__(f"session '{thread_key}' unavailable: {reason}")
        self.thread_key = thread_key
        self.reason = reason


class StabilityTimeout(GemProjectsError):
    """Content never settled. `partial` holds whatever was last extracted."""

    def __init__(self, partial=None):
        super().__init__("content did not settle")
        self.partial = partial


class RequestTimeout(GemProjectsError):
    """No tagged response arrived before the request deadline."""

    def __init__(self, request_id, timeout):
        super().__init__(f"request '{request_id}' timed out after {timeout:.0f}s")
        self.request_id = request_id
        self.timeout = timeout


class ExtractionEmpty(GemProjectsError):
    """The page settled but held no meaningful conversation text."""


class MigrationSkipped(GemProjectsError):
    """Surrogate record not found; the migration is a no-op."""
