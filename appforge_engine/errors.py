from datetime import datetime
from typing import Optional

RETRY_HINT = "transient failure, retrying later may help"
CONFIG_HINT = "configuration problem, retrying will not help until it is fixed"


class PipelineError(Exception):
    """Base class for every stage failure in a batch.

    ``transient`` separates environmental failures (timeouts, rate limits,
    5xx responses) from configuration mistakes (bad package name, missing
    workflow), so callers can decide whether a retry is worth it.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.message = message
        self.transient = transient

    @property
    def hint(self) -> str:
        return RETRY_HINT if self.transient else CONFIG_HINT

    def describe(self) -> str:
        return f"{self.message} ({self.hint})"


class GenerationError(PipelineError):
    pass


class PreparationError(PipelineError):
    pass


class RepositoryError(PipelineError):
    # kind: "name_collision", "invalid_name", "auth", "http", "transport", "rate_limit", "push"
    def __init__(self, message: str, transient: bool = False, kind: str = "http"):
        super().__init__(message, transient=transient)
        self.kind = kind


class RateLimitError(RepositoryError):
    """Raised when a service keeps answering with rate-limit responses after the retry budget is spent.

    ``push_result`` holds what was uploaded before the limit hit when the
    error stops a push partway.
    """

    def __init__(self, message: str, service: str, reset_at: Optional[datetime] = None):
        super().__init__(message, transient=True, kind="rate_limit")
        self.service = service
        self.reset_at = reset_at
        self.push_result = None


class BuildAppError(PipelineError):
    pass


class TriggerError(PipelineError):
    pass


class PollError(PipelineError):
    pass


class ConcurrentBatchError(PipelineError):
    def __init__(self, message: str = "A batch is already running on this orchestrator"):
        super().__init__(message, transient=True)
