import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .logger_setup import logger
from .models import BatchReport, BuildStatusSnapshot, JobResult, JobStage


@dataclass(frozen=True)
class BatchStarted:
    batch_id: str
    template_ids: Tuple[str, ...]
    timestamp: datetime.datetime

    @property
    def total(self) -> int:
        return len(self.template_ids)


@dataclass(frozen=True)
class JobStarted:
    batch_id: str
    index: int
    template_id: str
    timestamp: datetime.datetime


@dataclass(frozen=True)
class JobStageProgress:
    """Stage entry, one pushed file, or one observed build snapshot."""
    batch_id: str
    index: int
    template_id: str
    stage: JobStage
    message: str
    timestamp: datetime.datetime
    detail: Dict[str, Any] = field(default_factory=dict)
    snapshot: Optional[BuildStatusSnapshot] = None


@dataclass(frozen=True)
class JobCompleted:
    batch_id: str
    index: int
    result: JobResult
    timestamp: datetime.datetime


@dataclass(frozen=True)
class BatchCompleted:
    report: BatchReport
    timestamp: datetime.datetime


PipelineEvent = Union[BatchStarted, JobStarted, JobStageProgress, JobCompleted, BatchCompleted]
EventHandler = Callable[[PipelineEvent], None]


class EventBus:
    """Delivers events synchronously, in emission order, to every subscriber.

    A failing subscriber is logged and skipped; it never affects the pipeline
    or the other subscribers.
    """

    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)
        return unsubscribe

    def emit(self, event: PipelineEvent):
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler {handler!r} failed on {type(event).__name__}: {e}", exc_info=True)
