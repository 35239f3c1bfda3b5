"""Progress events and job states published by the separator."""

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

STAGE_DOWNLOAD = "download"
STAGE_EXTRACT = "extract"
STAGE_SEPARATE = "separate"
STAGE_ENCODE = "encode"

# Overall percent range covered by each stage
STAGE_RANGES = {
    STAGE_DOWNLOAD: (0.0, 30.0),
    STAGE_EXTRACT: (30.0, 40.0),
    STAGE_SEPARATE: (40.0, 90.0),
    STAGE_ENCODE: (90.0, 100.0),
}


class JobState(Enum):
    IDLE = "idle"
    LOADING_MODEL = "loading-model"
    EXTRACTING_AUDIO = "extracting-audio"
    SEPARATING = "separating"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self):
        return self in (JobState.DONE, JobState.FAILED, JobState.CANCELLED)


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    percent: float
    message: str


def scale(stage, local_percent):
    """Map a 0-100 percent within ``stage`` onto the overall job range."""
    low, high = STAGE_RANGES[stage]
    local_percent = min(max(local_percent, 0.0), 100.0)
    return low + (high - low) * local_percent / 100.0


class ProgressPublisher:
    """
    Single channel the separator publishes progress to.

    Percentages never go backwards. Subscriber errors are logged and ignored,
    progress is observational only.
    """

    def __init__(self, *subscribers):
        self._subscribers = [s for s in subscribers if s is not None]
        self.events = []

    def subscribe(self, callback):
        self._subscribers.append(callback)

    @property
    def percent(self):
        return self.events[-1].percent if self.events else 0.0

    def publish(self, stage, percent, message):
        if stage not in STAGE_RANGES:
            raise ValueError(f"Unknown progress stage: {stage}")

        event = ProgressEvent(stage, max(float(percent), self.percent), message)
        self.events.append(event)
        logger.debug(f"[{event.stage}] {event.percent:.1f}% {event.message}")

        for callback in self._subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Progress subscriber failed: {e}")
        return event
