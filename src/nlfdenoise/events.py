"""
Diagnostic events emitted by the pipeline stages.

Stages never write to process-wide diagnostic state: anomalies are logged
through the module logger and forwarded to an optional observer callback
supplied by the caller.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of pipeline events."""

    NOISE_MODEL_FITTED = "noise_model_fitted"
    INSUFFICIENT_SAMPLES = "insufficient_samples"  # No sample survived filtering
    DEGENERATE_FIT = "degenerate_fit"  # Second pass worse than the first
    SINGULAR_MODEL = "singular_model"  # Regression denominator ~ 0
    PRIOR_MODEL_USED = "prior_model_used"  # Fallback to caller prior
    PYRAMID_CLAMPED = "pyramid_clamped"  # Image too small for requested levels
    FRAME_FUSED = "frame_fused"
    MISALIGNED_FRAME = "misaligned_frame"  # Residual pervasively above threshold
    BURST_RESET = "burst_reset"


@dataclass
class PipelineEvent:
    """Record of a single pipeline event."""

    kind: EventKind
    stage: str
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[PipelineEvent], None]


class EventRecorder:
    """
    Observer that keeps every event it receives.

    Example
    -------
    >>> recorder = EventRecorder()
    >>> fit_noise_model(samples, observer=recorder)
    >>> recorder.kinds()
    [<EventKind.NOISE_MODEL_FITTED: 'noise_model_fitted'>]
    """

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[EventKind]:
        """Return the kinds of recorded events, in order."""
        return [e.kind for e in self.events]

    def of_kind(self, kind: EventKind) -> list[PipelineEvent]:
        """Return recorded events of a given kind."""
        return [e for e in self.events if e.kind == kind]

    def clear(self) -> None:
        """Forget all recorded events."""
        self.events.clear()


def emit(
    observer: EventSink | None,
    event: PipelineEvent,
    level: int = logging.INFO,
) -> None:
    """
    Log an event and forward it to the observer, if any.

    Parameters
    ----------
    observer : EventSink or None
        Callback receiving the event.
    event : PipelineEvent
        Event to publish.
    level : int, default logging.INFO
        Log level used for the event message.
    """
    logger.log(level, "[%s] %s: %s", event.stage, event.kind.value, event.message)
    if observer is not None:
        observer(event)
