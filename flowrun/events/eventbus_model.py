from typing import Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime

from flowrun.utils.timefmt import utcnow


class EventType(str, Enum):
    # Run lifecycle
    RunStateChanged = "RunStateChanged"
    RunAvailable = "RunAvailable"

    # Steps
    StepStarted = "StepStarted"
    StepCompleted = "StepCompleted"

    # Log stream
    LogAppended = "LogAppended"


RUNS_AVAILABLE_TOPIC = "runs:available"


def run_topic(run_id: str) -> str:
    return f"run:{run_id}"


class EventEnvelope(BaseModel):
    topic: str
    event_type: EventType
    run_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    work_order_id: Optional[str] = None
    step_id: Optional[str] = None
    state: Optional[str] = None

    attributes: Dict[str, Any] = Field(default_factory=dict)


def run_state_event(run) -> EventEnvelope:
    """RunStateChanged for a persisted Run row."""
    return EventEnvelope(
        topic=run_topic(run.id),
        event_type=EventType.RunStateChanged,
        run_id=run.id,
        work_order_id=run.work_order_id,
        state=run.state,
        attributes={
            "exit_reason": run.exit_reason,
            "error_type": run.error_type,
            "worker_name": run.worker_name,
        },
    )
