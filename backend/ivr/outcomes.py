# backend/ivr/outcomes.py
from enum import Enum
from typing import Any

# A notification call shorter than this most likely hit a voicemail greeting
# and was cut off before anyone heard the message.
MIN_HEARD_SECONDS = 5


class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    FAILED = "failed"
    MISSED = "missed"


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED.value,
    CallStatus.NO_ANSWER.value,
    CallStatus.BUSY.value,
    CallStatus.FAILED.value,
    CallStatus.MISSED.value,
})

_PROVIDER_STATUS = {
    "completed": CallStatus.COMPLETED.value,
    "no-answer": CallStatus.NO_ANSWER.value,
    "busy": CallStatus.BUSY.value,
    "failed": CallStatus.FAILED.value,
    "canceled": CallStatus.MISSED.value,
    "cancelled": CallStatus.MISSED.value,
}


def map_provider_status(raw: str | None) -> str:
    """
    Map the provider's call outcome vocabulary onto call_logs.status.
    Unknown values pass through lower-cased; an empty value counts as missed.
    """
    value = (raw or "").strip().lower()
    if not value:
        return CallStatus.MISSED.value
    return _PROVIDER_STATUS.get(value, value)


def is_terminal(status: str | None) -> bool:
    return (status or "") in TERMINAL_STATUSES


def parse_duration(raw: Any) -> int:
    if raw in (None, ""):
        return 0
    try:
        return max(int(float(str(raw).strip())), 0)
    except (ValueError, OverflowError):
        return 0


def was_delivered(call_status: str | None, duration_seconds: int) -> bool:
    """An automated notification counts as heard only if it completed and ran past the voicemail window."""
    return (call_status or "").strip().lower() == "completed" and duration_seconds > MIN_HEARD_SECONDS
