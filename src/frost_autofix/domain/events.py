from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    CALLBACK_FAILED = 'callback_failed'
    TASK_CLAIMED = 'task_claimed'
    TASK_COMPLETED = 'task_completed'
    TASK_ENQUEUED = 'task_enqueued'
    TASK_FAILED = 'task_failed'
    TASK_RECOVERED = 'task_recovered'
    TASK_RETRY_SCHEDULED = 'task_retry_scheduled'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text
