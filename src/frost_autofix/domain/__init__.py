from frost_autofix.domain.events import EventType, normalize_event_type
from frost_autofix.domain.models import (
    ACTIVE_RUN_STATUSES,
    FixTask,
    Region,
    RunStatus,
    TaskOutcome,
    TriggerKind,
    can_transition,
)

__all__ = [
    'ACTIVE_RUN_STATUSES',
    'EventType',
    'FixTask',
    'Region',
    'RunStatus',
    'TaskOutcome',
    'TriggerKind',
    'can_transition',
    'normalize_event_type',
]
