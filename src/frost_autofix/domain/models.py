from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum


class RunStatus(str, Enum):
    QUEUED = 'queued'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    FAILED = 'failed'
    SKIPPED = 'skipped'


ACTIVE_RUN_STATUSES = frozenset({RunStatus.QUEUED.value, RunStatus.PROCESSING.value})
TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCESS.value, RunStatus.FAILED.value, RunStatus.SKIPPED.value}
)

_RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    RunStatus.QUEUED.value: frozenset(
        {RunStatus.PROCESSING.value, *TERMINAL_RUN_STATUSES}
    ),
    RunStatus.PROCESSING.value: TERMINAL_RUN_STATUSES,
    RunStatus.SUCCESS.value: frozenset(),
    RunStatus.FAILED.value: frozenset(),
    RunStatus.SKIPPED.value: frozenset(),
}


def can_transition(current: str | RunStatus, target: str | RunStatus) -> bool:
    current_text = current.value if isinstance(current, RunStatus) else str(current or '')
    target_text = target.value if isinstance(target, RunStatus) else str(target or '')
    return target_text in _RUN_TRANSITIONS.get(current_text, frozenset())


def expected_statuses_for(target: str | RunStatus) -> frozenset[str]:
    """Statuses a Run Record may hold for a move to *target* to be legal."""
    return frozenset(
        status for status in ACTIVE_RUN_STATUSES if can_transition(status, target)
    )


class Region(str, Enum):
    QUEUED = 'queued'
    IN_FLIGHT = 'in-flight'
    DONE = 'done'


class TriggerKind(str, Enum):
    ISSUE_OPENED = 'issue_opened'
    COMMAND_COMMENT = 'command_comment'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def current_month(now: datetime | None = None) -> str:
    value = now or utc_now()
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m')


@dataclass(frozen=True)
class FixTask:
    """One queued fix attempt as stored in the mailbox."""

    installation_id: int | None
    repo: str
    issue_number: int
    issue_title: str = ''
    issue_body: str = ''
    labels: tuple[str, ...] = ()
    event_type: str = TriggerKind.ISSUE_OPENED.value
    created_at: str = field(default_factory=utc_now_iso)
    retries: int = 0
    last_error: str | None = None
    result: dict | None = None
    completed_at: str | None = None
    status: str = Region.QUEUED.value
    not_before: str | None = None
    name: str | None = None

    def to_record(self) -> dict:
        return {
            'name': self.name,
            'installation_id': self.installation_id,
            'repo': self.repo,
            'issue_number': self.issue_number,
            'issue_title': self.issue_title,
            'issue_body': self.issue_body,
            'labels': list(self.labels),
            'event_type': self.event_type,
            'created_at': self.created_at,
            'retries': self.retries,
            'last_error': self.last_error,
            'result': self.result,
            'completed_at': self.completed_at,
            'status': self.status,
            'not_before': self.not_before,
        }

    @classmethod
    def from_record(cls, record: dict, *, name: str | None = None) -> 'FixTask':
        raw_installation = record.get('installation_id')
        return cls(
            installation_id=int(raw_installation) if raw_installation not in (None, '') else None,
            repo=str(record.get('repo') or ''),
            issue_number=int(record.get('issue_number') or record.get('issue') or 0),
            issue_title=str(record.get('issue_title') or record.get('title') or ''),
            issue_body=str(record.get('issue_body') or record.get('body') or ''),
            labels=tuple(str(label) for label in (record.get('labels') or [])),
            event_type=str(record.get('event_type') or record.get('type') or TriggerKind.ISSUE_OPENED.value),
            created_at=str(record.get('created_at') or record.get('timestamp') or utc_now_iso()),
            retries=int(record.get('retries') or 0),
            last_error=record.get('last_error'),
            result=record.get('result'),
            completed_at=record.get('completed_at'),
            status=str(record.get('status') or Region.QUEUED.value),
            not_before=record.get('not_before'),
            name=name or record.get('name'),
        )

    def with_changes(self, **changes) -> 'FixTask':
        return replace(self, **changes)


@dataclass(frozen=True)
class TaskOutcome:
    """How a claimed task leaves the in-flight region."""

    terminal: bool
    success: bool
    result: dict | None = None
    error: str | None = None
    not_before: str | None = None

    @classmethod
    def succeeded(cls, result: dict) -> 'TaskOutcome':
        return cls(terminal=True, success=True, result=result)

    @classmethod
    def gave_up(cls, error: str) -> 'TaskOutcome':
        return cls(terminal=True, success=False, result={'status': 'failed', 'error': error}, error=error)

    @classmethod
    def retry(cls, error: str, *, not_before: str | None = None) -> 'TaskOutcome':
        return cls(terminal=False, success=False, error=error, not_before=not_before)
