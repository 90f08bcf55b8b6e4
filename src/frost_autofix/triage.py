from __future__ import annotations

from dataclasses import dataclass

from frost_autofix.domain.models import TriggerKind

BUG_KEYWORDS = (
    'error',
    'bug',
    'crash',
    'fail',
    'broken',
    'exception',
    'traceback',
    'typeerror',
    'referenceerror',
    'undefined',
)
LABEL_MARKERS = ('bug', 'fix', 'error')
FIX_COMMANDS = frozenset({'/fix', '/autofix'})


@dataclass(frozen=True)
class RoutedEvent:
    kind: TriggerKind
    installation_id: int | None
    repo: str
    issue_number: int
    issue_title: str
    issue_body: str
    labels: tuple[str, ...]
    account_login: str
    account_type: str


def label_names(raw_labels) -> tuple[str, ...]:
    names: list[str] = []
    for label in raw_labels or []:
        if isinstance(label, dict):
            name = label.get('name')
        else:
            name = label
        text = str(name or '').strip()
        if text:
            names.append(text)
    return tuple(names)


def looks_like_bug(title: str, body: str, labels) -> bool:
    for name in label_names(labels):
        lowered = name.lower()
        if any(marker in lowered for marker in LABEL_MARKERS):
            return True
    text = f'{title or ""} {body or ""}'.lower()
    return any(keyword in text for keyword in BUG_KEYWORDS)


def is_fix_command(text: str | None) -> bool:
    return str(text or '').strip().lower() in FIX_COMMANDS


def route_event(event_name: str | None, payload: dict) -> RoutedEvent | None:
    """Map a platform event onto a trigger, or None when it should be ignored.

    Only an opened issue or a ``/fix`` / ``/autofix`` comment produce work.
    The returned event is not validated beyond shape; admission decides what a
    missing installation or issue number means.
    """
    event = str(event_name or '').strip().lower()
    action = str(payload.get('action') or '').strip().lower()
    if event == 'issues' and action == 'opened':
        kind = TriggerKind.ISSUE_OPENED
    elif event == 'issue_comment' and action == 'created':
        comment = payload.get('comment') or {}
        if not isinstance(comment, dict) or not is_fix_command(comment.get('body')):
            return None
        kind = TriggerKind.COMMAND_COMMENT
    else:
        return None

    issue = payload.get('issue') or {}
    repository = payload.get('repository') or {}
    installation = payload.get('installation') or {}
    if not isinstance(issue, dict):
        issue = {}
    if not isinstance(repository, dict):
        repository = {}
    if not isinstance(installation, dict):
        installation = {}
    owner = repository.get('owner') or {}
    if not isinstance(owner, dict):
        owner = {}

    raw_installation = installation.get('id')
    try:
        installation_id = int(raw_installation) if raw_installation not in (None, '') else None
    except (TypeError, ValueError):
        installation_id = None
    try:
        issue_number = int(issue.get('number') or 0)
    except (TypeError, ValueError):
        issue_number = 0

    return RoutedEvent(
        kind=kind,
        installation_id=installation_id,
        repo=str(repository.get('full_name') or ''),
        issue_number=issue_number,
        issue_title=str(issue.get('title') or ''),
        issue_body=str(issue.get('body') or ''),
        labels=label_names(issue.get('labels')),
        account_login=str(owner.get('login') or ''),
        account_type=str(owner.get('type') or 'User'),
    )
