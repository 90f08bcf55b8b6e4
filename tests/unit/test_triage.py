from __future__ import annotations

from conftest import comment_event, issue_event
from frost_autofix.domain.models import TriggerKind
from frost_autofix.triage import is_fix_command, label_names, looks_like_bug, route_event
import pytest


@pytest.mark.parametrize(
    'title,body,labels',
    [
        ('TypeError: cannot read property of undefined', '', ()),
        ('App crashes on save', '', ()),
        ('Weird output', 'Traceback (most recent call last):', ()),
        ('Weird output', '', ('Bug',)),
        ('Weird output', '', ('needs-fix',)),
        ('Weird output', '', ('ERROR-handling',)),
    ],
)
def test_looks_like_bug_accepts_keywords_and_labels(title, body, labels):
    assert looks_like_bug(title, body, labels) is True


def test_looks_like_bug_rejects_feature_request():
    assert looks_like_bug('Add dark mode', 'Would be nice at night', ('enhancement',)) is False


def test_label_names_accepts_dicts_and_strings():
    assert label_names([{'name': 'bug'}, 'ui', {'name': ''}, None]) == ('bug', 'ui')


@pytest.mark.parametrize('text', ['/fix', '/autofix', '  /FIX  ', '/AutoFix\n'])
def test_is_fix_command_matches_commands(text):
    assert is_fix_command(text) is True


@pytest.mark.parametrize('text', ['/fix please', 'fix', '', None, '/fixit'])
def test_is_fix_command_rejects_other_text(text):
    assert is_fix_command(text) is False


def test_route_event_issue_opened():
    routed = route_event('issues', issue_event(title='Crash', labels=('bug',)))

    assert routed is not None
    assert routed.kind == TriggerKind.ISSUE_OPENED
    assert routed.installation_id == 42
    assert routed.repo == 'acme/widgets'
    assert routed.issue_number == 7
    assert routed.labels == ('bug',)
    assert routed.account_login == 'acme'
    assert routed.account_type == 'Organization'


def test_route_event_fix_comment():
    routed = route_event('issue_comment', comment_event(comment=' /autofix '))

    assert routed is not None
    assert routed.kind == TriggerKind.COMMAND_COMMENT


@pytest.mark.parametrize(
    'event_name,payload',
    [
        ('issues', issue_event(title='Crash', action='closed')),
        ('issue_comment', comment_event(comment='thanks!')),
        ('push', {'ref': 'refs/heads/main'}),
        (None, {}),
    ],
)
def test_route_event_ignores_other_events(event_name, payload):
    assert route_event(event_name, payload) is None


def test_route_event_without_installation_keeps_none():
    routed = route_event('issues', issue_event(title='Crash', installation_id=None))
    assert routed is not None
    assert routed.installation_id is None
