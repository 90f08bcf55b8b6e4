from __future__ import annotations

import json
from pathlib import Path

import httpx

from frost_autofix.clients import BackendTaskSink, CallbackClient, LocalTaskSink
from frost_autofix.domain.errors import StorageFault
from frost_autofix.domain.models import FixTask
from frost_autofix.reconciler import CallbackReport
from frost_autofix.storage.event_log import EventLog
from frost_autofix.storage.mailbox import FileMailboxStore, TaskNameCollision
import pytest


def _task() -> FixTask:
    return FixTask(
        installation_id=42,
        repo='acme/widgets',
        issue_number=7,
        issue_title='TypeError on save',
        issue_body='stack trace',
        labels=('bug',),
        event_type='issue_opened',
    )


def test_backend_sink_posts_task_with_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['auth'] = request.headers.get('authorization')
        seen['body'] = json.loads(request.content)
        return httpx.Response(200, json={'status': 'queued', 'task_id': 'abc'})

    sink = BackendTaskSink('http://backend.local/enqueue', token='be-token', transport=httpx.MockTransport(handler))

    result = sink.submit(_task())

    assert result.ok is True
    assert result.detail == 'abc'
    assert seen['auth'] == 'Bearer be-token'
    assert seen['body']['issue_number'] == 7
    assert seen['body']['labels'] == ['bug']


def test_backend_sink_reports_http_and_transport_errors():
    rejected = BackendTaskSink(
        'http://backend.local/enqueue',
        token=None,
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text='db down')),
    )
    result = rejected.submit(_task())
    assert result.ok is False
    assert result.status_code == 500
    assert result.detail == 'db down'

    def refused(request):
        raise httpx.ConnectError('refused', request=request)

    unreachable = BackendTaskSink('http://backend.local/enqueue', token=None, transport=httpx.MockTransport(refused))
    result = unreachable.submit(_task())
    assert result.ok is False
    assert result.status_code is None
    assert result.detail.startswith('ConnectError')


def test_callback_client_omits_empty_fields():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={'status': 'ok', 'updated': True})

    client = CallbackClient('http://api.local/callback', token='cb', transport=httpx.MockTransport(handler))

    client.report(CallbackReport(installation_id=42, repo='acme/widgets', issue_number=7, status='processing'))
    result = client.report(
        CallbackReport(installation_id=42, repo='acme/widgets', issue_number=7, status='success', pr_number=42)
    )

    assert result.ok is True
    assert bodies[0] == {'installation_id': 42, 'repo': 'acme/widgets', 'issue_number': 7, 'status': 'processing'}
    assert bodies[1]['pr_number'] == 42
    assert 'error_message' not in bodies[1]


def test_local_sink_enqueues_and_records_event(tmp_path: Path):
    store = FileMailboxStore(tmp_path / 'mailbox')
    events = EventLog(tmp_path / 'events.jsonl')

    result = LocalTaskSink(store, events).submit(_task())

    assert result.ok is True
    assert store.list_region('queued') == [result.detail]
    assert events.read()[0]['type'] == 'task_enqueued'
    assert events.read()[0]['task'] == result.detail


def test_local_sink_collision_propagates(tmp_path: Path):
    store = FileMailboxStore(tmp_path / 'mailbox')
    stored = store.enqueue(_task())

    with pytest.raises(TaskNameCollision):
        LocalTaskSink(store).submit(_task().with_changes(name=stored.name))


def test_local_sink_storage_failure_is_a_failed_delivery():
    class BrokenStore:
        def enqueue(self, task):
            raise StorageFault('disk full')

    result = LocalTaskSink(BrokenStore()).submit(_task())

    assert result.ok is False
    assert 'disk full' in result.detail


def test_callback_client_malformed_url_is_a_failed_delivery():
    client = CallbackClient('http://[::1/callback', token='t')

    result = client.report(CallbackReport(installation_id=42, repo='acme/widgets', issue_number=7, status='processing'))

    assert result.ok is False
    assert result.status_code is None
    assert result.detail.startswith('InvalidURL')


def test_local_sink_event_log_failure_keeps_enqueued_task(tmp_path: Path):
    class BrokenEventLog:
        def append(self, event_type, **payload):
            raise OSError('read-only file system')

    store = FileMailboxStore(tmp_path / 'mailbox')

    result = LocalTaskSink(store, BrokenEventLog()).submit(_task())

    assert result.ok is True
    assert store.list_region('queued') == [result.detail]
