from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx

from frost_autofix.domain.errors import StorageFault
from frost_autofix.domain.events import EventType
from frost_autofix.domain.models import FixTask
from frost_autofix.observability import get_logger
from frost_autofix.reconciler import CallbackReport
from frost_autofix.storage.event_log import EventLog
from frost_autofix.storage.mailbox import MailboxStore

_log = get_logger('frost_autofix.clients')

_DETAIL_MAX_CHARS = 300


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    status_code: int | None = None
    detail: str = ''


class TaskSink(Protocol):
    def submit(self, task: FixTask) -> DeliveryResult:
        ...


def _bearer_headers(token: str | None) -> dict[str, str]:
    headers = {'Content-Type': 'application/json'}
    if token:
        headers['Authorization'] = f'Bearer {token}'
    return headers


def _post_json(
    url: str,
    payload: dict,
    *,
    token: str | None,
    timeout: float,
    transport: httpx.BaseTransport | None,
) -> DeliveryResult:
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.post(url, json=payload, headers=_bearer_headers(token))
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return DeliveryResult(ok=False, status_code=None, detail=f'{type(exc).__name__}: {exc}'[:_DETAIL_MAX_CHARS])
    if resp.status_code >= 400:
        return DeliveryResult(ok=False, status_code=resp.status_code, detail=resp.text[:_DETAIL_MAX_CHARS])
    detail = ''
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = str(body.get('task_id') or body.get('status') or '')
    return DeliveryResult(ok=True, status_code=resp.status_code, detail=detail)


class LocalTaskSink:
    """Writes admitted tasks straight into the mailbox of this process."""

    def __init__(self, mailbox: MailboxStore, event_log: EventLog | None = None):
        self.mailbox = mailbox
        self.event_log = event_log

    def submit(self, task: FixTask) -> DeliveryResult:
        try:
            stored = self.mailbox.enqueue(task)
        except FileExistsError:
            raise
        except (OSError, StorageFault) as exc:
            _log.error('local enqueue failed repo=%s issue=%s error=%s', task.repo, task.issue_number, exc)
            return DeliveryResult(ok=False, detail=str(exc)[:_DETAIL_MAX_CHARS])
        if self.event_log is not None:
            try:
                self.event_log.append(EventType.TASK_ENQUEUED, task=stored)
            except OSError:
                _log.exception('event log append failed task=%s', stored.name)
        return DeliveryResult(ok=True, detail=str(stored.name or ''))


class BackendTaskSink:
    """Forwards admitted tasks to a remote ``/enqueue`` endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None,
        timeout_seconds: float = 15,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout_seconds = float(timeout_seconds)
        self.transport = transport

    def submit(self, task: FixTask) -> DeliveryResult:
        payload = {
            'installation_id': task.installation_id,
            'repo': task.repo,
            'issue_number': task.issue_number,
            'issue_title': task.issue_title,
            'issue_body': task.issue_body,
            'labels': list(task.labels),
            'event_type': task.event_type,
        }
        result = _post_json(
            self.url,
            payload,
            token=self.token,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )
        if not result.ok:
            _log.error(
                'backend enqueue failed repo=%s issue=%s status=%s detail=%s',
                task.repo,
                task.issue_number,
                result.status_code,
                result.detail,
            )
        return result


class CallbackClient:
    def __init__(
        self,
        url: str,
        *,
        token: str | None,
        timeout_seconds: float = 15,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout_seconds = float(timeout_seconds)
        self.transport = transport

    def report(self, report: CallbackReport) -> DeliveryResult:
        payload: dict = {
            'installation_id': report.installation_id,
            'repo': report.repo,
            'issue_number': report.issue_number,
            'status': report.status,
        }
        if report.pr_number is not None:
            payload['pr_number'] = report.pr_number
        if report.error_message is not None:
            payload['error_message'] = report.error_message
        return _post_json(
            self.url,
            payload,
            token=self.token,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )
