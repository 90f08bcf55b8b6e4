from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import hashlib
import hmac
import json
from typing import Mapping

from frost_autofix.clients import TaskSink
from frost_autofix.domain.errors import (
    AuthError,
    ClassificationReject,
    DuplicateCallback,
    InputValidationError,
    MissingTenant,
    QuotaExceeded,
)
from frost_autofix.domain.models import FixTask, RunStatus, TriggerKind, current_month
from frost_autofix.observability import get_logger, task_context
from frost_autofix.reconciler import CallbackReconciler, CallbackReport
from frost_autofix.repository import UNLIMITED_PR_LIMIT, TenantLedger
from frost_autofix.triage import RoutedEvent, looks_like_bug, route_event

_log = get_logger('frost_autofix.admission')

EVENT_HEADER = 'X-GitHub-Event'
SIGNATURE_HEADER = 'X-Hub-Signature-256'


def sign_body(body: bytes, secret: str) -> str:
    return 'sha256=' + hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time check of a ``sha256=<hex>`` header over the raw body.

    Fails closed when either the header or the configured secret is missing.
    """
    if not signature or not secret:
        return False
    expected = sign_body(body, secret)
    return hmac.compare_digest(expected.encode('utf-8'), str(signature).strip().encode('utf-8'))


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    wanted = name.lower()
    for key, candidate in headers.items():
        if str(key).lower() == wanted:
            return candidate
    return None


def quota_allows(limit: int, count: int) -> bool:
    if limit == UNLIMITED_PR_LIMIT:
        return True
    return not (limit > 0 and count >= limit)


@dataclass(frozen=True)
class AdmissionOutcome:
    status: str
    http_status: int = 200
    reason: str | None = None
    payload: dict = field(default_factory=dict)

    @property
    def enqueued(self) -> bool:
        return self.status == 'queued'

    def to_payload(self) -> dict:
        body: dict = {'status': self.status}
        if self.reason:
            body['reason'] = self.reason
        body.update(self.payload)
        return body


class AdmissionController:
    def __init__(
        self,
        ledger: TenantLedger,
        sink: TaskSink,
        *,
        webhook_secret: str | None,
        reconciler: CallbackReconciler | None = None,
        default_pr_limit: int = 5,
        body_max_chars: int = 4000,
    ):
        self.ledger = ledger
        self.sink = sink
        self.webhook_secret = webhook_secret
        self.reconciler = reconciler or CallbackReconciler(ledger, token=None)
        self.default_pr_limit = int(default_pr_limit)
        self.body_max_chars = max(1, int(body_max_chars))

    def admit(self, body: bytes, headers: Mapping[str, str], *, now: datetime | None = None) -> AdmissionOutcome:
        event_name = _header(headers, EVENT_HEADER)
        try:
            self._authenticate(body, _header(headers, SIGNATURE_HEADER))
        except AuthError as exc:
            _log.warning('webhook rejected event=%s reason=%s', event_name, exc.code)
            return AdmissionOutcome(status='rejected', http_status=401, reason=exc.code)

        payload = self._parse(body)
        event = route_event(event_name, payload)
        if event is None:
            return AdmissionOutcome(status='ignored', payload={'event': event_name})

        with task_context(None, event.installation_id):
            try:
                return self._admit_routed(event, now=now)
            except (ClassificationReject, QuotaExceeded, MissingTenant) as exc:
                _log.info(
                    'event skipped repo=%s issue=%s reason=%s',
                    event.repo,
                    event.issue_number,
                    exc.code,
                )
                details = {'repo': event.repo, 'issue_number': event.issue_number}
                if isinstance(exc, QuotaExceeded):
                    details['limit'] = exc.limit
                return AdmissionOutcome(status='skipped', reason=exc.code, payload=details)

    def _authenticate(self, body: bytes, signature: str | None) -> None:
        if not self.webhook_secret:
            raise AuthError('webhook secret is not configured')
        if not signature:
            raise AuthError('signature header missing')
        if not verify_signature(body, signature, self.webhook_secret):
            raise AuthError('signature mismatch')

    @staticmethod
    def _parse(body: bytes) -> dict:
        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InputValidationError('request body must be a JSON object', field='body') from exc
        if not isinstance(payload, dict):
            raise InputValidationError('request body must be a JSON object', field='body')
        return payload

    def _admit_routed(self, event: RoutedEvent, *, now: datetime | None) -> AdmissionOutcome:
        if event.installation_id is None:
            raise MissingTenant('event carries no installation')
        if not event.repo:
            raise InputValidationError('repository.full_name is required', field='repository.full_name')
        if event.issue_number <= 0:
            raise InputValidationError('issue.number is required', field='issue.number')

        # Explicit /fix comments skip classification but still count against the quota.
        if event.kind == TriggerKind.ISSUE_OPENED and not looks_like_bug(
            event.issue_title, event.issue_body, event.labels,
        ):
            raise ClassificationReject(f'{event.repo}#{event.issue_number} does not look like a bug')

        tenant = self.ledger.upsert_tenant(
            event.installation_id,
            account_login=event.account_login,
            account_type=event.account_type,
            pr_limit=self.default_pr_limit,
        )
        limit = int(tenant.get('pr_limit', self.default_pr_limit))
        month = current_month(now)
        count = self.ledger.get_usage(event.installation_id, month)
        if not quota_allows(limit, count):
            raise QuotaExceeded(f'{count} of {limit} fixes used in {month}', limit=limit, count=count)

        run = self.ledger.create_run(
            installation_id=event.installation_id,
            repo=event.repo,
            issue_number=event.issue_number,
        )
        task = FixTask(
            installation_id=event.installation_id,
            repo=event.repo,
            issue_number=event.issue_number,
            issue_title=event.issue_title,
            issue_body=event.issue_body[: self.body_max_chars],
            labels=event.labels,
            event_type=event.kind.value,
        )
        delivery = self.sink.submit(task)
        if not delivery.ok:
            self._close_undelivered_run(event, delivery.detail)
            return AdmissionOutcome(
                status='error',
                http_status=502,
                reason='backend_error',
                payload={'repo': event.repo, 'issue_number': event.issue_number},
            )
        _log.info(
            'event admitted repo=%s issue=%s trigger=%s run_id=%s task=%s',
            event.repo,
            event.issue_number,
            event.kind.value,
            run.get('id'),
            delivery.detail,
        )
        return AdmissionOutcome(
            status='queued',
            payload={
                'repo': event.repo,
                'issue_number': event.issue_number,
                'run_id': run.get('id'),
                'task_id': delivery.detail or None,
            },
        )

    def _close_undelivered_run(self, event: RoutedEvent, detail: str) -> None:
        try:
            self.reconciler.apply(
                CallbackReport(
                    installation_id=event.installation_id,
                    repo=event.repo,
                    issue_number=event.issue_number,
                    status=RunStatus.FAILED.value,
                    error_message=f'enqueue_failed: {detail}',
                )
            )
        except DuplicateCallback:
            _log.warning('undelivered run already closed repo=%s issue=%s', event.repo, event.issue_number)
