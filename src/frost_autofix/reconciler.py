from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import hmac

from frost_autofix.domain.errors import AuthError, DuplicateCallback, InputValidationError
from frost_autofix.domain.models import RunStatus, current_month
from frost_autofix.observability import get_logger
from frost_autofix.repository import RunUpdate, TenantLedger

_log = get_logger('frost_autofix.reconciler')

REPORTABLE_STATUSES = frozenset(
    {
        RunStatus.PROCESSING.value,
        RunStatus.SUCCESS.value,
        RunStatus.FAILED.value,
        RunStatus.SKIPPED.value,
    }
)


@dataclass(frozen=True)
class CallbackReport:
    installation_id: int | None
    repo: str
    issue_number: int
    status: str
    pr_number: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ReconcileResult:
    updated: bool
    usage_incremented: bool = False
    run: dict | None = None
    reason: str | None = None

    def to_payload(self) -> dict:
        payload: dict = {
            'status': 'ok',
            'updated': self.updated,
            'usage_incremented': self.usage_incremented,
        }
        if self.reason:
            payload['reason'] = self.reason
        return payload


def bearer_token(authorization: str | None) -> str | None:
    text = str(authorization or '').strip()
    scheme, _, token = text.partition(' ')
    if scheme.lower() != 'bearer':
        return None
    return token.strip() or None


def token_matches(presented: str | None, expected: str | None) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode('utf-8'), expected.encode('utf-8'))


class CallbackReconciler:
    """Folds consumer outcome reports into Run Records and monthly usage."""

    def __init__(self, ledger: TenantLedger, *, token: str | None):
        self.ledger = ledger
        self._token = token

    def authenticate(self, authorization: str | None) -> None:
        if not token_matches(bearer_token(authorization), self._token):
            raise AuthError('invalid callback token')

    def reconcile(self, report: CallbackReport, *, authorization: str | None, now: datetime | None = None) -> ReconcileResult:
        self.authenticate(authorization)
        try:
            return self.apply(report, now=now)
        except DuplicateCallback as exc:
            _log.info(
                'callback ignored repo=%s issue=%s status=%s reason=%s',
                report.repo,
                report.issue_number,
                report.status,
                exc.code,
            )
            return ReconcileResult(updated=False, reason=exc.code)

    def apply(self, report: CallbackReport, *, now: datetime | None = None) -> ReconcileResult:
        """Apply *report* without authentication; raises DuplicateCallback when no run moved."""
        status = str(report.status or '').strip().lower()
        if status not in REPORTABLE_STATUSES:
            raise InputValidationError(f'unsupported callback status: {report.status}', field='status')
        if not str(report.repo or '').strip():
            raise InputValidationError('repo is required', field='repo')

        usage_month = None
        if status == RunStatus.SUCCESS.value and report.pr_number is not None:
            usage_month = current_month(now)
        result = self.ledger.apply_run_update(
            RunUpdate(
                installation_id=report.installation_id,
                repo=report.repo,
                issue_number=int(report.issue_number),
                status=status,
                pr_number=report.pr_number,
                error_message=report.error_message,
            ),
            usage_month=usage_month,
        )
        if not result.updated:
            raise DuplicateCallback(
                f'no active run for {report.repo}#{report.issue_number}',
                status=status,
            )
        _log.info(
            'run updated run_id=%s repo=%s issue=%s status=%s pr=%s usage_incremented=%s',
            result.run.get('id') if result.run else None,
            report.repo,
            report.issue_number,
            status,
            report.pr_number,
            result.usage_incremented,
        )
        return ReconcileResult(updated=True, usage_incremented=result.usage_incremented, run=result.run)
