from __future__ import annotations

from datetime import datetime, timezone

from frost_autofix.domain.errors import AuthError, DuplicateCallback, InputValidationError
from frost_autofix.reconciler import CallbackReconciler, CallbackReport, bearer_token, token_matches
from frost_autofix.repository import InMemoryTenantLedger
import pytest

TOKEN = 'cb-token'
AUTH = f'Bearer {TOKEN}'
NOW = datetime(2025, 6, 15, tzinfo=timezone.utc)


def _setup():
    ledger = InMemoryTenantLedger()
    ledger.upsert_tenant(42, account_login='acme')
    ledger.create_run(installation_id=42, repo='acme/widgets', issue_number=7)
    return ledger, CallbackReconciler(ledger, token=TOKEN)


def _report(status: str = 'success', **changes) -> CallbackReport:
    values = {
        'installation_id': 42,
        'repo': 'acme/widgets',
        'issue_number': 7,
        'status': status,
        'pr_number': 42 if status == 'success' else None,
    }
    values.update(changes)
    return CallbackReport(**values)


def test_bearer_token_parsing():
    assert bearer_token('Bearer abc') == 'abc'
    assert bearer_token('bearer  abc ') == 'abc'
    assert bearer_token('Basic abc') is None
    assert bearer_token(None) is None


def test_token_matches_fails_closed():
    assert token_matches('abc', 'abc') is True
    assert token_matches('abc', 'abd') is False
    assert token_matches(None, 'abc') is False
    assert token_matches('abc', None) is False


@pytest.mark.parametrize('authorization', [None, '', 'Bearer wrong', TOKEN])
def test_reconcile_rejects_bad_token_without_changes(authorization):
    ledger, reconciler = _setup()

    with pytest.raises(AuthError):
        reconciler.reconcile(_report(), authorization=authorization, now=NOW)

    assert ledger.runs[0]['status'] == 'queued'
    assert ledger.usage == {}


def test_reconcile_without_configured_token_rejects_everything():
    ledger = InMemoryTenantLedger()
    reconciler = CallbackReconciler(ledger, token=None)
    with pytest.raises(AuthError):
        reconciler.reconcile(_report(), authorization='Bearer ', now=NOW)


def test_success_callback_updates_run_and_usage_once():
    ledger, reconciler = _setup()

    first = reconciler.reconcile(_report(), authorization=AUTH, now=NOW)
    completed_at = ledger.runs[0]['completed_at']
    second = reconciler.reconcile(_report(), authorization=AUTH, now=NOW)

    assert first.to_payload() == {'status': 'ok', 'updated': True, 'usage_incremented': True}
    assert second.to_payload() == {
        'status': 'ok',
        'updated': False,
        'usage_incremented': False,
        'reason': 'duplicate_callback',
    }
    assert ledger.runs[0]['status'] == 'success'
    assert ledger.runs[0]['pr_number'] == 42
    assert ledger.runs[0]['completed_at'] == completed_at
    assert ledger.get_usage(42, '2025-06') == 1


def test_success_without_pr_does_not_count_usage():
    ledger, reconciler = _setup()

    result = reconciler.reconcile(_report(pr_number=None), authorization=AUTH, now=NOW)

    assert result.updated is True
    assert result.usage_incremented is False
    assert ledger.usage == {}


def test_processing_then_failed():
    ledger, reconciler = _setup()

    reconciler.reconcile(_report('processing'), authorization=AUTH, now=NOW)
    assert ledger.runs[0]['status'] == 'processing'
    assert ledger.runs[0]['completed_at'] is None

    reconciler.reconcile(_report('failed', error_message='command_timeout'), authorization=AUTH, now=NOW)
    assert ledger.runs[0]['status'] == 'failed'
    assert ledger.runs[0]['error_message'] == 'command_timeout'

    late = reconciler.reconcile(_report(), authorization=AUTH, now=NOW)
    assert late.updated is False
    assert ledger.runs[0]['status'] == 'failed'


def test_late_processing_does_not_reopen_terminal_run():
    ledger, reconciler = _setup()
    reconciler.reconcile(_report(), authorization=AUTH, now=NOW)

    result = reconciler.reconcile(_report('processing'), authorization=AUTH, now=NOW)

    assert result.updated is False
    assert ledger.runs[0]['status'] == 'success'


def test_apply_raises_duplicate_for_unknown_run():
    ledger, reconciler = _setup()
    with pytest.raises(DuplicateCallback):
        reconciler.apply(_report(issue_number=99), now=NOW)


def test_apply_rejects_unknown_status():
    _, reconciler = _setup()
    with pytest.raises(InputValidationError):
        reconciler.apply(_report('queued'), now=NOW)
