from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from frost_autofix.domain.models import can_transition, current_month, expected_statuses_for
from frost_autofix.repository import InMemoryTenantLedger, RunUpdate, success_rate
import pytest


def test_run_transitions_are_monotonic():
    assert can_transition('queued', 'processing') is True
    assert can_transition('queued', 'success') is True
    assert can_transition('processing', 'failed') is True
    assert can_transition('processing', 'queued') is False
    assert can_transition('success', 'failed') is False
    assert can_transition('failed', 'success') is False


def test_expected_statuses_for_targets():
    assert expected_statuses_for('processing') == frozenset({'queued'})
    assert expected_statuses_for('success') == frozenset({'queued', 'processing'})
    assert expected_statuses_for('queued') == frozenset()


@pytest.mark.parametrize('total,successes,expected', [(0, 0, 0.0), (4, 1, 25.0), (3, 2, 66.7)])
def test_success_rate(total, successes, expected):
    assert success_rate(total, successes) == expected


def test_upsert_tenant_never_overwrites():
    ledger = InMemoryTenantLedger(default_pr_limit=5)
    ledger.upsert_tenant(42, account_login='acme')
    ledger.set_plan(42, plan='pro', pr_limit=100)

    row = ledger.upsert_tenant(42, account_login='other', plan='free', pr_limit=1)

    assert row['plan'] == 'pro'
    assert row['pr_limit'] == 100
    assert row['account_login'] == 'acme'


def test_set_plan_unknown_tenant_raises():
    with pytest.raises(KeyError):
        InMemoryTenantLedger().set_plan(1, plan='pro', pr_limit=10)


def test_duplicate_success_update_increments_once():
    ledger = InMemoryTenantLedger()
    ledger.upsert_tenant(42, account_login='acme')
    ledger.create_run(installation_id=42, repo='acme/widgets', issue_number=7)
    update = RunUpdate(installation_id=42, repo='acme/widgets', issue_number=7, status='success', pr_number=42)

    first = ledger.apply_run_update(update, usage_month='2025-06')
    completed_at = first.run['completed_at']
    second = ledger.apply_run_update(update, usage_month='2025-06')

    assert first.usage_incremented is True
    assert second.updated is False
    assert ledger.get_usage(42, '2025-06') == 1
    assert ledger.runs[0]['completed_at'] == completed_at


def test_concurrent_increments_are_exact():
    ledger = InMemoryTenantLedger()

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: ledger.increment_usage(42, '2025-06'), range(100)))

    assert ledger.get_usage(42, '2025-06') == 100


def test_list_runs_order_and_stats():
    ledger = InMemoryTenantLedger()
    ledger.create_run(installation_id=42, repo='acme/widgets', issue_number=1)
    ledger.create_run(installation_id=42, repo='acme/widgets', issue_number=2)
    ledger.create_run(installation_id=43, repo='globex/app', issue_number=1)
    ledger.apply_run_update(RunUpdate(installation_id=42, repo='acme/widgets', issue_number=1, status='skipped'))

    assert ledger.get_usage(42, current_month()) == 0
    runs = ledger.list_runs(installation_id=42)
    assert [run['issue_number'] for run in runs] == [2, 1]
    assert ledger.stats() == {'installations': 0, 'total_runs': 3, 'prs_created': 0, 'success_rate': 0.0}
