from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from frost_autofix.domain.models import (
    RunStatus,
    TERMINAL_RUN_STATUSES,
    expected_statuses_for,
    utc_now_iso,
)

UNLIMITED_PR_LIMIT = -1
DEFAULT_PLAN = 'free'
RECENT_RUNS_LIMIT = 10


@dataclass(frozen=True)
class RunUpdate:
    installation_id: int | None
    repo: str
    issue_number: int
    status: str
    pr_number: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class RunUpdateResult:
    run: dict | None
    usage_incremented: bool = False

    @property
    def updated(self) -> bool:
        return self.run is not None


def success_rate(total_runs: int, successes: int) -> float:
    if total_runs <= 0:
        return 0.0
    return round((successes / total_runs) * 100.0, 1)


class TenantLedger(Protocol):
    def upsert_tenant(
        self,
        installation_id: int,
        *,
        account_login: str,
        account_type: str = 'User',
        plan: str = DEFAULT_PLAN,
        pr_limit: int | None = None,
    ) -> dict:
        """Insert the tenant if absent; an existing row is returned untouched."""
        ...

    def get_tenant(self, installation_id: int) -> dict | None:
        ...

    def set_plan(self, installation_id: int, *, plan: str, pr_limit: int) -> dict:
        ...

    def get_usage(self, installation_id: int, month: str) -> int:
        ...

    def increment_usage(self, installation_id: int, month: str) -> int:
        ...

    def create_run(self, *, installation_id: int, repo: str, issue_number: int) -> dict:
        ...

    def apply_run_update(self, update: RunUpdate, *, usage_month: str | None = None) -> RunUpdateResult:
        """Advance the oldest active matching run.

        Only runs still ``queued``/``processing`` are touched. When a run was
        advanced and *usage_month* is given, that month's usage counter is
        incremented in the same unit of work.
        """
        ...

    def list_runs(self, *, installation_id: int | None = None, limit: int = RECENT_RUNS_LIMIT) -> list[dict]:
        ...

    def stats(self) -> dict:
        ...


class InMemoryTenantLedger:
    def __init__(self, *, default_pr_limit: int = 5):
        self.default_pr_limit = int(default_pr_limit)
        self.tenants: dict[int, dict] = {}
        self.runs: list[dict] = []
        self.usage: dict[tuple[int, str], int] = {}
        self._lock = Lock()

    def upsert_tenant(
        self,
        installation_id: int,
        *,
        account_login: str,
        account_type: str = 'User',
        plan: str = DEFAULT_PLAN,
        pr_limit: int | None = None,
    ) -> dict:
        key = int(installation_id)
        with self._lock:
            existing = self.tenants.get(key)
            if existing is not None:
                return dict(existing)
            now = utc_now_iso()
            row = {
                'github_installation_id': key,
                'account_login': str(account_login or ''),
                'account_type': str(account_type or 'User'),
                'plan': str(plan or DEFAULT_PLAN),
                'pr_limit': int(self.default_pr_limit if pr_limit is None else pr_limit),
                'created_at': now,
                'updated_at': now,
            }
            self.tenants[key] = row
            return dict(row)

    def get_tenant(self, installation_id: int) -> dict | None:
        row = self.tenants.get(int(installation_id))
        return dict(row) if row is not None else None

    def set_plan(self, installation_id: int, *, plan: str, pr_limit: int) -> dict:
        with self._lock:
            row = self.tenants.get(int(installation_id))
            if row is None:
                raise KeyError(installation_id)
            row['plan'] = str(plan)
            row['pr_limit'] = int(pr_limit)
            row['updated_at'] = utc_now_iso()
            return dict(row)

    def get_usage(self, installation_id: int, month: str) -> int:
        return int(self.usage.get((int(installation_id), str(month)), 0))

    def increment_usage(self, installation_id: int, month: str) -> int:
        with self._lock:
            return self._increment_usage_locked(int(installation_id), str(month))

    def create_run(self, *, installation_id: int, repo: str, issue_number: int) -> dict:
        with self._lock:
            row = {
                'id': len(self.runs) + 1,
                'installation_id': int(installation_id),
                'repo': str(repo),
                'issue_number': int(issue_number),
                'pr_number': None,
                'status': RunStatus.QUEUED.value,
                'error_message': None,
                'created_at': utc_now_iso(),
                'completed_at': None,
            }
            self.runs.append(row)
            return dict(row)

    def apply_run_update(self, update: RunUpdate, *, usage_month: str | None = None) -> RunUpdateResult:
        expected = expected_statuses_for(update.status)
        with self._lock:
            for row in self.runs:
                if row['repo'] != update.repo or row['issue_number'] != int(update.issue_number):
                    continue
                if update.installation_id is not None and row['installation_id'] != int(update.installation_id):
                    continue
                if row['status'] not in expected:
                    continue
                row['status'] = update.status
                if update.pr_number is not None:
                    row['pr_number'] = int(update.pr_number)
                if update.error_message is not None:
                    row['error_message'] = update.error_message
                if update.status in TERMINAL_RUN_STATUSES:
                    row['completed_at'] = utc_now_iso()
                incremented = False
                if usage_month is not None:
                    self._increment_usage_locked(row['installation_id'], usage_month)
                    incremented = True
                return RunUpdateResult(run=dict(row), usage_incremented=incremented)
        return RunUpdateResult(run=None)

    def list_runs(self, *, installation_id: int | None = None, limit: int = RECENT_RUNS_LIMIT) -> list[dict]:
        rows = [
            dict(row)
            for row in self.runs
            if installation_id is None or row['installation_id'] == int(installation_id)
        ]
        rows.sort(key=lambda row: (row['created_at'], row['id']), reverse=True)
        return rows[: max(0, int(limit))]

    def stats(self) -> dict:
        total = len(self.runs)
        successes = sum(1 for row in self.runs if row['status'] == RunStatus.SUCCESS.value)
        prs = sum(1 for row in self.runs if row['pr_number'] is not None)
        return {
            'installations': len(self.tenants),
            'total_runs': total,
            'prs_created': prs,
            'success_rate': success_rate(total, successes),
        }

    def _increment_usage_locked(self, installation_id: int, month: str) -> int:
        key = (installation_id, month)
        self.usage[key] = self.usage.get(key, 0) + 1
        return self.usage[key]
