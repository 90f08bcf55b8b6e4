from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Callable, Iterator, TypeVar

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, aliased, mapped_column, sessionmaker

from frost_autofix.domain.errors import StorageFault
from frost_autofix.domain.models import (
    FixTask,
    Region,
    RunStatus,
    TERMINAL_RUN_STATUSES,
    TaskOutcome,
    expected_statuses_for,
)
from frost_autofix.repository import (
    DEFAULT_PLAN,
    RECENT_RUNS_LIMIT,
    RunUpdate,
    RunUpdateResult,
    success_rate,
)
from frost_autofix.storage.mailbox import TaskNameCollision, is_due, make_task_name, settle

T = TypeVar('T')


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class TenantEntity(Base):
    __tablename__ = 'installations'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    github_installation_id: Mapped[int] = mapped_column(Integer(), unique=True, nullable=False)
    account_login: Mapped[str] = mapped_column(String(255), nullable=False)
    account_type: Mapped[str] = mapped_column(String(32), nullable=False, default='User')
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default=DEFAULT_PLAN)
    pr_limit: Mapped[int] = mapped_column(Integer(), nullable=False, default=5)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RunEntity(Base):
    __tablename__ = 'fix_runs'
    __table_args__ = (
        Index('idx_fix_runs_repo', 'repo', 'created_at'),
        Index('idx_fix_runs_installation', 'installation_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    installation_id: Mapped[int] = mapped_column(
        Integer(), ForeignKey('installations.github_installation_id'), nullable=False,
    )
    repo: Mapped[str] = mapped_column(String(255), nullable=False)
    issue_number: Mapped[int] = mapped_column(Integer(), nullable=False)
    pr_number: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RunStatus.QUEUED.value)
    error_message: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UsageEntity(Base):
    __tablename__ = 'usage_monthly'
    __table_args__ = (
        UniqueConstraint('installation_id', 'month', name='uq_usage_monthly_installation_month'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    installation_id: Mapped[int] = mapped_column(
        Integer(), ForeignKey('installations.github_installation_id'), nullable=False,
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    pr_count: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)


class MailboxTaskEntity(Base):
    __tablename__ = 'mailbox_tasks'
    __table_args__ = (
        Index('ix_mailbox_tasks_state_name', 'state', 'name'),
    )

    name: Mapped[str] = mapped_column(String(200), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Webhook, callback and consumer traffic share one sqlite file.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class _SqliteLockRetry:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        # Small exponential backoff capped to keep request handlers responsive.
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _retrying(self, op_name: str, fn: Callable[[Session], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    return fn(session)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{op_name}_retry_exhausted')


class SqlTenantLedger(_SqliteLockRetry):
    def __init__(self, db: Database, *, default_pr_limit: int = 5):
        super().__init__(db)
        self.default_pr_limit = int(default_pr_limit)

    def upsert_tenant(
        self,
        installation_id: int,
        *,
        account_login: str,
        account_type: str = 'User',
        plan: str = DEFAULT_PLAN,
        pr_limit: int | None = None,
    ) -> dict:
        now = datetime.now(timezone.utc)
        values = {
            'github_installation_id': int(installation_id),
            'account_login': str(account_login or ''),
            'account_type': str(account_type or 'User'),
            'plan': str(plan or DEFAULT_PLAN),
            'pr_limit': int(self.default_pr_limit if pr_limit is None else pr_limit),
            'created_at': now,
            'updated_at': now,
        }

        def op(session: Session) -> dict:
            dialect_name = session.get_bind().dialect.name
            if dialect_name == 'sqlite':
                session.execute(
                    sqlite_insert(TenantEntity)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=[TenantEntity.github_installation_id])
                )
            elif dialect_name == 'postgresql':
                session.execute(
                    pg_insert(TenantEntity)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=[TenantEntity.github_installation_id])
                )
            else:
                exists = self._tenant_row(session, installation_id)
                if exists is None:
                    try:
                        with session.begin_nested():
                            session.add(TenantEntity(**values))
                    except IntegrityError:
                        pass
            row = self._tenant_row(session, installation_id)
            if row is None:
                raise KeyError(installation_id)
            return self._tenant_to_dict(row)

        return self._retrying('upsert_tenant', op)

    def get_tenant(self, installation_id: int) -> dict | None:
        with self.db.session() as session:
            row = self._tenant_row(session, installation_id)
            return self._tenant_to_dict(row) if row is not None else None

    def set_plan(self, installation_id: int, *, plan: str, pr_limit: int) -> dict:
        def op(session: Session) -> dict:
            row = self._tenant_row(session, installation_id)
            if row is None:
                raise KeyError(installation_id)
            row.plan = str(plan)
            row.pr_limit = int(pr_limit)
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.flush()
            return self._tenant_to_dict(row)

        return self._retrying('set_plan', op)

    def get_usage(self, installation_id: int, month: str) -> int:
        with self.db.session() as session:
            value = session.execute(
                select(UsageEntity.pr_count).where(
                    UsageEntity.installation_id == int(installation_id),
                    UsageEntity.month == str(month),
                )
            ).scalar_one_or_none()
            return int(value or 0)

    def increment_usage(self, installation_id: int, month: str) -> int:
        return self._retrying(
            'increment_usage',
            lambda session: self._increment_usage(session, int(installation_id), str(month)),
        )

    def create_run(self, *, installation_id: int, repo: str, issue_number: int) -> dict:
        def op(session: Session) -> dict:
            row = RunEntity(
                installation_id=int(installation_id),
                repo=str(repo),
                issue_number=int(issue_number),
                pr_number=None,
                status=RunStatus.QUEUED.value,
                error_message=None,
                created_at=datetime.now(timezone.utc),
                completed_at=None,
            )
            session.add(row)
            session.flush()
            return self._run_to_dict(row)

        return self._retrying('create_run', op)

    def apply_run_update(self, update_: RunUpdate, *, usage_month: str | None = None) -> RunUpdateResult:
        expected = sorted(expected_statuses_for(update_.status))
        if not expected:
            return RunUpdateResult(run=None)

        def op(session: Session) -> RunUpdateResult:
            filters = [
                RunEntity.repo == update_.repo,
                RunEntity.issue_number == int(update_.issue_number),
                RunEntity.status.in_(expected),
            ]
            if update_.installation_id is not None:
                filters.append(RunEntity.installation_id == int(update_.installation_id))
            candidates = session.execute(
                select(RunEntity.id)
                .where(*filters)
                .order_by(RunEntity.created_at.asc(), RunEntity.id.asc())
            ).scalars().all()
            values: dict[str, object] = {'status': update_.status}
            if update_.pr_number is not None:
                values['pr_number'] = int(update_.pr_number)
            if update_.error_message is not None:
                values['error_message'] = update_.error_message
            if update_.status in TERMINAL_RUN_STATUSES:
                values['completed_at'] = datetime.now(timezone.utc)
            for run_id in candidates:
                result = session.execute(
                    update(RunEntity)
                    .where(RunEntity.id == run_id, RunEntity.status.in_(expected))
                    .values(**values)
                )
                if int(result.rowcount or 0) == 0:
                    continue
                row = session.get(RunEntity, run_id)
                session.refresh(row)
                incremented = False
                if usage_month is not None:
                    self._increment_usage(session, row.installation_id, usage_month)
                    incremented = True
                return RunUpdateResult(run=self._run_to_dict(row), usage_incremented=incremented)
            return RunUpdateResult(run=None)

        return self._retrying('apply_run_update', op)

    def list_runs(self, *, installation_id: int | None = None, limit: int = RECENT_RUNS_LIMIT) -> list[dict]:
        with self.db.session() as session:
            stmt = select(RunEntity)
            if installation_id is not None:
                stmt = stmt.where(RunEntity.installation_id == int(installation_id))
            rows = session.execute(
                stmt.order_by(RunEntity.created_at.desc(), RunEntity.id.desc()).limit(max(0, int(limit)))
            ).scalars().all()
            return [self._run_to_dict(row) for row in rows]

    def stats(self) -> dict:
        with self.db.session() as session:
            total, successes, prs = session.execute(
                select(
                    func.count(RunEntity.id),
                    func.coalesce(func.sum(case((RunEntity.status == RunStatus.SUCCESS.value, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((RunEntity.pr_number.is_not(None), 1), else_=0)), 0),
                )
            ).one()
            installations = session.execute(select(func.count(TenantEntity.id))).scalar_one()
        return {
            'installations': int(installations or 0),
            'total_runs': int(total or 0),
            'prs_created': int(prs or 0),
            'success_rate': success_rate(int(total or 0), int(successes or 0)),
        }

    @staticmethod
    def _increment_usage(session: Session, installation_id: int, month: str) -> int:
        bind = session.get_bind()
        dialect_name = bind.dialect.name if bind is not None else ''

        if dialect_name in {'sqlite', 'postgresql'}:
            insert_fn = sqlite_insert if dialect_name == 'sqlite' else pg_insert
            stmt = (
                insert_fn(UsageEntity)
                .values(installation_id=installation_id, month=month, pr_count=1)
                .on_conflict_do_update(
                    index_elements=[UsageEntity.installation_id, UsageEntity.month],
                    set_={'pr_count': UsageEntity.pr_count + 1},
                )
            )
            session.execute(stmt)
            return int(
                session.execute(
                    select(UsageEntity.pr_count).where(
                        UsageEntity.installation_id == installation_id,
                        UsageEntity.month == month,
                    )
                ).scalar_one()
            )

        # Fallback for other SQLAlchemy dialects.
        row = session.execute(
            select(UsageEntity)
            .where(UsageEntity.installation_id == installation_id, UsageEntity.month == month)
            .with_for_update()
        ).scalar_one_or_none()
        if row is None:
            session.add(UsageEntity(installation_id=installation_id, month=month, pr_count=1))
            session.flush()
            return 1
        row.pr_count = int(row.pr_count) + 1
        session.add(row)
        session.flush()
        return int(row.pr_count)

    @staticmethod
    def _tenant_row(session: Session, installation_id: int) -> TenantEntity | None:
        return session.execute(
            select(TenantEntity).where(TenantEntity.github_installation_id == int(installation_id))
        ).scalar_one_or_none()

    @staticmethod
    def _tenant_to_dict(row: TenantEntity) -> dict:
        return {
            'github_installation_id': row.github_installation_id,
            'account_login': row.account_login,
            'account_type': row.account_type,
            'plan': row.plan,
            'pr_limit': row.pr_limit,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }

    @staticmethod
    def _run_to_dict(row: RunEntity) -> dict:
        return {
            'id': row.id,
            'installation_id': row.installation_id,
            'repo': row.repo,
            'issue_number': row.issue_number,
            'pr_number': row.pr_number,
            'status': row.status,
            'error_message': row.error_message,
            'created_at': _iso_utc(row.created_at),
            'completed_at': _iso_utc(row.completed_at),
        }


class SqlMailboxStore(_SqliteLockRetry):
    """Mailbox regions as a ``state`` column; every move is a conditional UPDATE."""

    def enqueue(self, task: FixTask) -> FixTask:
        name = task.name or make_task_name(task)
        record = task.with_changes(name=name, status=Region.QUEUED.value)
        now = datetime.now(timezone.utc)

        def op(session: Session) -> FixTask:
            session.add(
                MailboxTaskEntity(
                    name=name,
                    state=Region.QUEUED.value,
                    payload_json=json.dumps(record.to_record(), ensure_ascii=True),
                    created_at=now,
                    updated_at=now,
                )
            )
            session.flush()
            return record

        try:
            return self._retrying('enqueue', op)
        except IntegrityError as exc:
            raise TaskNameCollision(f'task name collision: {name}') from exc
        except SQLAlchemyError as exc:
            raise StorageFault(f'enqueue failed for {name}: {exc}') from exc

    def has_in_flight(self) -> bool:
        with self.db.session() as session:
            return self._has_in_flight(session)

    def claim_oldest(self, *, now: datetime | None = None) -> FixTask | None:
        def op(session: Session) -> FixTask | None:
            if self._has_in_flight(session):
                return None
            queued = session.execute(
                select(MailboxTaskEntity.name, MailboxTaskEntity.payload_json)
                .where(MailboxTaskEntity.state == Region.QUEUED.value)
                .order_by(MailboxTaskEntity.name.asc())
            ).all()
            in_flight = aliased(MailboxTaskEntity)
            gate_open = ~select(in_flight.name).where(in_flight.state == Region.IN_FLIGHT.value).exists()
            for name, payload_json in queued:
                candidate = FixTask.from_record(json.loads(payload_json), name=name)
                if not is_due(candidate, now=now):
                    continue
                claimed = candidate.with_changes(status=Region.IN_FLIGHT.value)
                result = session.execute(
                    update(MailboxTaskEntity)
                    .where(
                        MailboxTaskEntity.name == name,
                        MailboxTaskEntity.state == Region.QUEUED.value,
                        gate_open,
                    )
                    .values(
                        state=Region.IN_FLIGHT.value,
                        payload_json=json.dumps(claimed.to_record(), ensure_ascii=True),
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if int(result.rowcount or 0) == 1:
                    return claimed
                if self._has_in_flight(session):
                    return None
            return None

        try:
            return self._retrying('claim_oldest', op)
        except SQLAlchemyError as exc:
            raise StorageFault(f'claim failed: {exc}') from exc

    def resolve(self, task: FixTask, outcome: TaskOutcome) -> FixTask:
        name = str(task.name or '')
        settled = settle(task, outcome)
        target = Region.DONE if outcome.terminal else Region.QUEUED

        def op(session: Session) -> int:
            result = session.execute(
                update(MailboxTaskEntity)
                .where(
                    MailboxTaskEntity.name == name,
                    MailboxTaskEntity.state == Region.IN_FLIGHT.value,
                )
                .values(
                    state=target.value,
                    payload_json=json.dumps(settled.to_record(), ensure_ascii=True),
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

        try:
            changed = self._retrying('resolve', op)
        except SQLAlchemyError as exc:
            raise StorageFault(f'resolve failed for {name} -> {target.value}: {exc}') from exc
        if changed != 1:
            raise StorageFault(f'task is not in flight: {name}')
        return settled

    def recover_in_flight(self) -> list[FixTask]:
        def op(session: Session) -> list[FixTask]:
            rows = session.execute(
                select(MailboxTaskEntity).where(MailboxTaskEntity.state == Region.IN_FLIGHT.value)
            ).scalars().all()
            recovered = []
            for row in rows:
                restored = FixTask.from_record(json.loads(row.payload_json), name=row.name).with_changes(
                    status=Region.QUEUED.value,
                    last_error='recovered: returned to queue by operator',
                    not_before=None,
                )
                row.state = Region.QUEUED.value
                row.payload_json = json.dumps(restored.to_record(), ensure_ascii=True)
                row.updated_at = datetime.now(timezone.utc)
                session.add(row)
                recovered.append(restored)
            session.flush()
            return recovered

        try:
            return self._retrying('recover_in_flight', op)
        except SQLAlchemyError as exc:
            raise StorageFault(f'recover failed: {exc}') from exc

    def counts(self) -> dict[str, int]:
        with self.db.session() as session:
            rows = session.execute(
                select(MailboxTaskEntity.state, func.count(MailboxTaskEntity.name)).group_by(MailboxTaskEntity.state)
            ).all()
        found = {str(state): int(count) for state, count in rows}
        return {region.value: found.get(region.value, 0) for region in Region}

    def list_region(self, region: Region) -> list[str]:
        with self.db.session() as session:
            return list(
                session.execute(
                    select(MailboxTaskEntity.name)
                    .where(MailboxTaskEntity.state == Region(region).value)
                    .order_by(MailboxTaskEntity.name.asc())
                ).scalars().all()
            )

    def get(self, name: str) -> tuple[Region, FixTask] | None:
        with self.db.session() as session:
            row = session.get(MailboxTaskEntity, str(name))
            if row is None:
                return None
            return Region(row.state), FixTask.from_record(json.loads(row.payload_json), name=row.name)

    @staticmethod
    def _has_in_flight(session: Session) -> bool:
        found = session.execute(
            select(MailboxTaskEntity.name).where(MailboxTaskEntity.state == Region.IN_FLIGHT.value).limit(1)
        ).first()
        return found is not None
