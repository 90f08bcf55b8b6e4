from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from sqlalchemy.engine import make_url

from frost_autofix.agents import build_agent
from frost_autofix.clients import BackendTaskSink, CallbackClient, TaskSink
from frost_autofix.config import Settings
from frost_autofix.consumer import QueueConsumer
from frost_autofix.db import Database, SqlMailboxStore, SqlTenantLedger
from frost_autofix.repository import InMemoryTenantLedger, TenantLedger
from frost_autofix.storage.event_log import EventLog
from frost_autofix.storage.mailbox import FileMailboxStore, MailboxStore

_log = logging.getLogger(__name__)

EVENT_LOG_NAME = 'events.jsonl'


@dataclass
class Runtime:
    settings: Settings
    ledger: TenantLedger
    mailbox: MailboxStore
    event_log: EventLog
    db: Database | None = None


def open_database(settings: Settings) -> Database:
    url = make_url(settings.database_url)
    if url.get_backend_name() == 'sqlite' and url.database and url.database != ':memory:':
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    db = Database(settings.database_url)
    db.create_schema()
    return db


def build_runtime(settings: Settings, *, fallback_to_memory: bool = True) -> Runtime:
    db: Database | None = None
    try:
        db = open_database(settings)
        ledger: TenantLedger = SqlTenantLedger(db, default_pr_limit=settings.default_pr_limit)
    except Exception:
        if not fallback_to_memory:
            raise
        _log.exception('database bootstrap failed; falling back to in-memory ledger')
        db = None
        ledger = InMemoryTenantLedger(default_pr_limit=settings.default_pr_limit)

    if settings.mailbox_backend == 'sql' and db is not None:
        mailbox: MailboxStore = SqlMailboxStore(db)
    else:
        if settings.mailbox_backend == 'sql':
            _log.warning('sql mailbox requested without a database; using file mailbox at %s', settings.mailbox_root)
        mailbox = FileMailboxStore(settings.mailbox_root)
    event_log = EventLog(settings.mailbox_root / EVENT_LOG_NAME)
    return Runtime(settings=settings, ledger=ledger, mailbox=mailbox, event_log=event_log, db=db)


def build_task_sink(settings: Settings) -> TaskSink | None:
    """Remote sink when admission forwards to a separate backend; None means local."""
    if settings.task_sink != 'backend':
        return None
    return BackendTaskSink(
        settings.backend_url,
        token=settings.backend_token,
        timeout_seconds=settings.agent_request_timeout_seconds,
    )


def build_consumer(runtime: Runtime) -> QueueConsumer:
    settings = runtime.settings
    callbacks = CallbackClient(
        settings.callback_url,
        token=settings.callback_token,
        timeout_seconds=settings.agent_request_timeout_seconds,
    )
    return QueueConsumer(
        runtime.mailbox,
        build_agent(settings),
        callbacks,
        runtime.event_log,
        max_attempts=settings.max_attempts,
        run_timeout_seconds=settings.agent_run_timeout_seconds,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        body_max_chars=settings.issue_body_max_chars,
    )
