from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    database_url: str
    mailbox_root: Path
    mailbox_backend: str
    task_sink: str
    service_name: str
    otel_endpoint: str | None
    dry_run: bool
    webhook_secret: str | None
    backend_token: str | None
    callback_token: str | None
    backend_url: str
    callback_url: str
    agent_backend: str
    agent_gateway_url: str
    agent_command: str
    agent_run_timeout_seconds: int
    agent_request_timeout_seconds: int
    max_attempts: int
    default_pr_limit: int
    issue_body_max_chars: int
    retry_backoff_seconds: int


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_secret(name: str) -> str | None:
    return str(os.getenv(name, '') or '').strip() or None


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    value = str(os.getenv(name, default) or default).strip().lower()
    if value not in choices:
        return default
    return value


def load_settings() -> Settings:
    database_url = os.getenv('FROST_DATABASE_URL', 'sqlite:///.frost/autofix.db')
    mailbox_root = Path(os.getenv('FROST_MAILBOX_ROOT', '.frost/mailbox')).resolve()
    mailbox_backend = _env_choice('FROST_MAILBOX_BACKEND', 'file', {'file', 'sql'})
    # local: admission writes straight into the mailbox; backend: forwards over HTTP.
    task_sink = _env_choice('FROST_TASK_SINK', 'local', {'local', 'backend'})
    service_name = os.getenv('FROST_SERVICE_NAME', 'frost-autofix')
    otel_endpoint = os.getenv('FROST_OTEL_EXPORTER_OTLP_ENDPOINT')
    dry_run = os.getenv('FROST_DRY_RUN', '').strip().lower() in {'1', 'true', 'yes', 'on'}
    backend_url = os.getenv('FROST_BACKEND_URL', 'http://127.0.0.1:9800/enqueue')
    callback_url = os.getenv('FROST_CALLBACK_URL', 'http://127.0.0.1:8000/callback')
    agent_backend = _env_choice('FROST_AGENT_BACKEND', 'gateway', {'gateway', 'command', 'dry-run'})
    if dry_run:
        agent_backend = 'dry-run'
    agent_gateway_url = os.getenv('FROST_AGENT_GATEWAY_URL', 'http://127.0.0.1:4319')
    agent_command = os.getenv('FROST_AGENT_COMMAND', 'claude -p --dangerously-skip-permissions')
    agent_run_timeout_seconds = _env_int('FROST_AGENT_RUN_TIMEOUT_SECONDS', 600, minimum=10)
    agent_request_timeout_seconds = _env_int('FROST_AGENT_REQUEST_TIMEOUT_SECONDS', 15, minimum=1)
    max_attempts = _env_int('FROST_MAX_ATTEMPTS', 3, minimum=1)
    default_pr_limit = _env_int('FROST_DEFAULT_PR_LIMIT', 5, minimum=-1)
    issue_body_max_chars = _env_int('FROST_ISSUE_BODY_MAX_CHARS', 4000, minimum=1)
    retry_backoff_seconds = _env_int('FROST_RETRY_BACKOFF_SECONDS', 0, minimum=0)
    return Settings(
        database_url=database_url,
        mailbox_root=mailbox_root,
        mailbox_backend=mailbox_backend,
        task_sink=task_sink,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        dry_run=dry_run,
        webhook_secret=_env_secret('FROST_WEBHOOK_SECRET'),
        backend_token=_env_secret('FROST_BACKEND_TOKEN'),
        callback_token=_env_secret('FROST_CALLBACK_TOKEN'),
        backend_url=backend_url,
        callback_url=callback_url,
        agent_backend=agent_backend,
        agent_gateway_url=agent_gateway_url,
        agent_command=agent_command,
        agent_run_timeout_seconds=agent_run_timeout_seconds,
        agent_request_timeout_seconds=agent_request_timeout_seconds,
        max_attempts=max_attempts,
        default_pr_limit=default_pr_limit,
        issue_body_max_chars=issue_body_max_chars,
        retry_backoff_seconds=retry_backoff_seconds,
    )
