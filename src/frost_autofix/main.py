from __future__ import annotations

from frost_autofix.api import create_app
from frost_autofix.bootstrap import build_runtime, build_task_sink
from frost_autofix.config import load_settings
from frost_autofix.observability import configure_observability


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    runtime = build_runtime(settings)
    return create_app(
        ledger=runtime.ledger,
        mailbox=runtime.mailbox,
        event_log=runtime.event_log,
        sink=build_task_sink(settings),
        webhook_secret=settings.webhook_secret,
        backend_token=settings.backend_token,
        callback_token=settings.callback_token,
        default_pr_limit=settings.default_pr_limit,
        body_max_chars=settings.issue_body_max_chars,
    )


app = build_app()
