from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from frost_autofix import __version__
from frost_autofix.admission import AdmissionController
from frost_autofix.clients import LocalTaskSink, TaskSink
from frost_autofix.domain.errors import AuthError, InputValidationError
from frost_autofix.domain.models import FixTask, TriggerKind, current_month
from frost_autofix.reconciler import CallbackReconciler, CallbackReport, bearer_token, token_matches
from frost_autofix.repository import InMemoryTenantLedger, RECENT_RUNS_LIMIT, TenantLedger
from frost_autofix.storage.event_log import EventLog
from frost_autofix.storage.mailbox import FileMailboxStore, MailboxStore

_log = logging.getLogger(__name__)

USAGE_RUNS_LIMIT = 20


class CallbackRequest(BaseModel):
    installation_id: int | None = Field(default=None)
    repo: str = Field(min_length=1, max_length=255)
    issue_number: int = Field(ge=1)
    status: Literal['processing', 'success', 'failed', 'skipped']
    pr_number: int | None = Field(default=None, ge=1)
    error_message: str | None = Field(default=None, max_length=4000)
    error: str | None = Field(default=None, max_length=4000)


class EnqueueRequest(BaseModel):
    installation_id: int | None = Field(default=None)
    repo: str = Field(min_length=1, max_length=255)
    issue_number: int | None = Field(default=None, ge=1)
    issue: int | None = Field(default=None, ge=1)
    issue_title: str | None = Field(default=None)
    title: str | None = Field(default=None)
    issue_body: str | None = Field(default=None)
    body: str | None = Field(default=None)
    labels: list[str] = Field(default_factory=list)
    event_type: Literal['issue_opened', 'command_comment'] = Field(default='issue_opened')


class RunResponse(BaseModel):
    id: int
    installation_id: int
    repo: str
    issue_number: int
    pr_number: int | None
    status: str
    error_message: str | None
    created_at: str | None
    completed_at: str | None


class StatsResponse(BaseModel):
    installations: int
    total_runs: int
    prs_created: int
    success_rate: float
    recent: list[RunResponse]


class UsageResponse(BaseModel):
    installation: dict
    current_month: str
    pr_count: int
    pr_limit: int
    runs: list[RunResponse]


class AppState:
    def __init__(
        self,
        *,
        ledger: TenantLedger,
        mailbox: MailboxStore,
        admission: AdmissionController,
        reconciler: CallbackReconciler,
        local_sink: LocalTaskSink,
        backend_token: str | None,
        body_max_chars: int,
    ):
        self.ledger = ledger
        self.mailbox = mailbox
        self.admission = admission
        self.reconciler = reconciler
        self.local_sink = local_sink
        self.backend_token = backend_token
        self.body_max_chars = body_max_chars


def create_app(
    *,
    ledger: TenantLedger | None = None,
    mailbox: MailboxStore | None = None,
    event_log: EventLog | None = None,
    sink: TaskSink | None = None,
    webhook_secret: str | None = None,
    backend_token: str | None = None,
    callback_token: str | None = None,
    default_pr_limit: int = 5,
    body_max_chars: int = 4000,
) -> FastAPI:
    ledger = ledger or InMemoryTenantLedger(default_pr_limit=default_pr_limit)
    mailbox = mailbox or FileMailboxStore(Path.cwd() / '.frost' / 'mailbox')
    local_sink = LocalTaskSink(mailbox, event_log)
    reconciler = CallbackReconciler(ledger, token=callback_token)
    admission = AdmissionController(
        ledger,
        sink or local_sink,
        webhook_secret=webhook_secret,
        reconciler=reconciler,
        default_pr_limit=default_pr_limit,
        body_max_chars=body_max_chars,
    )

    app = FastAPI(title='frost-autofix api', version=__version__)
    app.state.container = AppState(
        ledger=ledger,
        mailbox=mailbox,
        admission=admission,
        reconciler=reconciler,
        local_sink=local_sink,
        backend_token=backend_token,
        body_max_chars=max(1, int(body_max_chars)),
    )

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    def _validation_error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_validation_error_payload(message=message, field=field),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_validation_error_payload(
                message=str(exc),
                field=exc.field,
                code=exc.code,
            ),
        )

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):  # noqa: ARG001
        return JSONResponse(
            status_code=401,
            content={'status': 'rejected', 'reason': exc.code},
        )

    def get_state() -> AppState:
        return app.state.container

    def _health_payload(state: AppState) -> dict:
        counts = state.mailbox.counts()
        return {
            'status': 'ok',
            'app': 'frost-autofix',
            'version': __version__,
            'queue': {
                'queued': counts.get('queued', 0),
                'in_flight': counts.get('in-flight', 0),
                'done': counts.get('done', 0),
            },
        }

    @app.get('/health')
    def health(state: AppState = Depends(get_state)) -> dict:
        return _health_payload(state)

    @app.get('/healthz')
    def healthz(state: AppState = Depends(get_state)) -> dict:
        return _health_payload(state)

    @app.post('/webhook')
    async def webhook(request: Request):
        body = await request.body()
        headers = dict(request.headers)
        outcome = await run_in_threadpool(get_state().admission.admit, body, headers)
        return JSONResponse(status_code=outcome.http_status, content=outcome.to_payload())

    async def _read_body(request: Request, model: type[BaseModel]):
        try:
            data = await request.json()
        except ValueError as exc:
            raise InputValidationError('request body must be valid JSON', field='body') from exc
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise RequestValidationError(exc.errors()) from exc

    @app.post('/callback')
    async def callback(request: Request):
        state = get_state()
        authorization = request.headers.get('authorization')
        state.reconciler.authenticate(authorization)
        payload = await _read_body(request, CallbackRequest)
        report = CallbackReport(
            installation_id=payload.installation_id,
            repo=payload.repo,
            issue_number=payload.issue_number,
            status=payload.status,
            pr_number=payload.pr_number,
            error_message=payload.error_message if payload.error_message is not None else payload.error,
        )
        result = await run_in_threadpool(state.reconciler.reconcile, report, authorization=authorization)
        return result.to_payload()

    def _enqueue(payload: EnqueueRequest, state: AppState):
        issue_number = payload.issue_number or payload.issue
        if issue_number is None:
            raise InputValidationError('issue_number is required', field='issue_number')
        task = FixTask(
            installation_id=payload.installation_id,
            repo=payload.repo,
            issue_number=int(issue_number),
            issue_title=str(payload.issue_title if payload.issue_title is not None else payload.title or ''),
            issue_body=str(payload.issue_body if payload.issue_body is not None else payload.body or '')[
                : state.body_max_chars
            ],
            labels=tuple(payload.labels),
            event_type=payload.event_type or TriggerKind.ISSUE_OPENED.value,
        )
        delivery = state.local_sink.submit(task)
        if not delivery.ok:
            return JSONResponse(
                status_code=503,
                content={'status': 'error', 'reason': 'enqueue_failed', 'detail': delivery.detail},
            )
        _log.info('task accepted from backend call repo=%s issue=%s task=%s', task.repo, task.issue_number, delivery.detail)
        return {'status': 'queued', 'task_id': delivery.detail}

    async def _authorized_enqueue(request: Request):
        state = get_state()
        if not token_matches(bearer_token(request.headers.get('authorization')), state.backend_token):
            raise AuthError('invalid backend token')
        payload = await _read_body(request, EnqueueRequest)
        return await run_in_threadpool(_enqueue, payload, state)

    @app.post('/enqueue')
    async def enqueue(request: Request):
        return await _authorized_enqueue(request)

    @app.post('/autofix')
    async def autofix(request: Request):
        return await _authorized_enqueue(request)

    @app.get('/api/stats', response_model=StatsResponse)
    def get_stats(state: AppState = Depends(get_state)) -> StatsResponse:
        stats = state.ledger.stats()
        recent = state.ledger.list_runs(limit=RECENT_RUNS_LIMIT)
        return StatsResponse(
            installations=int(stats['installations']),
            total_runs=int(stats['total_runs']),
            prs_created=int(stats['prs_created']),
            success_rate=float(stats['success_rate']),
            recent=[RunResponse(**row) for row in recent],
        )

    @app.get('/api/usage/{installation_id}', response_model=UsageResponse)
    def get_usage(installation_id: int, state: AppState = Depends(get_state)) -> UsageResponse:
        tenant = state.ledger.get_tenant(installation_id)
        if tenant is None:
            raise HTTPException(status_code=404, detail='installation not found')
        month = current_month()
        return UsageResponse(
            installation=tenant,
            current_month=month,
            pr_count=state.ledger.get_usage(installation_id, month),
            pr_limit=int(tenant['pr_limit']),
            runs=[
                RunResponse(**row)
                for row in state.ledger.list_runs(installation_id=installation_id, limit=USAGE_RUNS_LIMIT)
            ],
        )

    return app
