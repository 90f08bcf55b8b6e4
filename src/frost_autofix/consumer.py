from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from frost_autofix.agents.base import AgentResult, ExecutionAgent, runtime_error_result
from frost_autofix.clients import DeliveryResult
from frost_autofix.domain.errors import AgentFailure, StorageFault
from frost_autofix.domain.events import EventType
from frost_autofix.domain.models import FixTask, RunStatus, TaskOutcome, utc_now
from frost_autofix.observability import get_logger, task_context
from frost_autofix.prompting import agent_label, build_fix_prompt
from frost_autofix.reconciler import CallbackReport
from frost_autofix.storage.event_log import EventLog
from frost_autofix.storage.mailbox import MailboxStore

_log = get_logger('frost_autofix.consumer')

_RESULT_OUTPUT_MAX_CHARS = 4000


class ConsumerState(str, Enum):
    BUSY = 'busy'
    IDLE = 'idle'
    COMPLETED = 'completed'
    RETRIED = 'retried'
    FAILED = 'failed'


@dataclass(frozen=True)
class ConsumerResult:
    state: ConsumerState
    task: FixTask | None = None
    agent: AgentResult | None = None
    callback: DeliveryResult | None = None


class CallbackSender(Protocol):
    def report(self, report: CallbackReport) -> DeliveryResult:
        ...


class QueueConsumer:
    """One non-overlapping pass over the mailbox: claim, execute, resolve.

    Agent failures are recoverable and end up on the task record. A failed
    relocation raises StorageFault, since an item stuck in-flight blocks every
    later invocation.
    """

    def __init__(
        self,
        mailbox: MailboxStore,
        agent: ExecutionAgent,
        callbacks: CallbackSender | None,
        event_log: EventLog | None = None,
        *,
        max_attempts: int = 3,
        run_timeout_seconds: int = 600,
        retry_backoff_seconds: int = 0,
        body_max_chars: int = 4000,
    ):
        self.mailbox = mailbox
        self.agent = agent
        self.callbacks = callbacks
        self.event_log = event_log
        self.max_attempts = max(1, int(max_attempts))
        self.run_timeout_seconds = int(run_timeout_seconds)
        self.retry_backoff_seconds = max(0, int(retry_backoff_seconds))
        self.body_max_chars = int(body_max_chars)

    def run_once(self, *, now: datetime | None = None) -> ConsumerResult:
        if self.mailbox.has_in_flight():
            _log.info('consumer busy; a task is already in flight')
            return ConsumerResult(state=ConsumerState.BUSY)
        task = self.mailbox.claim_oldest(now=now)
        if task is None:
            return ConsumerResult(state=ConsumerState.IDLE)

        with task_context(task.name, task.installation_id):
            _log.info(
                'task claimed repo=%s issue=%s attempt=%s',
                task.repo,
                task.issue_number,
                task.retries + 1,
            )
            self._record(EventType.TASK_CLAIMED, task)
            self._send_callback(task, status=RunStatus.PROCESSING.value)

            result = self._execute(task)
            if result.ok:
                return self._complete(task, result)
            return self._fail(task, result, now=now)

    def _execute(self, task: FixTask) -> AgentResult:
        prompt = build_fix_prompt(task, body_max_chars=self.body_max_chars)
        try:
            return self.agent.run(
                prompt=prompt,
                label=agent_label(task),
                timeout_seconds=self.run_timeout_seconds,
                repo=task.repo,
            )
        except Exception as exc:
            _log.exception('execution agent raised repo=%s issue=%s', task.repo, task.issue_number)
            return runtime_error_result(
                reason=f'agent_exception {type(exc).__name__}: {exc}',
                duration_seconds=0.0,
            )

    def _complete(self, task: FixTask, result: AgentResult) -> ConsumerResult:
        outcome = TaskOutcome.succeeded(
            {
                'status': RunStatus.SUCCESS.value,
                'pr_number': result.pr_number,
                'output': result.output[:_RESULT_OUTPUT_MAX_CHARS],
                'duration_seconds': round(result.duration_seconds, 3),
            }
        )
        settled = self._resolve(task, outcome)
        self._record(EventType.TASK_COMPLETED, settled, pr_number=result.pr_number)
        _log.info('task completed repo=%s issue=%s pr=%s', task.repo, task.issue_number, result.pr_number)
        callback = self._send_callback(settled, status=RunStatus.SUCCESS.value, pr_number=result.pr_number)
        return ConsumerResult(state=ConsumerState.COMPLETED, task=settled, agent=result, callback=callback)

    def _fail(self, task: FixTask, result: AgentResult, *, now: datetime | None) -> ConsumerResult:
        failure = AgentFailure(result.reason or 'agent_failure', returncode=result.returncode)
        attempts = task.retries + 1
        if attempts >= self.max_attempts:
            settled = self._resolve(task, TaskOutcome.gave_up(failure.message))
            self._record(EventType.TASK_FAILED, settled, error=failure.message)
            _log.error(
                'task failed permanently repo=%s issue=%s attempts=%s code=%s error=%s',
                task.repo,
                task.issue_number,
                attempts,
                failure.code,
                failure.message,
            )
            callback = self._send_callback(
                settled,
                status=RunStatus.FAILED.value,
                error_message=failure.message,
            )
            return ConsumerResult(state=ConsumerState.FAILED, task=settled, agent=result, callback=callback)

        not_before = self._retry_not_before(attempts, now=now)
        settled = self._resolve(task, TaskOutcome.retry(failure.message, not_before=not_before))
        self._record(EventType.TASK_RETRY_SCHEDULED, settled, error=failure.message, not_before=not_before)
        _log.warning(
            'task will be retried repo=%s issue=%s attempts=%s/%s code=%s error=%s',
            task.repo,
            task.issue_number,
            attempts,
            self.max_attempts,
            failure.code,
            failure.message,
        )
        return ConsumerResult(state=ConsumerState.RETRIED, task=settled, agent=result)

    def _retry_not_before(self, attempts: int, *, now: datetime | None) -> str | None:
        if self.retry_backoff_seconds <= 0:
            return None
        delay = self.retry_backoff_seconds * (2 ** max(0, attempts - 1))
        return ((now or utc_now()) + timedelta(seconds=delay)).isoformat()

    def _resolve(self, task: FixTask, outcome: TaskOutcome) -> FixTask:
        try:
            return self.mailbox.resolve(task, outcome)
        except StorageFault:
            _log.error(
                'could not relocate in-flight task repo=%s issue=%s terminal=%s; consumer is blocked until recovered',
                task.repo,
                task.issue_number,
                outcome.terminal,
            )
            raise

    def _send_callback(
        self,
        task: FixTask,
        *,
        status: str,
        pr_number: int | None = None,
        error_message: str | None = None,
    ) -> DeliveryResult | None:
        if self.callbacks is None:
            return None
        report = CallbackReport(
            installation_id=task.installation_id,
            repo=task.repo,
            issue_number=task.issue_number,
            status=status,
            pr_number=pr_number,
            error_message=error_message,
        )
        try:
            delivery = self.callbacks.report(report)
        except Exception as exc:
            _log.exception('callback sender raised repo=%s issue=%s status=%s', task.repo, task.issue_number, status)
            delivery = DeliveryResult(ok=False, status_code=None, detail=f'{type(exc).__name__}: {exc}')
        if not delivery.ok:
            _log.warning(
                'callback not delivered repo=%s issue=%s status=%s http=%s detail=%s',
                task.repo,
                task.issue_number,
                status,
                delivery.status_code,
                delivery.detail,
            )
            self._record(
                EventType.CALLBACK_FAILED,
                task,
                callback_status=status,
                http_status=delivery.status_code,
                detail=delivery.detail,
            )
        return delivery

    def _record(self, event_type: EventType, task: FixTask, **payload) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.append(event_type, task=task, **payload)
        except OSError:
            _log.exception('event log append failed type=%s', event_type.value)
