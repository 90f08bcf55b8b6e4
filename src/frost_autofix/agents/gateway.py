from __future__ import annotations

import time

import httpx

from frost_autofix.agents.base import AgentResult, parse_pr_number, runtime_error_result

SPAWN_PATH = '/api/sessions/spawn'


class GatewayAgent:
    """Hands the prompt to an agent gateway that runs the session.

    The gateway call itself is short (``request_timeout_seconds``); the run
    budget travels in the request as ``runTimeoutSeconds``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        request_timeout_seconds: float = 15,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = str(base_url or '').rstrip('/')
        self.request_timeout_seconds = float(request_timeout_seconds)
        self.transport = transport

    def run(self, *, prompt: str, label: str, timeout_seconds: int, repo: str | None = None) -> AgentResult:
        body = {
            'task': prompt,
            'mode': 'run',
            'label': label,
            'runTimeoutSeconds': int(timeout_seconds),
        }
        started = time.monotonic()
        try:
            with httpx.Client(timeout=self.request_timeout_seconds, transport=self.transport) as client:
                resp = client.post(f'{self.base_url}{SPAWN_PATH}', json=body)
        except httpx.TimeoutException:
            return runtime_error_result(
                reason=f'gateway_timeout label={label} timeout_seconds={self.request_timeout_seconds}',
                duration_seconds=time.monotonic() - started,
            )
        except httpx.HTTPError as exc:
            return runtime_error_result(
                reason=f'gateway_unreachable label={label} error={type(exc).__name__}: {exc}',
                duration_seconds=time.monotonic() - started,
            )

        elapsed = time.monotonic() - started
        output = resp.text.strip()
        if resp.status_code >= 400:
            return runtime_error_result(
                reason=f'gateway_error label={label} status={resp.status_code}',
                duration_seconds=elapsed,
                output=output,
            )
        try:
            payload = resp.json()
        except ValueError:
            return runtime_error_result(
                reason=f'gateway_malformed_response label={label}',
                duration_seconds=elapsed,
                output=output,
            )
        if not isinstance(payload, dict):
            return runtime_error_result(
                reason=f'gateway_malformed_response label={label}',
                duration_seconds=elapsed,
                output=output,
            )
        if payload.get('ok') is False or str(payload.get('status') or '').lower() in {'error', 'failed'}:
            return runtime_error_result(
                reason=f'gateway_run_failed label={label} detail={payload.get("error") or payload.get("status")}',
                duration_seconds=elapsed,
                output=output,
            )
        return AgentResult(
            ok=True,
            output=output,
            pr_number=parse_pr_number(output, repo=repo),
            returncode=0,
            duration_seconds=elapsed,
        )
