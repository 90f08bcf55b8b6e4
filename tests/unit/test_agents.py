from __future__ import annotations

import json
from pathlib import Path
import subprocess

import httpx

from frost_autofix.agents import CommandAgent, DryRunAgent, GatewayAgent, build_agent
from frost_autofix.agents.base import parse_pr_number, runtime_error_result
import frost_autofix.agents.command as command_module
from frost_autofix.agents.gateway import SPAWN_PATH
from frost_autofix.config import load_settings
import pytest


def test_parse_pr_number_prefers_json_payload():
    output = 'working...\n{"pr_number": 12, "pr_url": "https://github.com/acme/widgets/pull/99"}'
    assert parse_pr_number(output) == 12
    assert parse_pr_number('{"pr_url": "https://github.com/acme/widgets/pull/99"}') == 99


def test_parse_pr_number_matches_repo_url():
    output = (
        'See https://github.com/other/thing/pull/3 for context.\n'
        'Opened https://github.com/acme/widgets/pull/42\n'
    )
    assert parse_pr_number(output, repo='acme/widgets') == 42
    assert parse_pr_number(output) == 3


def test_parse_pr_number_no_pr_marker_and_mentions():
    assert parse_pr_number('Could not reproduce; mentioned PR #5 before.\nNO_PR') is None
    assert parse_pr_number('Created PR #17 with the fix') == 17
    assert parse_pr_number('') is None
    assert parse_pr_number('{"pr_number": 0}') is None


def test_runtime_error_result_shape():
    result = runtime_error_result(reason='', duration_seconds=-1)
    assert result.ok is False
    assert result.returncode == 2
    assert result.reason == 'agent_runtime_error'
    assert result.duration_seconds == 0.0


def _gateway(handler) -> GatewayAgent:
    return GatewayAgent('http://gateway.local/', transport=httpx.MockTransport(handler))


def test_gateway_agent_posts_spawn_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['url'] = str(request.url)
        seen['body'] = json.loads(request.content)
        return httpx.Response(200, json={'status': 'completed', 'result': 'https://github.com/acme/widgets/pull/42'})

    result = _gateway(handler).run(prompt='fix it', label='autofix-acme-widgets-7', timeout_seconds=600, repo='acme/widgets')

    assert seen['url'] == f'http://gateway.local{SPAWN_PATH}'
    assert seen['body'] == {
        'task': 'fix it',
        'mode': 'run',
        'label': 'autofix-acme-widgets-7',
        'runTimeoutSeconds': 600,
    }
    assert result.ok is True
    assert result.pr_number == 42


@pytest.mark.parametrize(
    'response,reason_prefix',
    [
        (httpx.Response(503, text='overloaded'), 'gateway_error'),
        (httpx.Response(200, text='not json'), 'gateway_malformed_response'),
        (httpx.Response(200, json=['a', 'list']), 'gateway_malformed_response'),
        (httpx.Response(200, json={'ok': False, 'error': 'no capacity'}), 'gateway_run_failed'),
        (httpx.Response(200, json={'status': 'failed'}), 'gateway_run_failed'),
    ],
)
def test_gateway_agent_failures_are_recoverable(response: httpx.Response, reason_prefix: str):
    result = _gateway(lambda request: response).run(prompt='p', label='l', timeout_seconds=60)

    assert result.ok is False
    assert result.returncode == 2
    assert result.reason.startswith(reason_prefix)


def test_gateway_agent_timeout_and_unreachable():
    def timeout(request):
        raise httpx.ReadTimeout('slow', request=request)

    def refused(request):
        raise httpx.ConnectError('refused', request=request)

    assert _gateway(timeout).run(prompt='p', label='l', timeout_seconds=60).reason.startswith('gateway_timeout')
    assert _gateway(refused).run(prompt='p', label='l', timeout_seconds=60).reason.startswith('gateway_unreachable')


def test_command_agent_success_reads_pr_url(monkeypatch, tmp_path: Path):
    seen = {}

    def fake_run(argv, **kwargs):
        seen['argv'] = argv
        seen['input'] = kwargs['input']
        seen['timeout'] = kwargs['timeout']
        return subprocess.CompletedProcess(argv, 0, stdout='done\nhttps://github.com/acme/widgets/pull/8\n', stderr='')

    monkeypatch.setattr(command_module.subprocess, 'run', fake_run)
    monkeypatch.setattr(command_module.shutil, 'which', lambda name: None)
    agent = CommandAgent('fixer --yes', workdir=tmp_path / 'work')

    result = agent.run(prompt='fix it', label='l', timeout_seconds=600, repo='acme/widgets')

    assert result.ok is True
    assert result.pr_number == 8
    assert seen == {'argv': ['fixer', '--yes'], 'input': 'fix it', 'timeout': 600}
    assert (tmp_path / 'work').is_dir()


def test_command_agent_nonzero_exit(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(
        command_module.subprocess,
        'run',
        lambda argv, **kwargs: subprocess.CompletedProcess(argv, 3, stdout='', stderr='boom'),
    )
    result = CommandAgent('fixer', workdir=tmp_path).run(prompt='p', label='l', timeout_seconds=60)

    assert result.ok is False
    assert result.returncode == 3
    assert result.reason.startswith('command_failed')
    assert 'boom' in result.output


def test_command_agent_timeout_missing_and_limit(monkeypatch, tmp_path: Path):
    def timed_out(argv, **kwargs):
        raise subprocess.TimeoutExpired(argv, kwargs['timeout'])

    def missing(argv, **kwargs):
        raise FileNotFoundError(argv[0])

    agent = CommandAgent('fixer', workdir=tmp_path)

    monkeypatch.setattr(command_module.subprocess, 'run', timed_out)
    assert agent.run(prompt='p', label='l', timeout_seconds=60).reason.startswith('command_timeout')

    monkeypatch.setattr(command_module.subprocess, 'run', missing)
    assert agent.run(prompt='p', label='l', timeout_seconds=60).reason.startswith('command_not_found')

    monkeypatch.setattr(
        command_module.subprocess,
        'run',
        lambda argv, **kwargs: subprocess.CompletedProcess(argv, 0, stdout='You have hit your limit', stderr=''),
    )
    assert agent.run(prompt='p', label='l', timeout_seconds=60).reason.startswith('provider_limit')


def test_command_agent_without_command():
    result = CommandAgent('  ').run(prompt='p', label='l', timeout_seconds=60)
    assert result.reason.startswith('command_not_configured')


def test_dry_run_agent_records_calls():
    agent = DryRunAgent(pr_number=5)
    result = agent.run(prompt='p', label='autofix-acme-widgets-7', timeout_seconds=600, repo='acme/widgets')

    assert result.ok is True
    assert result.pr_number == 5
    assert agent.calls == [{'label': 'autofix-acme-widgets-7', 'timeout_seconds': 600, 'repo': 'acme/widgets'}]


@pytest.mark.parametrize(
    'env,expected',
    [
        ({}, GatewayAgent),
        ({'FROST_AGENT_BACKEND': 'command'}, CommandAgent),
        ({'FROST_AGENT_BACKEND': 'command', 'FROST_DRY_RUN': '1'}, DryRunAgent),
    ],
)
def test_build_agent_selects_backend(monkeypatch, tmp_path: Path, env: dict, expected: type):
    monkeypatch.delenv('FROST_AGENT_BACKEND', raising=False)
    monkeypatch.delenv('FROST_DRY_RUN', raising=False)
    monkeypatch.setenv('FROST_MAILBOX_ROOT', str(tmp_path / 'mailbox'))
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    assert isinstance(build_agent(load_settings()), expected)
