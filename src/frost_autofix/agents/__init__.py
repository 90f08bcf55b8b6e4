from __future__ import annotations

from frost_autofix.agents.base import AgentResult, ExecutionAgent, parse_pr_number, runtime_error_result
from frost_autofix.agents.command import CommandAgent
from frost_autofix.agents.gateway import GatewayAgent
from frost_autofix.config import Settings


class DryRunAgent:
    """Pretends every run opened a pull request; used with ``FROST_DRY_RUN``."""

    def __init__(self, *, pr_number: int = 1):
        self.pr_number = int(pr_number)
        self.calls: list[dict] = []

    def run(self, *, prompt: str, label: str, timeout_seconds: int, repo: str | None = None) -> AgentResult:
        self.calls.append({'label': label, 'timeout_seconds': timeout_seconds, 'repo': repo})
        target = repo or 'example/repo'
        return AgentResult(
            ok=True,
            output=f'[dry-run label={label}]\nhttps://github.com/{target}/pull/{self.pr_number}',
            pr_number=self.pr_number,
            returncode=0,
            duration_seconds=0.01,
        )


def build_agent(settings: Settings) -> ExecutionAgent:
    if settings.agent_backend == 'dry-run':
        return DryRunAgent()
    if settings.agent_backend == 'command':
        return CommandAgent(settings.agent_command, workdir=settings.mailbox_root.parent / 'work')
    return GatewayAgent(
        settings.agent_gateway_url,
        request_timeout_seconds=settings.agent_request_timeout_seconds,
    )


__all__ = [
    'AgentResult',
    'CommandAgent',
    'DryRunAgent',
    'ExecutionAgent',
    'GatewayAgent',
    'build_agent',
    'parse_pr_number',
    'runtime_error_result',
]
