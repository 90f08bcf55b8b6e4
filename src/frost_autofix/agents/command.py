from __future__ import annotations

import os
from pathlib import Path
import shlex
import shutil
import subprocess
import time

from frost_autofix.agents.base import AgentResult, parse_pr_number, runtime_error_result

_LIMIT_PATTERNS = (
    'hit your limit',
    'usage limit',
    'rate limit',
    'quota exceeded',
    'insufficient_quota',
)


class CommandAgent:
    """Runs a local agent CLI with the prompt on stdin."""

    def __init__(self, command: str, *, workdir: Path | None = None):
        self.command = str(command or '').strip()
        self.workdir = Path(workdir) if workdir is not None else None

    def run(self, *, prompt: str, label: str, timeout_seconds: int, repo: str | None = None) -> AgentResult:
        if not self.command:
            return runtime_error_result(reason=f'command_not_configured label={label}', duration_seconds=0.0)
        argv = self._resolve_executable(shlex.split(self.command, posix=os.name != 'nt'))
        effective_command = ' '.join(argv)
        cwd = self.workdir or Path.cwd()
        cwd.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                input=prompt,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=str(cwd),
                timeout=max(1, int(timeout_seconds)),
            )
        except FileNotFoundError:
            return runtime_error_result(
                reason=f'command_not_found label={label} command={effective_command}',
                duration_seconds=time.monotonic() - started,
            )
        except subprocess.TimeoutExpired:
            return runtime_error_result(
                reason=f'command_timeout label={label} timeout_seconds={timeout_seconds}',
                duration_seconds=time.monotonic() - started,
            )

        elapsed = time.monotonic() - started
        output = (completed.stdout or '').strip()
        if completed.returncode != 0:
            stderr = (completed.stderr or '').strip()
            output = '\n'.join([part for part in [output, stderr] if part]).strip()
            return AgentResult(
                ok=False,
                output=output,
                pr_number=None,
                returncode=completed.returncode,
                duration_seconds=elapsed,
                reason=f'command_failed label={label} returncode={completed.returncode}',
            )
        lowered = output.lower()
        if any(pattern in lowered for pattern in _LIMIT_PATTERNS):
            return runtime_error_result(
                reason=f'provider_limit label={label}',
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

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        if not argv:
            return argv
        resolved = shutil.which(str(argv[0]).strip())
        if not resolved:
            return argv
        patched = list(argv)
        patched[0] = resolved
        return patched
