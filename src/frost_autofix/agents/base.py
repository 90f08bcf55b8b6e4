from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Protocol

_PR_URL_RE = re.compile(r'https?://github\.com/([^/\s]+/[^/\s]+)/pull/(\d+)', re.IGNORECASE)
_PR_REF_RE = re.compile(r'\b(?:PR|pull request)\s*#\s*(\d+)\b', re.IGNORECASE)
_NO_PR_RE = re.compile(r'^\s*NO_PR\s*$', re.IGNORECASE | re.MULTILINE)


@dataclass(frozen=True)
class AgentResult:
    ok: bool
    output: str
    pr_number: int | None
    returncode: int
    duration_seconds: float
    reason: str | None = None


class ExecutionAgent(Protocol):
    def run(self, *, prompt: str, label: str, timeout_seconds: int, repo: str | None = None) -> AgentResult:
        ...


def runtime_error_result(*, reason: str, duration_seconds: float, output: str = '') -> AgentResult:
    text = str(reason or '').strip() or 'agent_runtime_error'
    return AgentResult(
        ok=False,
        output=str(output or text),
        pr_number=None,
        returncode=2,
        duration_seconds=max(0.0, float(duration_seconds)),
        reason=text,
    )


def _iter_json_objects(output: str) -> list[dict]:
    text = str(output or '').strip()
    if not text:
        return []
    candidates = [text]
    for line in text.splitlines():
        line_text = line.strip()
        if line_text.startswith('{') and line_text.endswith('}'):
            candidates.append(line_text)
    found = []
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            found.append(parsed)
    return found


def _coerce_pr_number(value) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def parse_pr_number(output: str, *, repo: str | None = None) -> int | None:
    """Find the pull request number an agent reported, if any.

    Looks at JSON payloads (``pr_number`` / ``pr_url``) first, then at pull
    request URLs for *repo*, then at ``PR #N`` mentions. ``NO_PR`` wins over
    loose mentions.
    """
    for payload in _iter_json_objects(output):
        number = _coerce_pr_number(payload.get('pr_number'))
        if number is not None:
            return number
        url = payload.get('pr_url') or payload.get('html_url')
        if isinstance(url, str):
            match = _PR_URL_RE.search(url)
            if match:
                return int(match.group(2))

    text = str(output or '')
    wanted = str(repo or '').strip().lower()
    for match in _PR_URL_RE.finditer(text):
        if not wanted or match.group(1).lower() == wanted:
            return int(match.group(2))
    if _NO_PR_RE.search(text):
        return None
    match = _PR_REF_RE.search(text)
    if match:
        return int(match.group(1))
    return None
