from __future__ import annotations

from frost_autofix.domain.models import FixTask

DEFAULT_BODY_MAX_CHARS = 4000


def agent_label(task: FixTask) -> str:
    repo_slug = task.repo.replace('/', '-')
    return f'autofix-{repo_slug}-{task.issue_number}'


def build_fix_prompt(task: FixTask, *, body_max_chars: int = DEFAULT_BODY_MAX_CHARS) -> str:
    body = (task.issue_body or '').strip()[: max(1, int(body_max_chars))] or '(no description provided)'
    labels = ', '.join(task.labels) if task.labels else '(none)'
    repo_name = task.repo.split('/')[-1] or task.repo
    return '\n'.join(
        [
            f'Fix GitHub issue #{task.issue_number} in {task.repo}.',
            '',
            f'Issue title: {task.issue_title}',
            f'Labels: {labels}',
            '',
            'Issue description:',
            body,
            '',
            'Steps:',
            f'1. Clone https://github.com/{task.repo} into a working directory named {repo_name},'
            ' or update it if it is already present.',
            '2. Read the code and find the root cause of the issue.',
            '3. Make the smallest change that fixes it; do not refactor unrelated code.',
            '4. Run the existing tests if the repository has them.',
            f'5. Open a pull request titled "fix: <short description> (closes #{task.issue_number})"'
            ' that references the issue and explains the root cause.',
            '',
            'If the issue does not contain enough information to reproduce or fix it,'
            ' leave a comment on the issue asking for the missing details and make no code change.',
            '',
            'Finish by printing the pull request URL on its own line, or NO_PR if none was opened.',
        ]
    )
