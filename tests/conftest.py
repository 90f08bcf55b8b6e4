from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path
import sys

import pytest


def _prepend_repo_src_to_syspath() -> None:
    src = Path(__file__).resolve().parents[1] / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    key = src_text.replace('\\', '/').lower()
    sys.path[:] = [src_text] + [
        item for item in sys.path if str(item or '').replace('\\', '/').lower() != key
    ]


_prepend_repo_src_to_syspath()

WEBHOOK_SECRET = 'whsec-test'


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return 'sha256=' + hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def issue_event(
    *,
    title: str,
    body: str = '',
    labels: tuple[str, ...] = (),
    installation_id: int | None = 42,
    repo: str = 'acme/widgets',
    number: int = 7,
    action: str = 'opened',
) -> dict:
    payload: dict = {
        'action': action,
        'issue': {
            'number': number,
            'title': title,
            'body': body,
            'labels': [{'name': name} for name in labels],
        },
        'repository': {
            'full_name': repo,
            'owner': {'login': repo.split('/')[0], 'type': 'Organization'},
        },
    }
    if installation_id is not None:
        payload['installation'] = {'id': installation_id}
    return payload


def comment_event(*, comment: str, installation_id: int | None = 42, repo: str = 'acme/widgets', number: int = 7) -> dict:
    payload = issue_event(title='Please add export', installation_id=installation_id, repo=repo, number=number)
    payload['action'] = 'created'
    payload['comment'] = {'body': comment}
    return payload


def signed_request(payload: dict, *, event: str = 'issues', secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode('utf-8')
    headers = {
        'X-GitHub-Event': event,
        'X-Hub-Signature-256': sign(body, secret),
        'Content-Type': 'application/json',
    }
    return body, headers


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    db_file = tmp_path / 'frost-test.sqlite3'
    return f'sqlite+pysqlite:///{db_file.as_posix()}'
