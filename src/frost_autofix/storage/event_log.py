from __future__ import annotations

import json
from pathlib import Path
from threading import Lock

from frost_autofix.domain.events import EventType, normalize_event_type
from frost_autofix.domain.models import FixTask, utc_now_iso


class EventLog:
    """Append-only JSON-lines record of task lifecycle events."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = Lock()

    def append(self, event_type: str | EventType, *, task: FixTask | None = None, **payload) -> dict:
        event: dict = {
            'type': normalize_event_type(event_type),
            'ts': utc_now_iso(),
        }
        if task is not None:
            event.update(
                {
                    'task': task.name,
                    'installation_id': task.installation_id,
                    'repo': task.repo,
                    'issue_number': task.issue_number,
                    'retries': task.retries,
                }
            )
        event.update(payload)
        line = json.dumps(event, ensure_ascii=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open('a', encoding='utf-8') as f:
                f.write(line + '\n')
        return event

    def read(self, *, limit: int | None = None) -> list[dict]:
        if not self.path.exists():
            return []
        events = []
        for raw in self.path.read_text(encoding='utf-8').splitlines():
            text = raw.strip()
            if not text:
                continue
            try:
                events.append(json.loads(text))
            except json.JSONDecodeError:
                continue
        if limit is not None:
            return events[-max(0, int(limit)):]
        return events
