from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import os
from pathlib import Path
import re
import tempfile
from threading import Lock
from typing import Iterator, Protocol
from uuid import uuid4

from frost_autofix.domain.errors import StorageFault
from frost_autofix.domain.models import FixTask, Region, TaskOutcome, utc_now, utc_now_iso
from frost_autofix.observability import get_logger

_log = get_logger('frost_autofix.storage.mailbox')

_SLUG_RE = re.compile(r'[^A-Za-z0-9_.]+')
_RECORD_SUFFIX = '.json'


class TaskNameCollision(FileExistsError):
    """Two submissions produced the same mailbox name; never retried."""


def make_task_name(task: FixTask, *, now: datetime | None = None) -> str:
    """Build a sortable, collision-resistant mailbox name.

    The millisecond timestamp leads so lexicographic order is chronological
    order; tenant, repo and issue follow for operators reading the directory,
    and a random token makes same-millisecond submissions distinct.
    """
    stamp = now or utc_now()
    millis = int(stamp.timestamp() * 1000)
    tenant = str(task.installation_id) if task.installation_id is not None else 'none'
    repo_slug = _SLUG_RE.sub('-', task.repo).strip('-') or 'repo'
    return f'{millis:013d}-{tenant}-{repo_slug}-{int(task.issue_number)}-{uuid4().hex[:8]}'


def is_due(task: FixTask, *, now: datetime | None = None) -> bool:
    if not task.not_before:
        return True
    try:
        not_before = datetime.fromisoformat(str(task.not_before))
    except ValueError:
        return True
    if not_before.tzinfo is None:
        not_before = not_before.replace(tzinfo=timezone.utc)
    return not_before <= (now or utc_now())


class MailboxStore(Protocol):
    def enqueue(self, task: FixTask) -> FixTask:
        ...

    def has_in_flight(self) -> bool:
        ...

    def claim_oldest(self, *, now: datetime | None = None) -> FixTask | None:
        """Move the oldest due queued task to in-flight, or return None.

        Returns None without claiming when in-flight already holds a task.
        """
        ...

    def resolve(self, task: FixTask, outcome: TaskOutcome) -> FixTask:
        ...

    def recover_in_flight(self) -> list[FixTask]:
        ...

    def counts(self) -> dict[str, int]:
        ...

    def list_region(self, region: Region) -> list[str]:
        ...

    def get(self, name: str) -> tuple[Region, FixTask] | None:
        ...


def settle(task: FixTask, outcome: TaskOutcome) -> FixTask:
    """Apply an outcome to a claimed task record (retry counter, error, result)."""
    retries = task.retries if outcome.success else task.retries + 1
    last_error = outcome.error if outcome.error is not None else task.last_error
    if outcome.terminal:
        return task.with_changes(
            retries=retries,
            last_error=last_error,
            result=outcome.result,
            completed_at=utc_now_iso(),
            status=Region.DONE.value,
            not_before=None,
        )
    return task.with_changes(
        retries=retries,
        last_error=last_error,
        status=Region.QUEUED.value,
        not_before=outcome.not_before,
    )


class FileMailboxStore:
    """Mailbox kept as three sibling directories, one JSON file per task.

    Every relocation is a single ``os.replace`` between directories on the
    same filesystem. Claims hold an exclusive lock file while the in-flight
    gate is checked and the rename is made.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._dirs = {region: self.root / region.value for region in Region}
        for path in self._dirs.values():
            path.mkdir(parents=True, exist_ok=True)
        self._lock_path = self.root / '.claim.lock'
        self._thread_lock = Lock()

    def enqueue(self, task: FixTask) -> FixTask:
        name = task.name or make_task_name(task)
        self._validate_name(name)
        for region in Region:
            if self._path(region, name).exists():
                raise TaskNameCollision(f'task name collision: {name}')
        record = task.with_changes(name=name, status=Region.QUEUED.value)
        target = self._path(Region.QUEUED, name)
        tmp = self._write_temp(target.parent, record)
        try:
            # link() refuses to overwrite an existing name.
            os.link(tmp, target)
        except FileExistsError as exc:
            raise TaskNameCollision(f'task name collision: {name}') from exc
        finally:
            tmp.unlink(missing_ok=True)
        _log.info('task enqueued name=%s repo=%s issue=%s', name, record.repo, record.issue_number)
        return record

    def has_in_flight(self) -> bool:
        return bool(self._names(Region.IN_FLIGHT))

    def claim_oldest(self, *, now: datetime | None = None) -> FixTask | None:
        with self._claim_lock():
            if self.has_in_flight():
                return None
            for name in self._names(Region.QUEUED):
                source = self._path(Region.QUEUED, name)
                try:
                    candidate = self._read(source)
                except FileNotFoundError:
                    continue
                except ValueError:
                    self._quarantine(source, name)
                    continue
                if not is_due(candidate, now=now):
                    continue
                target = self._path(Region.IN_FLIGHT, name)
                try:
                    os.replace(source, target)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise StorageFault(f'claim failed for {name}: {exc}') from exc
                claimed = candidate.with_changes(name=name, status=Region.IN_FLIGHT.value)
                try:
                    self._write_atomic(target, claimed)
                except OSError as exc:
                    raise StorageFault(f'claimed {name} but could not stamp status: {exc}') from exc
                return claimed
        return None

    def resolve(self, task: FixTask, outcome: TaskOutcome) -> FixTask:
        name = str(task.name or '')
        self._validate_name(name)
        source = self._path(Region.IN_FLIGHT, name)
        if not source.exists():
            raise StorageFault(f'task is not in flight: {name}')
        settled = settle(task, outcome)
        target_region = Region.DONE if outcome.terminal else Region.QUEUED
        try:
            # Stamp the outcome in place first; the rename below is the state change.
            self._write_atomic(source, settled)
            os.replace(source, self._path(target_region, name))
        except OSError as exc:
            raise StorageFault(f'resolve failed for {name} -> {target_region.value}: {exc}') from exc
        return settled

    def recover_in_flight(self) -> list[FixTask]:
        recovered: list[FixTask] = []
        with self._claim_lock():
            for name in self._names(Region.IN_FLIGHT):
                source = self._path(Region.IN_FLIGHT, name)
                try:
                    task = self._read(source)
                except ValueError as exc:
                    raise StorageFault(f'in-flight record is unreadable: {name}') from exc
                restored = task.with_changes(
                    name=name,
                    status=Region.QUEUED.value,
                    last_error='recovered: returned to queue by operator',
                    not_before=None,
                )
                try:
                    self._write_atomic(source, restored)
                    os.replace(source, self._path(Region.QUEUED, name))
                except OSError as exc:
                    raise StorageFault(f'recover failed for {name}: {exc}') from exc
                recovered.append(restored)
        return recovered

    def counts(self) -> dict[str, int]:
        return {region.value: len(self._names(region)) for region in Region}

    def list_region(self, region: Region) -> list[str]:
        return self._names(Region(region))

    def get(self, name: str) -> tuple[Region, FixTask] | None:
        self._validate_name(name)
        for region in Region:
            path = self._path(region, name)
            try:
                return region, self._read(path)
            except FileNotFoundError:
                continue
        return None

    def _names(self, region: Region) -> list[str]:
        directory = self._dirs[region]
        return sorted(
            path.name[: -len(_RECORD_SUFFIX)]
            for path in directory.iterdir()
            if path.is_file() and path.name.endswith(_RECORD_SUFFIX) and not path.name.startswith('.')
        )

    def _path(self, region: Region, name: str) -> Path:
        return self._dirs[region] / f'{name}{_RECORD_SUFFIX}'

    def _quarantine(self, source: Path, name: str) -> None:
        _log.error('unreadable queued record moved to done name=%s', name)
        try:
            os.replace(source, self._path(Region.DONE, name))
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageFault(f'could not quarantine {name}: {exc}') from exc

    @staticmethod
    def _validate_name(name: str) -> None:
        text = str(name or '')
        if not text or '/' in text or '\\' in text or text.startswith('.'):
            raise ValueError(f'invalid task name: {name!r}')

    @staticmethod
    def _read(path: Path) -> FixTask:
        try:
            record = json.loads(path.read_text(encoding='utf-8'))
        except json.JSONDecodeError as exc:
            raise ValueError(f'malformed task record: {path.name}') from exc
        if not isinstance(record, dict):
            raise ValueError(f'malformed task record: {path.name}')
        return FixTask.from_record(record, name=path.name[: -len(_RECORD_SUFFIX)])

    @staticmethod
    def _write_temp(directory: Path, task: FixTask) -> Path:
        fd, tmp = tempfile.mkstemp(prefix='.', suffix='.tmp', dir=str(directory))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                handle.write(json.dumps(task.to_record(), ensure_ascii=True, indent=2))
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return Path(tmp)

    def _write_atomic(self, path: Path, task: FixTask) -> None:
        tmp = self._write_temp(path.parent, task)
        try:
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    @contextmanager
    def _claim_lock(self) -> Iterator[None]:
        with self._thread_lock:
            handle = self._lock_path.open('a+', encoding='utf-8')
            try:
                _lock_file(handle)
                try:
                    yield
                finally:
                    _unlock_file(handle)
            finally:
                handle.close()


def _lock_file(handle) -> None:
    if os.name == 'nt':
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)


def _unlock_file(handle) -> None:
    if os.name == 'nt':
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
