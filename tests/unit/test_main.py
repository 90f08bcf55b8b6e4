from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from frost_autofix.clients import BackendTaskSink
from frost_autofix.main import build_app


def test_build_app_falls_back_to_in_memory_ledger_on_bad_database_url(monkeypatch, tmp_path: Path):
    monkeypatch.setenv('FROST_DATABASE_URL', 'invalid+driver://bad')
    monkeypatch.setenv('FROST_MAILBOX_ROOT', str(tmp_path / 'mailbox'))
    app = build_app()
    client = TestClient(app)

    resp = client.get('/healthz')
    assert resp.status_code == 200
    assert resp.json()['status'] == 'ok'
    assert resp.json()['queue']['queued'] == 0


def test_build_app_uses_sqlite_database(monkeypatch, tmp_path: Path, sqlite_url: str):
    monkeypatch.setenv('FROST_DATABASE_URL', sqlite_url)
    monkeypatch.setenv('FROST_MAILBOX_ROOT', str(tmp_path / 'mailbox'))
    monkeypatch.setenv('FROST_MAILBOX_BACKEND', 'sql')

    client = TestClient(build_app())

    assert client.get('/api/stats').json()['total_runs'] == 0
    assert client.get('/health').json()['queue'] == {'queued': 0, 'in_flight': 0, 'done': 0}
    assert not (tmp_path / 'mailbox' / 'queued').exists()


def test_build_app_wires_backend_task_sink(monkeypatch, tmp_path: Path):
    captured: dict[str, object] = {}

    def fake_create_app(**kwargs):
        captured.update(kwargs)
        return object()

    monkeypatch.setenv('FROST_DATABASE_URL', 'invalid+driver://bad')
    monkeypatch.setenv('FROST_MAILBOX_ROOT', str(tmp_path / 'mailbox'))
    monkeypatch.setenv('FROST_TASK_SINK', 'backend')
    monkeypatch.setenv('FROST_BACKEND_URL', 'http://backend.local/enqueue')
    monkeypatch.setenv('FROST_BACKEND_TOKEN', 'be-token')
    monkeypatch.setattr('frost_autofix.main.create_app', fake_create_app)

    build_app()

    sink = captured['sink']
    assert isinstance(sink, BackendTaskSink)
    assert sink.url == 'http://backend.local/enqueue'
    assert sink.token == 'be-token'
    assert captured['backend_token'] == 'be-token'
