from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

import agent_runner.main as main_module
from agent_runner.conversations import ConversationStore
from agent_runner.main import build_app


def _patch_store(monkeypatch, fake_redis, captured: dict) -> None:
    def from_url(cls, url, **kwargs):
        captured['url'] = url
        captured.update(kwargs)
        return cls(fake_redis, **kwargs)

    monkeypatch.setattr(main_module.ConversationStore, 'from_url', classmethod(from_url))


def test_build_app_serves_healthz_with_unreachable_store(monkeypatch, tmp_path: Path):
    monkeypatch.setenv('RUNNER_REDIS_URL', 'redis://127.0.0.1:1/0')
    monkeypatch.setenv('RUNNER_REPOSITORIES_ROOT', str(tmp_path))
    app = build_app()
    client = TestClient(app)

    resp = client.get('/healthz')
    assert resp.status_code == 200
    assert resp.json() == {'status': 'ok', 'conversation_store': 'unavailable'}


def test_build_app_wires_settings_into_components(monkeypatch, tmp_path: Path, fake_redis):
    captured: dict = {}
    _patch_store(monkeypatch, fake_redis, captured)
    monkeypatch.setenv('RUNNER_REDIS_URL', 'redis://cache:6379/3')
    monkeypatch.setenv('RUNNER_REPOSITORIES_ROOT', str(tmp_path))
    monkeypatch.setenv('RUNNER_MAX_CONCURRENT_AGENTS', '2')
    monkeypatch.setenv('RUNNER_CONVERSATION_TTL_SECONDS', '120')
    monkeypatch.setenv('RUNNER_CONVERSATION_KEY_PREFIX', 'runner')

    app = build_app()
    client = TestClient(app)

    assert client.get('/healthz').json()['conversation_store'] == 'ok'
    assert client.get('/api/queue-status').json()['capacity'] == 2
    assert captured == {'url': 'redis://cache:6379/3', 'ttl_seconds': 120, 'key_prefix': 'runner'}

    container = app.state.container
    assert isinstance(container.store, ConversationStore)
    assert container.orchestrator.workspace_guard.root == tmp_path.resolve()
    assert container.orchestrator.evaluator.executor is container.executor


def test_build_app_validation_happens_before_spawning(monkeypatch, tmp_path: Path, fake_redis):
    _patch_store(monkeypatch, fake_redis, {})
    monkeypatch.setenv('RUNNER_REPOSITORIES_ROOT', str(tmp_path))
    client = TestClient(build_app())

    resp = client.post('/agent/execute', json={'prompt': 'hi', 'workspace': 'missing-repo'})

    assert resp.status_code == 404
    assert resp.json()['code'] == 'workspace_not_found'
    assert client.get('/api/queue-status').json()['acquired_total'] == 0
