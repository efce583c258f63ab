from __future__ import annotations

from pathlib import Path

from agent_runner.config import load_settings

_RUNNER_ENV = (
    'RUNNER_AGENT_COMMAND',
    'RUNNER_AGENT_MODEL',
    'RUNNER_REPOSITORIES_ROOT',
    'RUNNER_MAX_CONCURRENT_AGENTS',
    'RUNNER_AGENT_TIMEOUT_SECONDS',
    'RUNNER_ITERATE_TIMEOUT_SECONDS',
    'RUNNER_IDLE_TIMEOUT_SECONDS',
    'RUNNER_MAX_OUTPUT_BYTES',
    'RUNNER_MAX_ITERATIONS',
    'RUNNER_REDIS_URL',
    'RUNNER_CONVERSATION_TTL_SECONDS',
    'RUNNER_CONVERSATION_KEY_PREFIX',
    'RUNNER_RECORD_REVIEW_MESSAGES',
    'RUNNER_WEBHOOK_SECRET',
    'RUNNER_CALLBACK_BASE_URL',
    'RUNNER_ASSUME_COMPLETE_ON_CLEAN_EXIT',
)


def _clear_env(monkeypatch) -> None:
    for name in _RUNNER_ENV:
        monkeypatch.delenv(name, raising=False)


def test_load_settings_defaults(monkeypatch):
    _clear_env(monkeypatch)
    settings = load_settings()
    assert settings.agent_command == 'cursor-agent'
    assert settings.agent_model == 'auto'
    assert settings.max_concurrent_agents == 5
    assert settings.agent_timeout_seconds == 300
    assert settings.iterate_timeout_seconds == 900
    assert settings.idle_timeout_seconds == 600
    assert settings.max_output_bytes == 10 * 1024 * 1024
    assert settings.default_max_iterations == 25
    assert settings.redis_url == 'redis://localhost:6379/0'
    assert settings.conversation_ttl_seconds == 3600
    assert settings.conversation_key_prefix == 'agent'
    assert settings.record_review_messages is False
    assert settings.assume_complete_on_clean_exit is True
    assert settings.webhook_secret is None
    assert settings.callback_base_url is None
    assert settings.repositories_root.is_absolute()


def test_load_settings_reads_overrides(monkeypatch, tmp_path: Path):
    _clear_env(monkeypatch)
    monkeypatch.setenv('RUNNER_AGENT_COMMAND', 'cursor-agent --verbose')
    monkeypatch.setenv('RUNNER_REPOSITORIES_ROOT', str(tmp_path))
    monkeypatch.setenv('RUNNER_MAX_CONCURRENT_AGENTS', '2')
    monkeypatch.setenv('RUNNER_CONVERSATION_KEY_PREFIX', 'runner:')
    monkeypatch.setenv('RUNNER_RECORD_REVIEW_MESSAGES', 'yes')
    monkeypatch.setenv('RUNNER_ASSUME_COMPLETE_ON_CLEAN_EXIT', '0')
    monkeypatch.setenv('RUNNER_WEBHOOK_SECRET', '  s3cr3t  ')
    settings = load_settings()
    assert settings.agent_command == 'cursor-agent --verbose'
    assert settings.repositories_root == tmp_path.resolve()
    assert settings.max_concurrent_agents == 2
    assert settings.conversation_key_prefix == 'runner'
    assert settings.record_review_messages is True
    assert settings.assume_complete_on_clean_exit is False
    assert settings.webhook_secret == 's3cr3t'


def test_load_settings_invalid_numbers_fall_back_to_defaults(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv('RUNNER_MAX_CONCURRENT_AGENTS', 'many')
    monkeypatch.setenv('RUNNER_MAX_ITERATIONS', '')
    settings = load_settings()
    assert settings.max_concurrent_agents == 5
    assert settings.default_max_iterations == 25


def test_load_settings_clamps_to_minimums(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv('RUNNER_MAX_CONCURRENT_AGENTS', '0')
    monkeypatch.setenv('RUNNER_MAX_OUTPUT_BYTES', '10')
    monkeypatch.setenv('RUNNER_CONVERSATION_TTL_SECONDS', '5')
    settings = load_settings()
    assert settings.max_concurrent_agents == 1
    assert settings.max_output_bytes == 1024
    assert settings.conversation_ttl_seconds == 60
