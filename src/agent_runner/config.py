from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    agent_command: str
    agent_model: str
    repositories_root: Path
    max_concurrent_agents: int
    agent_timeout_seconds: int
    iterate_timeout_seconds: int
    idle_timeout_seconds: int
    safety_grace_seconds: int
    max_output_bytes: int
    summarize_timeout_seconds: int
    default_max_iterations: int
    redis_url: str
    conversation_ttl_seconds: int
    conversation_key_prefix: str
    record_review_messages: bool
    webhook_secret: str | None
    callback_timeout_seconds: int
    callback_base_url: str | None
    assume_complete_on_clean_exit: bool
    service_name: str
    otel_endpoint: str | None


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name, '') or '').strip().lower()
    if not raw:
        return default
    return raw in {'1', 'true', 'yes', 'on'}


def _env_optional(name: str) -> str | None:
    return str(os.getenv(name, '') or '').strip() or None


def load_settings() -> Settings:
    agent_command = str(os.getenv('RUNNER_AGENT_COMMAND', 'cursor-agent') or '').strip() or 'cursor-agent'
    agent_model = str(os.getenv('RUNNER_AGENT_MODEL', 'auto') or '').strip() or 'auto'
    repositories_root = Path(os.getenv('RUNNER_REPOSITORIES_ROOT', 'repositories')).resolve()
    prefix = str(os.getenv('RUNNER_CONVERSATION_KEY_PREFIX', 'agent') or '').strip().strip(':') or 'agent'
    return Settings(
        agent_command=agent_command,
        agent_model=agent_model,
        repositories_root=repositories_root,
        max_concurrent_agents=_env_int('RUNNER_MAX_CONCURRENT_AGENTS', 5),
        agent_timeout_seconds=_env_int('RUNNER_AGENT_TIMEOUT_SECONDS', 300),
        iterate_timeout_seconds=_env_int('RUNNER_ITERATE_TIMEOUT_SECONDS', 900),
        # Idle timeout is checked independently of the absolute timeout.
        idle_timeout_seconds=_env_int('RUNNER_IDLE_TIMEOUT_SECONDS', 600),
        safety_grace_seconds=_env_int('RUNNER_SAFETY_GRACE_SECONDS', 30),
        max_output_bytes=_env_int('RUNNER_MAX_OUTPUT_BYTES', 10 * 1024 * 1024, minimum=1024),
        summarize_timeout_seconds=_env_int('RUNNER_SUMMARIZE_TIMEOUT_SECONDS', 300),
        default_max_iterations=_env_int('RUNNER_MAX_ITERATIONS', 25),
        redis_url=os.getenv('RUNNER_REDIS_URL', 'redis://localhost:6379/0'),
        conversation_ttl_seconds=_env_int('RUNNER_CONVERSATION_TTL_SECONDS', 3600, minimum=60),
        conversation_key_prefix=prefix,
        record_review_messages=_env_bool('RUNNER_RECORD_REVIEW_MESSAGES', False),
        webhook_secret=_env_optional('RUNNER_WEBHOOK_SECRET'),
        callback_timeout_seconds=_env_int('RUNNER_CALLBACK_TIMEOUT_SECONDS', 30),
        callback_base_url=_env_optional('RUNNER_CALLBACK_BASE_URL'),
        assume_complete_on_clean_exit=_env_bool('RUNNER_ASSUME_COMPLETE_ON_CLEAN_EXIT', True),
        service_name=os.getenv('RUNNER_SERVICE_NAME', 'agent-runner'),
        otel_endpoint=os.getenv('RUNNER_OTEL_EXPORTER_OTLP_ENDPOINT'),
    )
