from __future__ import annotations

import logging

from agent_runner.adapters import ProcessExecutor
from agent_runner.api import create_app
from agent_runner.callbacks import CallbackDelivery
from agent_runner.config import Settings, load_settings
from agent_runner.conversations import ConversationStore
from agent_runner.observability import configure_observability
from agent_runner.orchestrator import ExecutionOrchestrator
from agent_runner.prompting import PromptBuilder
from agent_runner.review import ReviewEvaluator
from agent_runner.workspace import WorkspaceGuard

_log = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> tuple[ExecutionOrchestrator, ConversationStore, ProcessExecutor]:
    executor = ProcessExecutor(
        max_concurrency=settings.max_concurrent_agents,
        default_timeout_seconds=settings.agent_timeout_seconds,
        idle_timeout_seconds=settings.idle_timeout_seconds,
        safety_grace_seconds=settings.safety_grace_seconds,
        max_output_bytes=settings.max_output_bytes,
    )
    store = ConversationStore.from_url(
        settings.redis_url,
        ttl_seconds=settings.conversation_ttl_seconds,
        key_prefix=settings.conversation_key_prefix,
    )
    if not store.ping():
        _log.warning('conversation store unreachable at startup; conversations will not persist until it recovers')
    prompts = PromptBuilder()
    evaluator = ReviewEvaluator(
        executor=executor,
        agent_command=settings.agent_command,
        agent_model=settings.agent_model,
        timeout_seconds=settings.iterate_timeout_seconds,
        prompts=prompts,
    )
    orchestrator = ExecutionOrchestrator(
        executor=executor,
        evaluator=evaluator,
        store=store,
        callbacks=CallbackDelivery(
            webhook_secret=settings.webhook_secret,
            timeout_seconds=settings.callback_timeout_seconds,
        ),
        workspace_guard=WorkspaceGuard(settings.repositories_root),
        agent_command=settings.agent_command,
        agent_model=settings.agent_model,
        agent_timeout_seconds=settings.agent_timeout_seconds,
        iterate_timeout_seconds=settings.iterate_timeout_seconds,
        summarize_timeout_seconds=settings.summarize_timeout_seconds,
        default_max_iterations=settings.default_max_iterations,
        record_review_messages=settings.record_review_messages,
        assume_complete_on_clean_exit=settings.assume_complete_on_clean_exit,
        prompts=prompts,
    )
    return orchestrator, store, executor


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    orchestrator, store, executor = build_orchestrator(settings)
    app = create_app(
        orchestrator=orchestrator,
        store=store,
        executor=executor,
        callback_base_url=settings.callback_base_url,
        webhook_secret=settings.webhook_secret,
    )
    return app


app = build_app()
