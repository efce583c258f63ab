from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
import re
from threading import Lock
import time
from urllib.parse import urlsplit

from agent_runner.adapters.base import build_agent_argv, clean_output
from agent_runner.conversations import ConversationStore, is_context_window_error
from agent_runner.domain.errors import (
    EvaluatorError,
    InputValidationError,
    ProcessFailure,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from agent_runner.domain.models import ExecutionRequest, ExecutionResult, Message, ReviewVerdict, Role
from agent_runner.observability import get_logger, set_request_context
from agent_runner.prompting import PromptBuilder, build_context_string
from agent_runner.workspace import WorkspaceGuard

_log = get_logger('agent_runner.orchestrator')

_QUEUE_CLASS_RE = re.compile(r'^[a-z0-9][a-z0-9_.-]{0,63}$')
_API_KEY_PATTERNS = (
    re.compile(r'API key.*invalid', re.IGNORECASE),
    re.compile(r'invalid.*API key', re.IGNORECASE),
)
MAX_ITERATIONS_LIMIT = 100


def _is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme.lower() in {'http', 'https'} and bool(parts.netloc)


@dataclass(frozen=True)
class _Attempt:
    stdout: str
    stderr: str
    exit_code: int | None
    failure: str | None = None
    message: str | None = None

    @property
    def raw_output(self) -> str:
        return '\n'.join(part for part in [self.stdout, self.stderr] if part)

    @property
    def clean_exit(self) -> bool:
        return (
            self.failure is None
            and self.exit_code in (0, None)
            and not self.stderr.strip()
            and bool(self.stdout.strip())
        )

    def failure_reason(self) -> str | None:
        if self.failure:
            return f'{self.failure}: {self.message}' if self.message else self.failure
        if self.exit_code not in (0, None):
            return f'exit_code={self.exit_code}'
        return None


class ExecutionOrchestrator:
    """Drives single executions and review-guided iteration loops."""

    def __init__(
        self,
        *,
        executor,
        evaluator,
        store: ConversationStore,
        callbacks,
        workspace_guard: WorkspaceGuard,
        agent_command: str = 'cursor-agent',
        agent_model: str | None = 'auto',
        agent_timeout_seconds: float = 300.0,
        iterate_timeout_seconds: float = 900.0,
        summarize_timeout_seconds: float = 300.0,
        default_max_iterations: int = 25,
        record_review_messages: bool = False,
        assume_complete_on_clean_exit: bool = True,
        prompts: PromptBuilder | None = None,
        background: Executor | None = None,
        callback_background: Executor | None = None,
    ):
        self.executor = executor
        self.evaluator = evaluator
        self.store = store
        self.callbacks = callbacks
        self.workspace_guard = workspace_guard
        self.agent_command = agent_command
        self.agent_model = agent_model
        self.agent_timeout_seconds = float(agent_timeout_seconds)
        self.iterate_timeout_seconds = float(iterate_timeout_seconds)
        self.summarize_timeout_seconds = float(summarize_timeout_seconds)
        self.default_max_iterations = max(1, int(default_max_iterations))
        self.record_review_messages = bool(record_review_messages)
        self.assume_complete_on_clean_exit = bool(assume_complete_on_clean_exit)
        self.prompts = prompts or PromptBuilder()
        self._background = background or ThreadPoolExecutor(max_workers=4, thread_name_prefix='agent-runner-bg')
        self._callback_pool = callback_background or ThreadPoolExecutor(
            max_workers=4,
            thread_name_prefix='agent-runner-callback',
        )
        self._summarizing: set[str] = set()
        self._summarizing_lock = Lock()

    def prepare(self, request: ExecutionRequest) -> Path:
        """Reject requests that must not spawn anything; return the workspace path."""
        self._validate(request)
        return self.workspace_guard.prepare(request.workspace_ref)

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        workspace = self.prepare(request)
        set_request_context(request_id=request.request_id, iteration=None)
        started = time.monotonic()
        tracer = self._get_tracer()
        with self._span(tracer, 'agent_runner.execute', {'request.id': request.request_id}):
            conversation_id = self.store.get_or_create(request.conversation_ref, request.queue_class)
            _log.info('execute_started workspace=%s conversation_id=%s', workspace, conversation_id)
            attempt = self._run_turn(
                conversation_id,
                workspace,
                user_text=request.prompt,
                agent_prompt=self._initial_prompt(conversation_id, request.prompt),
                resume=False,
                timeout_seconds=self.agent_timeout_seconds,
            )
        failure_reason = attempt.failure_reason()
        result = ExecutionResult(
            request_id=request.request_id,
            succeeded=failure_reason is None,
            output=attempt.stdout,
            error_output=attempt.stderr,
            exit_code=attempt.exit_code,
            iterations_used=1,
            duration_ms=self._elapsed_ms(started),
            conversation_id=conversation_id,
            failure_reason=failure_reason,
            last_raw_output=(attempt.raw_output if failure_reason else None),
        )
        _log.info(
            'execute_finished succeeded=%s exit_code=%s duration_ms=%d',
            result.succeeded,
            result.exit_code,
            result.duration_ms,
        )
        self._dispatch_callback(request, result)
        return result

    def iterate(self, request: ExecutionRequest) -> ExecutionResult:
        workspace = self.prepare(request)
        max_iterations = int(request.max_iterations or self.default_max_iterations)
        set_request_context(request_id=request.request_id, iteration=1)
        started = time.monotonic()
        tracer = self._get_tracer()

        with self._span(tracer, 'agent_runner.iterate', {'request.id': request.request_id, 'max_iterations': max_iterations}):
            conversation_id = self.store.get_or_create(request.conversation_ref, request.queue_class)
            _log.info(
                'iterate_started workspace=%s conversation_id=%s max_iterations=%d',
                workspace,
                conversation_id,
                max_iterations,
            )
            attempt = self._run_turn(
                conversation_id,
                workspace,
                user_text=request.prompt,
                agent_prompt=self._initial_prompt(conversation_id, request.prompt),
                resume=False,
                timeout_seconds=self.iterate_timeout_seconds,
            )
            iterations = 1
            succeeded = False
            failure_reason: str | None = None
            verdict: ReviewVerdict | None = None

            while True:
                set_request_context(request_id=request.request_id, iteration=iterations)
                if attempt.failure == ProcessSpawnError.reason:
                    failure_reason = f'process_failed: {attempt.message or attempt.failure}'
                    break

                with self._span(tracer, 'agent_runner.review', {'iteration': iterations}):
                    verdict, fell_back = self._review(conversation_id, workspace, attempt, request)

                if verdict.abort:
                    prefix = 'evaluator_failed' if fell_back else 'aborted'
                    failure_reason = f'{prefix}: {verdict.reason or "no reason given"}'
                    break
                if verdict.complete:
                    succeeded = True
                    break
                if iterations >= max_iterations:
                    failure_reason = 'max_iterations_reached'
                    break

                iterations += 1
                set_request_context(request_id=request.request_id, iteration=iterations)
                _log.info('iteration_started iteration=%d', iterations)
                with self._span(tracer, 'agent_runner.iteration', {'iteration': iterations}):
                    attempt = self._run_turn(
                        conversation_id,
                        workspace,
                        user_text=self.prompts.resume_prompt_text(),
                        agent_prompt=self.prompts.resume_prompt(),
                        resume=True,
                        timeout_seconds=self.iterate_timeout_seconds,
                    )

        result = ExecutionResult(
            request_id=request.request_id,
            succeeded=succeeded,
            output=attempt.stdout,
            error_output=attempt.stderr,
            exit_code=attempt.exit_code,
            iterations_used=iterations,
            duration_ms=self._elapsed_ms(started),
            conversation_id=conversation_id,
            failure_reason=failure_reason,
            last_raw_output=attempt.raw_output,
            review_reason=(verdict.reason if verdict is not None else None),
        )
        _log.info(
            'iterate_finished succeeded=%s iterations=%d reason=%s duration_ms=%d',
            result.succeeded,
            result.iterations_used,
            result.failure_reason or '',
            result.duration_ms,
        )
        self._dispatch_callback(request, result)
        return result

    def deliver_failure(self, request: ExecutionRequest, *, reason: str, started: float | None = None) -> bool:
        """Report a request that crashed before producing a result."""
        if not request.callback_url:
            return False
        result = ExecutionResult(
            request_id=request.request_id,
            succeeded=False,
            output='',
            error_output=reason,
            exit_code=None,
            iterations_used=0,
            duration_ms=(self._elapsed_ms(started) if started is not None else 0),
            failure_reason=reason,
        )
        return self.callbacks.deliver(request.callback_url, result.to_payload())

    def shutdown(self, *, wait: bool = False) -> None:
        self._background.shutdown(wait=wait)
        self._callback_pool.shutdown(wait=wait)

    def _validate(self, request: ExecutionRequest) -> None:
        if not str(request.prompt or '').strip():
            raise InputValidationError('prompt is required', field='prompt')
        if not str(request.request_id or '').strip():
            raise InputValidationError('request id is required', field='request_id')
        queue = str(request.queue_class or '').strip().lower()
        if not _QUEUE_CLASS_RE.match(queue):
            raise InputValidationError(f'invalid queue class: {request.queue_class}', field='queue_class')
        max_iterations = int(request.max_iterations or 0)
        if max_iterations < 1 or max_iterations > MAX_ITERATIONS_LIMIT:
            raise InputValidationError(
                f'max_iterations must be between 1 and {MAX_ITERATIONS_LIMIT}',
                field='max_iterations',
            )
        callback_url = str(request.callback_url or '').strip()
        if callback_url and not _is_http_url(callback_url):
            raise InputValidationError('callback_url must be an http(s) url', field='callback_url')

    def _initial_prompt(self, conversation_id: str, prompt: str) -> str:
        context = build_context_string(self.store.get_context(conversation_id))
        return self.prompts.agent_prompt(prompt=prompt, context=context)

    def _run_turn(
        self,
        conversation_id: str,
        workspace: Path,
        *,
        user_text: str,
        agent_prompt: str,
        resume: bool,
        timeout_seconds: float,
    ) -> _Attempt:
        self.store.append(conversation_id, Message(role=Role.USER, content=str(user_text or '').strip()))
        attempt = self._invoke_agent(agent_prompt, workspace, resume=resume, timeout_seconds=timeout_seconds)
        reply = attempt.stdout or attempt.stderr
        if reply:
            self.store.append(conversation_id, Message(role=Role.AGENT, content=reply))
        self._inspect_output(conversation_id, workspace, attempt)
        return attempt

    def _invoke_agent(self, prompt: str, workspace: Path, *, resume: bool, timeout_seconds: float) -> _Attempt:
        argv = build_agent_argv(
            command=self.agent_command,
            prompt=prompt,
            model=self.agent_model,
            resume=resume,
        )
        try:
            result = self.executor.execute(argv, workspace, timeout_seconds)
        except ProcessFailure as exc:
            _log.warning('agent_invocation_failed reason=%s error=%s', exc.reason, exc.message)
            return _Attempt(
                stdout=exc.stdout,
                stderr=exc.stderr,
                exit_code=(None if isinstance(exc, ProcessTimeoutError) else exc.exit_code),
                failure=exc.reason,
                message=exc.message,
            )
        return _Attempt(stdout=result.stdout, stderr=result.stderr, exit_code=result.exit_code)

    def _inspect_output(self, conversation_id: str, workspace: Path, attempt: _Attempt) -> None:
        combined = attempt.raw_output
        if any(pattern.search(combined) for pattern in _API_KEY_PATTERNS):
            _log.error('agent_api_key_invalid conversation_id=%s', conversation_id)
        if is_context_window_error(combined):
            _log.warning('context_window_exceeded conversation_id=%s; scheduling summarization', conversation_id)
            self._schedule_summarization(conversation_id, workspace)

    def _review(
        self,
        conversation_id: str,
        workspace: Path,
        attempt: _Attempt,
        request: ExecutionRequest,
    ) -> tuple[ReviewVerdict, bool]:
        output = attempt.stdout or attempt.stderr
        fell_back = False
        try:
            verdict = self.evaluator.evaluate(output, workspace, task_prompt=request.prompt)
        except EvaluatorError as exc:
            _log.warning('review_failed error=%s', exc.message)
            verdict = self._fallback_verdict(attempt, exc.raw_output or exc.message)
            fell_back = True
        except Exception as exc:
            _log.warning('review_failed unexpectedly', exc_info=True)
            verdict = self._fallback_verdict(attempt, str(exc).strip() or exc.__class__.__name__)
            fell_back = True

        if fell_back:
            _log.info('review_fallback kind=%s clean_exit=%s', verdict.kind.value, attempt.clean_exit)
        if self.record_review_messages:
            note = f'[review] {verdict.kind.value}'
            if verdict.reason:
                note = f'{note}: {verdict.reason}'
            self.store.append(conversation_id, Message(role=Role.REVIEWER, content=note))
        return verdict, fell_back

    def _fallback_verdict(self, attempt: _Attempt, raw_text: str) -> ReviewVerdict:
        if self.assume_complete_on_clean_exit and attempt.clean_exit:
            return ReviewVerdict.completed('reviewer unavailable; previous agent run exited cleanly')
        return ReviewVerdict.aborted(str(raw_text or '').strip() or 'reviewer failed without output')

    def _schedule_summarization(self, conversation_id: str, workspace: Path) -> None:
        with self._summarizing_lock:
            if conversation_id in self._summarizing:
                return
            self._summarizing.add(conversation_id)
        self._submit(self._summarize, conversation_id, workspace)

    def _summarize(self, conversation_id: str, workspace: Path) -> bool:
        def summarizer(messages: list[Message]) -> str:
            prompt = self.prompts.summarize_prompt(history=build_context_string(messages))
            argv = build_agent_argv(
                command=self.agent_command,
                prompt=prompt,
                model=self.agent_model,
                approve_mcps=False,
            )
            result = self.executor.execute(argv, workspace, self.summarize_timeout_seconds)
            if not result.succeeded:
                raise ProcessFailure(
                    f'summarizer exited with code {result.exit_code}',
                    stdout=result.stdout,
                    stderr=result.stderr,
                    exit_code=result.exit_code,
                )
            return clean_output(result.stdout)

        try:
            return self.store.summarize(conversation_id, summarizer)
        finally:
            with self._summarizing_lock:
                self._summarizing.discard(conversation_id)

    def _dispatch_callback(self, request: ExecutionRequest, result: ExecutionResult) -> None:
        if not request.callback_url:
            return
        self._submit(self.callbacks.deliver, request.callback_url, result.to_payload(), pool=self._callback_pool)

    def _submit(self, fn, *args, pool: Executor | None = None) -> Future:
        future = (pool or self._background).submit(fn, *args)
        future.add_done_callback(self._log_background_failure)
        return future

    @staticmethod
    def _log_background_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            _log.error('background task failed error=%s', exc, exc_info=exc)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return max(0, int((time.monotonic() - started) * 1000))

    @staticmethod
    def _get_tracer():
        try:
            from opentelemetry import trace
            return trace.get_tracer('agent_runner.orchestrator')
        except Exception:
            _log.debug('OpenTelemetry tracer unavailable', exc_info=True)
            return None

    @staticmethod
    def _span(tracer, name: str, attributes: dict):
        if tracer is None:
            return nullcontext()
        span = tracer.start_as_current_span(name)
        ctx = span.__enter__()
        for key, value in attributes.items():
            try:
                ctx.set_attribute(key, value)
            except Exception:
                pass

        class _Wrapper:
            def __enter__(self_inner):
                return ctx

            def __exit__(self_inner, exc_type, exc, tb):
                return span.__exit__(exc_type, exc, tb)

        return _Wrapper()


__all__ = ['ExecutionOrchestrator', 'MAX_ITERATIONS_LIMIT']
