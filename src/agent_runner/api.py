from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agent_runner.callbacks import build_callback_url
from agent_runner.conversations import ConversationStore
from agent_runner.domain.errors import InputValidationError, WorkspaceError
from agent_runner.domain.models import DEFAULT_QUEUE_CLASS, Conversation, ExecutionRequest, ExecutionResult
from agent_runner.orchestrator import MAX_ITERATIONS_LIMIT, ExecutionOrchestrator

_log = logging.getLogger(__name__)

_WORKSPACE_STATUS = {
    'workspace_not_found': 404,
    'workspace_outside_root': 400,
    'workspace_untrusted': 403,
}


class ExecuteRequest(BaseModel):
    prompt: str = Field(min_length=1)
    workspace: str = Field(default='', max_length=400)
    conversation_id: str | None = Field(default=None, max_length=128)
    queue_class: str = Field(default=DEFAULT_QUEUE_CLASS, min_length=1, max_length=64)
    request_id: str | None = Field(default=None, max_length=128)
    callback_url: str | None = Field(default=None, max_length=2000)


class IterateRequest(ExecuteRequest):
    max_iterations: int | None = Field(default=None, ge=1, le=MAX_ITERATIONS_LIMIT)


class NewConversationRequest(BaseModel):
    queue_class: str = Field(default=DEFAULT_QUEUE_CLASS, min_length=1, max_length=64)


class ExecutionResponse(BaseModel):
    request_id: str
    succeeded: bool
    output: str
    error_output: str
    exit_code: int | None
    iterations_used: int
    duration_ms: int
    conversation_id: str | None = None
    failure_reason: str | None = None
    last_raw_output: str | None = None
    review_reason: str | None = None


class AcceptedResponse(BaseModel):
    accepted: bool
    request_id: str
    status: str


class NewConversationResponse(BaseModel):
    conversation_id: str
    queue_class: str


class MessageResponse(BaseModel):
    role: str
    content: str
    created_at: str


class ConversationSummaryResponse(BaseModel):
    conversation_id: str
    queue_class: str | None
    message_count: int
    summarized: bool
    created_at: str
    last_accessed_at: str


class ConversationResponse(ConversationSummaryResponse):
    summary: str | None
    expires_at: str | None
    messages: list[MessageResponse]


class QueueStatusResponse(BaseModel):
    capacity: int
    available: int
    in_use: int
    waiting: int
    acquired_total: int
    released_total: int


class ValidationErrorResponse(BaseModel):
    code: str
    message: str
    field: str | None = None


class AppState:
    def __init__(self, orchestrator: ExecutionOrchestrator, store: ConversationStore, executor):
        self.orchestrator = orchestrator
        self.store = store
        self.executor = executor


def _to_summary_response(conversation: Conversation) -> ConversationSummaryResponse:
    return ConversationSummaryResponse(
        conversation_id=conversation.conversation_id,
        queue_class=conversation.queue_class,
        message_count=len(conversation.messages),
        summarized=bool(conversation.summary),
        created_at=conversation.created_at,
        last_accessed_at=conversation.last_accessed_at,
    )


def _to_conversation_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        **_to_summary_response(conversation).model_dump(),
        summary=conversation.summary,
        expires_at=conversation.expires_at,
        messages=[MessageResponse(**message.to_dict()) for message in conversation.messages],
    )


def _result_response(result: ExecutionResult) -> JSONResponse:
    status_code = 200 if result.succeeded else 422
    return JSONResponse(status_code=status_code, content=ExecutionResponse(**result.to_payload()).model_dump())


def create_app(
    *,
    orchestrator: ExecutionOrchestrator,
    store: ConversationStore,
    executor,
    callback_base_url: str | None = None,
    webhook_secret: str | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        _log.info('api_shutdown; stopping background workers')
        orchestrator.shutdown(wait=False)

    app = FastAPI(title='agent-runner api', version='1.0.0', lifespan=lifespan)
    app.state.container = AppState(orchestrator=orchestrator, store=store, executor=executor)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        if not parts:
            return None

        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
                continue
            text = str(part)
            field = f'{field}.{text}' if field else text
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=message, field=field),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(WorkspaceError)
    async def handle_workspace_error(request: Request, exc: WorkspaceError):  # noqa: ARG001
        return JSONResponse(
            status_code=_WORKSPACE_STATUS.get(exc.code, 400),
            content=_error_payload(message=str(exc), field='workspace', code=exc.code),
        )

    def get_orchestrator() -> ExecutionOrchestrator:
        return app.state.container.orchestrator

    def get_store() -> ConversationStore:
        return app.state.container.store

    def _to_request(payload: ExecuteRequest, *, max_iterations: int | None = None, callback_url: str | None = None) -> ExecutionRequest:
        return ExecutionRequest(
            request_id=str(payload.request_id or '').strip() or uuid.uuid4().hex,
            prompt=payload.prompt,
            workspace_ref=payload.workspace,
            queue_class=str(payload.queue_class or '').strip().lower() or DEFAULT_QUEUE_CLASS,
            conversation_ref=(str(payload.conversation_id or '').strip() or None),
            max_iterations=int(max_iterations or app.state.container.orchestrator.default_max_iterations),
            callback_url=(str(callback_url or payload.callback_url or '').strip() or None),
        )

    def _run_in_background(mode: str, request: ExecutionRequest) -> None:
        orchestrator = get_orchestrator()
        started = time.monotonic()
        try:
            if mode == 'iterate':
                orchestrator.iterate(request)
            else:
                orchestrator.execute(request)
        except Exception as exc:
            reason_text = str(exc).strip() or exc.__class__.__name__
            _log.exception('background worker failed request_id=%s mode=%s reason=%s', request.request_id, mode, reason_text)
            orchestrator.deliver_failure(request, reason=f'background_error: {reason_text}', started=started)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        store_status = 'ok' if get_store().ping() else 'unavailable'
        return {'status': 'ok', 'conversation_store': store_status}

    @app.post('/agent/execute', response_model=ExecutionResponse)
    def execute(payload: ExecuteRequest, orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)):
        result = orchestrator.execute(_to_request(payload))
        return _result_response(result)

    @app.post('/agent/execute/async', response_model=AcceptedResponse, status_code=202)
    def execute_async(
        payload: ExecuteRequest,
        background_tasks: BackgroundTasks,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> AcceptedResponse:
        if not str(payload.callback_url or '').strip():
            raise InputValidationError('callback_url is required for async execution', field='callback_url')
        request = _to_request(payload)
        orchestrator.prepare(request)
        background_tasks.add_task(_run_in_background, 'execute', request)
        return AcceptedResponse(accepted=True, request_id=request.request_id, status='queued')

    @app.post('/agent/iterate', response_model=ExecutionResponse)
    def iterate(payload: IterateRequest, orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)):
        result = orchestrator.iterate(_to_request(payload, max_iterations=payload.max_iterations))
        return _result_response(result)

    @app.post('/agent/iterate/async', response_model=AcceptedResponse, status_code=202)
    def iterate_async(
        payload: IterateRequest,
        background_tasks: BackgroundTasks,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> AcceptedResponse:
        callback_url = str(payload.callback_url or '').strip() or None
        if callback_url is None and callback_base_url:
            callback_url = build_callback_url(callback_base_url, webhook_secret)
        if callback_url is None:
            raise InputValidationError('callback_url is required for async iteration', field='callback_url')
        request = _to_request(payload, max_iterations=payload.max_iterations, callback_url=callback_url)
        orchestrator.prepare(request)
        background_tasks.add_task(_run_in_background, 'iterate', request)
        return AcceptedResponse(accepted=True, request_id=request.request_id, status='queued')

    @app.post('/agent/conversation/new', response_model=NewConversationResponse)
    def new_conversation(
        payload: NewConversationRequest,
        store: ConversationStore = Depends(get_store),
    ) -> NewConversationResponse:
        queue_class = str(payload.queue_class or '').strip().lower() or DEFAULT_QUEUE_CLASS
        conversation_id = store.force_new(queue_class)
        return NewConversationResponse(conversation_id=conversation_id, queue_class=queue_class)

    @app.get('/api/conversations', response_model=list[ConversationSummaryResponse])
    def list_conversations(
        store: ConversationStore = Depends(get_store),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[ConversationSummaryResponse]:
        return [_to_summary_response(item) for item in store.list_conversations(limit=limit)]

    @app.get('/api/conversations/{conversation_id}', response_model=ConversationResponse)
    def get_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)) -> ConversationResponse:
        conversation = store.get_conversation(conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail='conversation not found')
        return _to_conversation_response(conversation)

    @app.get('/api/queue-status', response_model=QueueStatusResponse)
    def queue_status() -> QueueStatusResponse:
        return QueueStatusResponse(**app.state.container.executor.queue_status())

    return app
