from agent_runner.domain.errors import (
    CallbackDeliveryError,
    EvaluatorError,
    InputValidationError,
    ProcessFailure,
    ProcessIdleTimeoutError,
    ProcessOverflowError,
    ProcessSpawnError,
    ProcessTimeoutError,
    ReviewParseError,
    WorkspaceError,
)
from agent_runner.domain.models import (
    DEFAULT_QUEUE_CLASS,
    Conversation,
    ExecutionRequest,
    ExecutionResult,
    Message,
    ReviewVerdict,
    Role,
    VerdictKind,
)

__all__ = [
    'CallbackDeliveryError',
    'Conversation',
    'DEFAULT_QUEUE_CLASS',
    'EvaluatorError',
    'ExecutionRequest',
    'ExecutionResult',
    'InputValidationError',
    'Message',
    'ProcessFailure',
    'ProcessIdleTimeoutError',
    'ProcessOverflowError',
    'ProcessSpawnError',
    'ProcessTimeoutError',
    'ReviewParseError',
    'ReviewVerdict',
    'Role',
    'VerdictKind',
    'WorkspaceError',
]
