from __future__ import annotations


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class WorkspaceError(Exception):
    def __init__(self, message: str, *, code: str = 'workspace_not_found', path: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.path = path


class ProcessFailure(Exception):
    """An agent invocation that did not produce a normal exit.

    Whatever output was captured before the failure is kept on the
    exception so callers can salvage partial progress.
    """

    reason = 'process_failed'

    def __init__(
        self,
        message: str,
        *,
        stdout: str = '',
        stderr: str = '',
        exit_code: int | None = None,
        duration_seconds: float = 0.0,
    ):
        super().__init__(message)
        self.message = message
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.duration_seconds = duration_seconds


class ProcessTimeoutError(ProcessFailure):
    reason = 'timeout'


class ProcessIdleTimeoutError(ProcessTimeoutError):
    reason = 'idle_timeout'


class ProcessOverflowError(ProcessFailure):
    reason = 'output_overflow'


class ProcessSpawnError(ProcessFailure):
    reason = 'spawn_failed'


class EvaluatorError(Exception):
    def __init__(self, message: str, *, raw_output: str = ''):
        super().__init__(message)
        self.message = message
        self.raw_output = raw_output


class ReviewParseError(EvaluatorError):
    pass


class CallbackDeliveryError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
