from agent_runner.adapters.base import (
    ProcessResult,
    build_agent_argv,
    clean_output,
    format_command,
    resolve_executable,
    split_command,
    strip_ansi,
)
from agent_runner.adapters.runner import ProcessExecutor
from agent_runner.adapters.slots import ConcurrencySlots, SlotStats
from agent_runner.adapters.transport import PipeChannel, PtyChannel, TransportUnavailable

__all__ = [
    'ConcurrencySlots',
    'PipeChannel',
    'ProcessExecutor',
    'ProcessResult',
    'PtyChannel',
    'SlotStats',
    'TransportUnavailable',
    'build_agent_argv',
    'clean_output',
    'format_command',
    'resolve_executable',
    'split_command',
    'strip_ansi',
]
