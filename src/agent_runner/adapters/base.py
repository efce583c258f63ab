from __future__ import annotations

from dataclasses import dataclass
import re
import shlex
import shutil

_ANSI_RE = re.compile(r'\x1b\[[0-9;?]*[a-zA-Z]')


@dataclass(frozen=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int | None
    succeeded: bool
    duration_seconds: float
    transport: str = 'pipe'
    auto_responses: int = 0


def split_command(value: str | None) -> list[str]:
    text = str(value or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in shlex.split(text) if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


def build_agent_argv(
    *,
    command: str,
    prompt: str,
    model: str | None = 'auto',
    resume: bool = False,
    approve_mcps: bool = True,
) -> list[str]:
    argv = split_command(command)
    if not argv:
        raise ValueError('agent command is empty')
    model_text = str(model or '').strip()
    if model_text:
        argv.extend(['--model', model_text])
    argv.extend(['--print', '--force'])
    if approve_mcps:
        argv.append('--approve-mcps')
    if resume:
        argv.append('--resume')
    argv.append(str(prompt or ''))
    return argv


def strip_ansi(text: str | None) -> str:
    return _ANSI_RE.sub('', str(text or ''))


def clean_output(text: str | None) -> str:
    return strip_ansi(text).replace('\r\n', '\n').replace('\r', '\n').strip()


def resolve_executable(argv: list[str]) -> list[str]:
    if not argv:
        return argv
    first = str(argv[0]).strip()
    if not first:
        return argv
    resolved = shutil.which(first)
    if not resolved:
        return argv
    patched = list(argv)
    patched[0] = resolved
    return patched


def format_command(argv: list[str], *, max_arg_chars: int = 80) -> str:
    parts = []
    for value in argv:
        text = str(value)
        if len(text) > max_arg_chars:
            text = text[:max_arg_chars] + f'...[{len(text)} chars]'
        parts.append(text)
    return ' '.join(parts)


__all__ = [
    'ProcessResult',
    'build_agent_argv',
    'clean_output',
    'format_command',
    'resolve_executable',
    'split_command',
    'strip_ansi',
]
