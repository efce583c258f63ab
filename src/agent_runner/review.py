from __future__ import annotations

import json
from pathlib import Path
import re

from agent_runner.adapters.base import build_agent_argv, clean_output
from agent_runner.domain.errors import EvaluatorError, ProcessFailure, ReviewParseError
from agent_runner.domain.models import ReviewVerdict, VerdictKind
from agent_runner.observability import get_logger
from agent_runner.prompting import PromptBuilder, extract_definition_of_done

_log = get_logger('agent_runner.review')

_FENCE_RE = re.compile(r'```(?:json)?\s*(\{.*?\})\s*```', re.IGNORECASE | re.DOTALL)
_VERDICT_ALIASES = {
    'complete': VerdictKind.COMPLETE,
    'completed': VerdictKind.COMPLETE,
    'done': VerdictKind.COMPLETE,
    'pass': VerdictKind.COMPLETE,
    'continue': VerdictKind.CONTINUE,
    'incomplete': VerdictKind.CONTINUE,
    'retry': VerdictKind.CONTINUE,
    'abort': VerdictKind.ABORT,
    'break': VerdictKind.ABORT,
    'stop': VerdictKind.ABORT,
}
_TRUE_TEXT = {'true', 'yes', '1'}
_FALSE_TEXT = {'false', 'no', '0'}
_UNSET = object()


def _extract_braced_object(text: str) -> str | None:
    start = text.find('{')
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                return text[start:idx + 1]
    return None


def _iter_json_candidates(output: str) -> list[str]:
    text = str(output or '').strip()
    if not text:
        return []
    candidates: list[str] = [text]
    for match in _FENCE_RE.finditer(text):
        payload = str(match.group(1) or '').strip()
        if payload:
            candidates.append(payload)
    for line in text.splitlines():
        line_text = str(line or '').strip()
        if line_text.startswith('{') and line_text.endswith('}'):
            candidates.append(line_text)
    braced = _extract_braced_object(text)
    if braced:
        candidates.append(braced)
    out: list[str] = []
    seen: set[str] = set()
    for item in candidates:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def _coerce_flag(value: object) -> object:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_TEXT:
        return True
    if text in _FALSE_TEXT:
        return False
    return _UNSET


def _verdict_from_payload(payload: dict) -> ReviewVerdict | None:
    reason = str(payload.get('justification') or payload.get('reason') or '').strip() or None

    if 'verdict' in payload:
        kind = _VERDICT_ALIASES.get(str(payload.get('verdict') or '').strip().lower())
        if kind is not None:
            return ReviewVerdict(kind=kind, reason=reason)

    if 'code_complete' not in payload and 'break_iteration' not in payload:
        return None
    abort = _coerce_flag(payload.get('break_iteration'))
    complete = _coerce_flag(payload.get('code_complete'))
    if abort is _UNSET or complete is _UNSET:
        return None
    # Permission problems end the loop even when the reviewer also claims completion.
    if abort:
        return ReviewVerdict.aborted(reason or 'reviewer requested to break iteration')
    if complete:
        return ReviewVerdict.completed(reason)
    return ReviewVerdict.continuing(reason)


def parse_review_output(output: str) -> ReviewVerdict:
    text = clean_output(output)
    for candidate in _iter_json_candidates(text):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        verdict = _verdict_from_payload(parsed)
        if verdict is not None:
            return verdict
    raise ReviewParseError('review output did not contain a recognizable verdict', raw_output=text)


class ReviewEvaluator:
    """Asks the agent itself to judge the previous iteration's output."""

    def __init__(
        self,
        *,
        executor,
        agent_command: str,
        agent_model: str | None = 'auto',
        timeout_seconds: float = 900.0,
        prompts: PromptBuilder | None = None,
    ):
        self.executor = executor
        self.agent_command = agent_command
        self.agent_model = agent_model
        self.timeout_seconds = timeout_seconds
        self.prompts = prompts or PromptBuilder()

    def evaluate(self, output: str, workspace: Path, *, task_prompt: str | None = None) -> ReviewVerdict:
        definition = self.definition_of_done(workspace, task_prompt=task_prompt)
        prompt = self.prompts.review_prompt(output=output, definition_of_done=definition)
        argv = build_agent_argv(
            command=self.agent_command,
            prompt=prompt,
            model=self.agent_model,
            approve_mcps=False,
        )
        try:
            result = self.executor.execute(argv, workspace, self.timeout_seconds)
        except ProcessFailure as exc:
            raw = clean_output(exc.stdout) or clean_output(exc.stderr)
            raise EvaluatorError(f'review_process_failed reason={exc.reason}', raw_output=raw) from exc

        raw = clean_output(result.stdout)
        if not raw:
            raw = clean_output(result.stderr)
            raise EvaluatorError(f'review_output_empty exit_code={result.exit_code}', raw_output=raw)
        verdict = parse_review_output(raw)
        _log.info('review_verdict kind=%s reason=%s', verdict.kind.value, verdict.reason or '')
        return verdict

    @staticmethod
    def definition_of_done(workspace: Path, *, task_prompt: str | None = None) -> str | None:
        rules_path = Path(workspace) / '.cursorrules'
        if rules_path.is_file():
            try:
                found = extract_definition_of_done(rules_path.read_text(encoding='utf-8'))
            except (OSError, UnicodeDecodeError):
                _log.warning('failed to read definition of done path=%s', rules_path, exc_info=True)
                found = None
            if found:
                return found
        return extract_definition_of_done(task_prompt)


__all__ = ['ReviewEvaluator', 'parse_review_output']
