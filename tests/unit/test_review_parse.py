from __future__ import annotations

from pathlib import Path

import pytest

from agent_runner.adapters.base import ProcessResult
from agent_runner.domain.errors import EvaluatorError, ProcessTimeoutError, ReviewParseError
from agent_runner.domain.models import VerdictKind
from agent_runner.review import ReviewEvaluator, parse_review_output


class _FakeExecutor:
    def __init__(self, result: ProcessResult | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls: list[dict] = []

    def execute(self, command, working_dir, timeout_seconds=None):
        self.calls.append({'argv': list(command), 'cwd': working_dir, 'timeout': timeout_seconds})
        if self.error is not None:
            raise self.error
        return self.result


def _result(stdout: str, *, stderr: str = '', exit_code: int = 0) -> ProcessResult:
    return ProcessResult(
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        succeeded=(exit_code == 0),
        duration_seconds=0.1,
    )


def test_parse_flags_dialect_complete():
    verdict = parse_review_output('{"code_complete": true, "break_iteration": false, "justification": "pushed"}')
    assert verdict.kind == VerdictKind.COMPLETE
    assert verdict.complete is True
    assert verdict.abort is False
    assert verdict.reason == 'pushed'


def test_parse_flags_dialect_continue():
    verdict = parse_review_output('{"code_complete": false, "break_iteration": false, "justification": "no PR yet"}')
    assert verdict.kind == VerdictKind.CONTINUE
    assert verdict.reason == 'no PR yet'


def test_parse_abort_wins_over_complete():
    verdict = parse_review_output(
        '{"code_complete": true, "break_iteration": true, "justification": "permission denied on git push"}'
    )
    assert verdict.abort is True
    assert verdict.complete is False
    assert verdict.reason == 'permission denied on git push'


def test_parse_abort_without_reason_gets_default_reason():
    verdict = parse_review_output('{"code_complete": false, "break_iteration": true}')
    assert verdict.abort is True
    assert verdict.reason


@pytest.mark.parametrize(
    ('raw', 'expected'),
    [
        ('{"verdict": "complete", "reason": "all good"}', VerdictKind.COMPLETE),
        ('{"verdict": "DONE"}', VerdictKind.COMPLETE),
        ('{"verdict": "continue", "reason": "tests failing"}', VerdictKind.CONTINUE),
        ('{"verdict": "abort", "reason": "no access"}', VerdictKind.ABORT),
    ],
)
def test_parse_verdict_dialect(raw: str, expected: VerdictKind):
    assert parse_review_output(raw).kind == expected


def test_parse_string_flags_are_coerced():
    verdict = parse_review_output('{"code_complete": "yes", "break_iteration": "no"}')
    assert verdict.complete is True


def test_parse_json_wrapped_in_prose_and_ansi():
    raw = (
        '\x1b[32mThinking about the result...\x1b[0m\n'
        'Here is my verdict: {"code_complete": false, "break_iteration": false, '
        '"justification": "README not updated"} hope that helps'
    )
    verdict = parse_review_output(raw)
    assert verdict.kind == VerdictKind.CONTINUE
    assert verdict.reason == 'README not updated'


def test_parse_fenced_json_block():
    raw = 'Review:\n```json\n{"code_complete": true, "break_iteration": false, "justification": "done"}\n```\n'
    assert parse_review_output(raw).complete is True


def test_parse_braces_inside_strings_do_not_break_extraction():
    raw = (
        'Result: {"code_complete": false, "break_iteration": false, '
        '"justification": "missing } in config {x"} trailing words'
    )
    verdict = parse_review_output(raw)
    assert verdict.reason == 'missing } in config {x'


def test_parse_ambiguous_flag_is_rejected():
    with pytest.raises(ReviewParseError) as excinfo:
        parse_review_output('{"code_complete": "maybe", "break_iteration": false}')
    assert 'maybe' in excinfo.value.raw_output


@pytest.mark.parametrize('raw', ['', 'the task looks fine to me', '[1, 2, 3]', '{"unrelated": true}'])
def test_parse_without_verdict_raises(raw: str):
    with pytest.raises(ReviewParseError):
        parse_review_output(raw)


def test_evaluator_runs_agent_without_mcp_approval(tmp_path: Path):
    executor = _FakeExecutor(result=_result('{"code_complete": true, "break_iteration": false}'))
    evaluator = ReviewEvaluator(executor=executor, agent_command='cursor-agent', timeout_seconds=42)

    verdict = evaluator.evaluate('I pushed the branch', tmp_path)

    assert verdict.complete is True
    call = executor.calls[0]
    assert call['argv'][0] == 'cursor-agent'
    assert '--approve-mcps' not in call['argv']
    assert '--resume' not in call['argv']
    assert call['cwd'] == tmp_path
    assert call['timeout'] == 42
    prompt = call['argv'][-1]
    assert 'I pushed the branch' in prompt
    assert 'CUSTOM DEFINITION OF DONE' not in prompt


def test_evaluator_prefers_cursorrules_definition_of_done(tmp_path: Path):
    (tmp_path / '.cursorrules').write_text(
        '# Rules\n\nDefinition of done: tests pass and a PR is opened\n\n## Style\nuse tabs\n',
        encoding='utf-8',
    )
    executor = _FakeExecutor(result=_result('{"code_complete": false, "break_iteration": false}'))
    evaluator = ReviewEvaluator(executor=executor, agent_command='cursor-agent')

    evaluator.evaluate('work in progress', tmp_path, task_prompt='Definition of done: ignored')

    prompt = executor.calls[0]['argv'][-1]
    assert 'CUSTOM DEFINITION OF DONE:\ntests pass and a PR is opened' in prompt
    assert 'ignored' not in prompt


def test_definition_of_done_falls_back_to_task_prompt(tmp_path: Path):
    found = ReviewEvaluator.definition_of_done(tmp_path, task_prompt='Fix the bug.\nDefinition of done: build is green')
    assert found == 'build is green'
    assert ReviewEvaluator.definition_of_done(tmp_path, task_prompt='just do it') is None


def test_evaluator_wraps_process_failure(tmp_path: Path):
    executor = _FakeExecutor(error=ProcessTimeoutError('timed out', stdout='{"code_comp'))
    evaluator = ReviewEvaluator(executor=executor, agent_command='cursor-agent')

    with pytest.raises(EvaluatorError) as excinfo:
        evaluator.evaluate('output', tmp_path)
    assert 'timeout' in str(excinfo.value)
    assert excinfo.value.raw_output == '{"code_comp'
    assert not isinstance(excinfo.value, ReviewParseError)


def test_evaluator_rejects_empty_output(tmp_path: Path):
    executor = _FakeExecutor(result=_result('   ', stderr='auth failed', exit_code=1))
    evaluator = ReviewEvaluator(executor=executor, agent_command='cursor-agent')

    with pytest.raises(EvaluatorError) as excinfo:
        evaluator.evaluate('output', tmp_path)
    assert excinfo.value.raw_output == 'auth failed'


def test_evaluator_surfaces_unparseable_output(tmp_path: Path):
    executor = _FakeExecutor(result=_result('Looks good to me!'))
    evaluator = ReviewEvaluator(executor=executor, agent_command='cursor-agent')

    with pytest.raises(ReviewParseError):
        evaluator.evaluate('output', tmp_path)
