from __future__ import annotations

from pathlib import Path
import re
from string import Template

from agent_runner.domain.models import Message, Role

TEMPLATE_DIR = Path(__file__).resolve().parent / 'prompts'

_DEFINITION_OF_DONE_RE = re.compile(
    r'definition\s+of\s+done[:-]?\s*(.+?)(?:\n\n|\n##|$)',
    re.IGNORECASE | re.DOTALL,
)
_CONTEXT_LABELS = {
    Role.USER: 'user',
    Role.AGENT: 'agent',
}


def load_prompt_template(
    *,
    template_name: str,
    template_dir: Path,
    cache: dict[str, Template],
) -> Template:
    key = str(template_name or '').strip()
    if not key:
        raise ValueError('template_name is required')
    cached = cache.get(key)
    if cached is not None:
        return cached
    safe_name = Path(key).name
    if safe_name != key:
        raise ValueError(f'invalid prompt template name: {template_name}')
    template_path = (template_dir / safe_name).resolve(strict=False)
    base_dir = template_dir.resolve(strict=False)
    try:
        template_path.relative_to(base_dir)
    except ValueError as exc:
        raise ValueError(f'invalid prompt template path: {template_name}') from exc
    text = template_path.read_text(encoding='utf-8')
    template = Template(text)
    cache[key] = template
    return template


def render_prompt_template(
    *,
    template_name: str,
    template_dir: Path,
    cache: dict[str, Template],
    fields: dict[str, object],
) -> str:
    template = load_prompt_template(
        template_name=template_name,
        template_dir=template_dir,
        cache=cache,
    )
    normalized = {str(k): ('' if v is None else str(v)) for k, v in fields.items()}
    return template.safe_substitute(normalized)


def append_instructions(prompt: str, instructions: str) -> str:
    """Append the instruction block unless the prompt already ends with it."""
    text = str(prompt or '').rstrip()
    block = str(instructions or '').strip()
    if not block or text.endswith(block):
        return text
    return f'{text}\n\n{block}'


def build_context_string(messages: list[Message]) -> str:
    lines = []
    for message in messages:
        label = _CONTEXT_LABELS.get(message.role)
        if label is None:
            continue
        lines.append(f'{label}: {message.content}')
    return '\n\n'.join(lines)


def extract_definition_of_done(text: str | None) -> str | None:
    match = _DEFINITION_OF_DONE_RE.search(str(text or ''))
    if not match:
        return None
    return match.group(1).strip() or None


class PromptBuilder:
    def __init__(self, *, template_dir: Path | None = None):
        self.template_dir = template_dir or TEMPLATE_DIR
        self._cache: dict[str, Template] = {}

    def _render(self, name: str, **fields: object) -> str:
        return render_prompt_template(
            template_name=name,
            template_dir=self.template_dir,
            cache=self._cache,
            fields=fields,
        ).strip()

    def instructions(self) -> str:
        return self._render('operating_instructions.md')

    def agent_prompt(self, *, prompt: str, context: str = '') -> str:
        body = str(prompt or '').strip()
        context_text = str(context or '').strip()
        if context_text:
            body = f'=== CONVERSATION CONTEXT ===\n{context_text}\n\n=== CURRENT REQUEST ===\n{body}'
        return append_instructions(body, self.instructions())

    def resume_prompt_text(self) -> str:
        return self._render('resume.md')

    def resume_prompt(self) -> str:
        return append_instructions(self.resume_prompt_text(), self.instructions())

    def review_prompt(self, *, output: str, definition_of_done: str | None = None) -> str:
        if definition_of_done:
            definition_block = f'CUSTOM DEFINITION OF DONE:\n{definition_of_done}\n'
        else:
            definition_block = self._render('review_default_done.md') + '\n'
        return self._render('review.md', definition_block=definition_block, output=output)

    def summarize_prompt(self, *, history: str) -> str:
        return self._render('summarize.md', history=history)
