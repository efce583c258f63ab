from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

DEFAULT_QUEUE_CLASS = 'default'


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Role(str, Enum):
    USER = 'user'
    AGENT = 'agent'
    REVIEWER = 'reviewer'


def normalize_role(value: str | Role) -> Role:
    text = str(getattr(value, 'value', value) or '').strip().lower()
    # Older records used "cursor" for agent output and "review-agent" for reviewer notes.
    aliases = {
        'assistant': Role.AGENT,
        'cursor': Role.AGENT,
        'review-agent': Role.REVIEWER,
    }
    if text in aliases:
        return aliases[text]
    return Role(text)


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, str]:
        return {
            'role': self.role.value,
            'content': self.content,
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> 'Message':
        return cls(
            role=normalize_role(raw.get('role') or 'user'),
            content=str(raw.get('content') or ''),
            created_at=str(raw.get('created_at') or utc_now_iso()),
        )


@dataclass
class Conversation:
    conversation_id: str
    queue_class: str | None
    messages: list[Message]
    created_at: str
    last_accessed_at: str
    summary: str | None = None
    summarized_at: str | None = None
    expires_at: str | None = None

    def context_messages(self) -> list[Message]:
        if not self.summary:
            return list(self.messages)
        head = Message(
            role=Role.AGENT,
            content=f'[Conversation Summary] {self.summary}',
            created_at=self.summarized_at or self.created_at,
        )
        return [head, *self.messages]

    def to_dict(self) -> dict:
        return {
            'conversation_id': self.conversation_id,
            'queue_class': self.queue_class,
            'messages': [item.to_dict() for item in self.messages],
            'created_at': self.created_at,
            'last_accessed_at': self.last_accessed_at,
            'summary': self.summary,
            'summarized_at': self.summarized_at,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> 'Conversation':
        created_at = str(raw.get('created_at') or utc_now_iso())
        return cls(
            conversation_id=str(raw.get('conversation_id') or ''),
            queue_class=(str(raw.get('queue_class') or '').strip() or None),
            messages=[Message.from_dict(item) for item in (raw.get('messages') or []) if isinstance(item, dict)],
            created_at=created_at,
            last_accessed_at=str(raw.get('last_accessed_at') or created_at),
            summary=(str(raw.get('summary') or '').strip() or None),
            summarized_at=(str(raw.get('summarized_at') or '').strip() or None),
        )


class VerdictKind(str, Enum):
    COMPLETE = 'complete'
    CONTINUE = 'continue'
    ABORT = 'abort'


@dataclass(frozen=True)
class ReviewVerdict:
    kind: VerdictKind
    reason: str | None = None

    @classmethod
    def completed(cls, reason: str | None = None) -> 'ReviewVerdict':
        return cls(kind=VerdictKind.COMPLETE, reason=reason)

    @classmethod
    def continuing(cls, reason: str | None = None) -> 'ReviewVerdict':
        return cls(kind=VerdictKind.CONTINUE, reason=reason)

    @classmethod
    def aborted(cls, reason: str | None = None) -> 'ReviewVerdict':
        return cls(kind=VerdictKind.ABORT, reason=reason)

    @property
    def complete(self) -> bool:
        return self.kind == VerdictKind.COMPLETE

    @property
    def abort(self) -> bool:
        return self.kind == VerdictKind.ABORT

    def to_dict(self) -> dict:
        return {'complete': self.complete, 'abort': self.abort, 'reason': self.reason}


@dataclass(frozen=True)
class ExecutionRequest:
    request_id: str
    prompt: str
    workspace_ref: str = ''
    queue_class: str = DEFAULT_QUEUE_CLASS
    conversation_ref: str | None = None
    max_iterations: int = 25
    callback_url: str | None = None


@dataclass(frozen=True)
class ExecutionResult:
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

    def to_payload(self) -> dict:
        return asdict(self)
