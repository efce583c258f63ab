from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import re
from typing import Callable
import uuid

import redis

from agent_runner.domain.models import DEFAULT_QUEUE_CLASS, Conversation, Message, utc_now_iso
from agent_runner.observability import get_logger

_log = get_logger('agent_runner.conversations')

_CONTEXT_WINDOW_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r'context.*window.*too.*large',
        r'context.*length.*exceeded',
        r'token.*limit.*exceeded',
        r'maximum.*context.*length',
        r'context.*too.*long',
    )
)

Summarizer = Callable[[list[Message]], str]


def is_context_window_error(text: str | None) -> bool:
    body = str(text or '')
    if not body:
        return False
    return any(pattern.search(body) for pattern in _CONTEXT_WINDOW_PATTERNS)


def _normalize_queue_class(queue_class: str | None) -> str:
    return str(queue_class or '').strip().lower() or DEFAULT_QUEUE_CLASS


class ConversationStore:
    """Conversation history kept in redis with a sliding TTL.

    Every write resets the TTL. Each queue class has a pointer to its most
    recently created conversation, used when a caller does not name one.
    Concurrent writers to the same conversation are not serialized, except
    that the summary swap retries if the record changes underneath it.
    """

    def __init__(self, client, *, ttl_seconds: int = 3600, key_prefix: str = 'agent'):
        self._client = client
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.key_prefix = str(key_prefix or '').strip().strip(':') or 'agent'

    @classmethod
    def from_url(cls, url: str, **kwargs) -> 'ConversationStore':
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=5,
        )
        return cls(client, **kwargs)

    def conversation_key(self, conversation_id: str) -> str:
        return f'{self.key_prefix}:conversation:{conversation_id}'

    def pointer_key(self, queue_class: str | None) -> str:
        return f'{self.key_prefix}:queue:{_normalize_queue_class(queue_class)}:last_conversation'

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.exceptions.RedisError:
            return False

    def get_or_create(self, conversation_ref: str | None = None, queue_class: str | None = None) -> str:
        queue = _normalize_queue_class(queue_class)
        ref = str(conversation_ref or '').strip()
        try:
            if ref:
                conversation = self._load(ref)
                if conversation is None:
                    self._save(self._new_conversation(ref, queue_class=None))
                else:
                    conversation.last_accessed_at = utc_now_iso()
                    self._save(conversation)
                return ref

            last_id = self._client.get(self.pointer_key(queue))
            if last_id:
                conversation = self._load(last_id)
                if conversation is None:
                    conversation = self._new_conversation(last_id, queue_class=queue)
                conversation.last_accessed_at = utc_now_iso()
                self._save(conversation)
                return str(last_id)

            return self._create_with_pointer(queue)
        except redis.exceptions.RedisError as exc:
            fallback = ref or str(uuid.uuid4())
            _log.warning(
                'conversation store unavailable; using ephemeral id conversation_id=%s queue=%s error=%s',
                fallback,
                queue,
                exc,
            )
            return fallback

    def force_new(self, queue_class: str | None = None) -> str:
        queue = _normalize_queue_class(queue_class)
        try:
            conversation_id = self._create_with_pointer(queue)
        except redis.exceptions.RedisError as exc:
            conversation_id = str(uuid.uuid4())
            _log.warning(
                'conversation store unavailable; new conversation not persisted conversation_id=%s error=%s',
                conversation_id,
                exc,
            )
            return conversation_id
        _log.info('conversation_forced_new conversation_id=%s queue=%s', conversation_id, queue)
        return conversation_id

    def append(self, conversation_id: str, message: Message) -> bool:
        try:
            conversation = self._load(conversation_id)
            if conversation is None:
                conversation = self._new_conversation(conversation_id, queue_class=None)
            conversation.messages.append(message)
            conversation.last_accessed_at = utc_now_iso()
            self._save(conversation)
        except redis.exceptions.RedisError as exc:
            _log.warning(
                'conversation append failed conversation_id=%s role=%s error=%s',
                conversation_id,
                message.role.value,
                exc,
            )
            return False
        return True

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        try:
            conversation = self._load(conversation_id)
            if conversation is None:
                return None
            remaining = self._client.ttl(self.conversation_key(conversation_id))
        except redis.exceptions.RedisError as exc:
            _log.warning('conversation read failed conversation_id=%s error=%s', conversation_id, exc)
            return None
        if isinstance(remaining, int) and remaining >= 0:
            expires = datetime.now(timezone.utc) + timedelta(seconds=remaining)
            conversation.expires_at = expires.isoformat()
        return conversation

    def get_context(self, conversation_id: str) -> list[Message]:
        try:
            conversation = self._load(conversation_id)
        except redis.exceptions.RedisError as exc:
            _log.warning('conversation context unavailable conversation_id=%s error=%s', conversation_id, exc)
            return []
        if conversation is None:
            return []
        return conversation.context_messages()

    def list_conversations(self, *, limit: int = 100) -> list[Conversation]:
        rows: list[Conversation] = []
        try:
            for key in self._client.scan_iter(match=f'{self.key_prefix}:conversation:*'):
                conversation = self._decode(self._client.get(key), key=str(key))
                if conversation is not None:
                    rows.append(conversation)
        except redis.exceptions.RedisError as exc:
            _log.warning('conversation listing failed error=%s', exc)
            return []
        rows.sort(key=lambda item: item.last_accessed_at, reverse=True)
        return rows[:max(1, int(limit))]

    def summarize(self, conversation_id: str, summarizer: Summarizer) -> bool:
        """Replace the history with a condensed summary.

        The summary covers a snapshot taken before the summarizer runs;
        messages appended while it runs are kept after the summary. On any
        failure the stored history is left untouched.
        """
        try:
            snapshot = self._load(conversation_id)
        except redis.exceptions.RedisError as exc:
            _log.warning('summarization skipped; store unavailable conversation_id=%s error=%s', conversation_id, exc)
            return False
        if snapshot is None or not snapshot.messages:
            return False

        try:
            summary = str(summarizer(snapshot.context_messages()) or '').strip()
        except Exception:
            _log.warning('summarization failed; history kept conversation_id=%s', conversation_id, exc_info=True)
            return False
        if not summary:
            _log.warning('summarization returned empty text; history kept conversation_id=%s', conversation_id)
            return False

        key = self.conversation_key(conversation_id)

        def swap(pipe) -> int:
            current = self._decode(pipe.get(key), key=key) or Conversation.from_dict(snapshot.to_dict())
            tail = current.messages[len(snapshot.messages):]
            current.summary = summary
            current.summarized_at = utc_now_iso()
            current.messages = list(tail)
            current.last_accessed_at = current.summarized_at
            pipe.multi()
            pipe.setex(key, self.ttl_seconds, json.dumps(current.to_dict()))
            return len(tail)

        try:
            kept = self._client.transaction(swap, key, value_from_callable=True)
        except redis.exceptions.RedisError as exc:
            _log.warning('summarization not stored conversation_id=%s error=%s', conversation_id, exc)
            return False
        _log.info(
            'conversation_summarized conversation_id=%s replaced=%d kept=%d',
            conversation_id,
            len(snapshot.messages),
            kept,
        )
        return True

    def _create_with_pointer(self, queue: str) -> str:
        conversation_id = str(uuid.uuid4())
        self._save(self._new_conversation(conversation_id, queue_class=queue))
        self._client.set(self.pointer_key(queue), conversation_id)
        _log.info('conversation_created conversation_id=%s queue=%s', conversation_id, queue)
        return conversation_id

    @staticmethod
    def _new_conversation(conversation_id: str, *, queue_class: str | None) -> Conversation:
        now = utc_now_iso()
        return Conversation(
            conversation_id=str(conversation_id),
            queue_class=queue_class,
            messages=[],
            created_at=now,
            last_accessed_at=now,
        )

    def _load(self, conversation_id: str) -> Conversation | None:
        key = self.conversation_key(conversation_id)
        return self._decode(self._client.get(key), key=key)

    def _save(self, conversation: Conversation) -> None:
        self._client.setex(
            self.conversation_key(conversation.conversation_id),
            self.ttl_seconds,
            json.dumps(conversation.to_dict()),
        )

    @staticmethod
    def _decode(raw, *, key: str) -> Conversation | None:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8', errors='replace')
        try:
            data = json.loads(raw)
        except ValueError:
            _log.warning('conversation record is not valid json key=%s', key)
            return None
        if not isinstance(data, dict):
            return None
        try:
            return Conversation.from_dict(data)
        except ValueError as exc:
            _log.warning('conversation record is corrupt key=%s error=%s', key, exc)
            return None


__all__ = ['ConversationStore', 'is_context_window_error']
