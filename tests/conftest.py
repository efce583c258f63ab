from __future__ import annotations

import fnmatch
from pathlib import Path
import sys

import pytest


def _prepend_repo_src_to_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    normalized = src_text.replace('\\', '/').lower()

    cleaned: list[str] = []
    seen: set[str] = set()

    def add(item: str) -> None:
        text = str(item or '').strip()
        if not text:
            return
        key = text.replace('\\', '/').lower()
        if key in seen:
            return
        seen.add(key)
        cleaned.append(text)

    add(src_text)
    for item in list(sys.path):
        text = str(item or '').strip()
        if not text:
            continue
        key = text.replace('\\', '/').lower()
        if key == normalized:
            continue
        add(text)
    sys.path[:] = cleaned


_prepend_repo_src_to_syspath()


class _FakePipeline:
    """Reads run immediately; writes queued after ``multi()`` apply on commit."""

    def __init__(self, owner: 'FakeRedis'):
        self._owner = owner
        self._queued: list[tuple[str, tuple]] = []
        self._buffering = False

    def get(self, key):
        return self._owner.get(key)

    def multi(self) -> None:
        self._buffering = True

    def setex(self, key, ttl, value):
        if not self._buffering:
            return self._owner.setex(key, ttl, value)
        self._queued.append(('setex', (key, ttl, value)))
        return self


class FakeRedis:
    """Dict-backed stand-in for the subset of redis.Redis the store uses."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.offline = False
        self.versions: dict[str, int] = {}
        self.before_commit: list = []

    def _check(self) -> None:
        if self.offline:
            import redis

            raise redis.exceptions.ConnectionError('redis offline')

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value):
        self._check()
        self.data[key] = value
        self.versions[key] = self.versions.get(key, 0) + 1
        self.ttls.pop(key, None)
        return True

    def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.versions[key] = self.versions.get(key, 0) + 1
        self.ttls[key] = int(ttl)
        return True

    def ttl(self, key):
        self._check()
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def transaction(self, func, *watches, value_from_callable=False):
        """Optimistic transaction: rerun ``func`` until no watched key changed."""
        while True:
            self._check()
            seen = {key: self.versions.get(key, 0) for key in watches}
            pipe = _FakePipeline(self)
            value = func(pipe)
            while self.before_commit:
                self.before_commit.pop(0)()
            if any(self.versions.get(key, 0) != version for key, version in seen.items()):
                continue
            results = [getattr(self, name)(*args) for name, args in pipe._queued]
            return value if value_from_callable else results

    def scan_iter(self, match=None):
        self._check()
        pattern = match or '*'
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, pattern):
                yield key


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
