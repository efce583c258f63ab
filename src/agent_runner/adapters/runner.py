from __future__ import annotations

import codecs
import os
from pathlib import Path
from queue import Empty, Queue
import re
import time
from threading import Lock, Timer

from agent_runner.adapters.base import ProcessResult, format_command, resolve_executable
from agent_runner.adapters.slots import ConcurrencySlots
from agent_runner.adapters.transport import Channel, PipeChannel, PtyChannel, TransportUnavailable
from agent_runner.domain.errors import (
    ProcessIdleTimeoutError,
    ProcessOverflowError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from agent_runner.observability import get_logger

_log = get_logger('agent_runner.adapters.runner')

_HOST_KEY_PROMPT_RE = re.compile(
    r'Are you sure you want to continue connecting \(yes/no[^)]*\)\?',
    re.IGNORECASE,
)
_HOST_KEY_TAIL_CHARS = 1024
_DRAIN_AFTER_KILL_SECONDS = 2.0
_POLL_INTERVAL_SECONDS = 0.1

TIMEOUT = 'timeout'
IDLE_TIMEOUT = 'idle_timeout'
OUTPUT_OVERFLOW = 'output_overflow'
SAFETY_TIMEOUT = 'safety_timeout'


class _InvocationContext:
    """Cancellation state for a single agent invocation.

    Every timer and limit check funnels into ``terminate``, which kills the
    process at most once, and ``release``, which returns the slot at most once.
    """

    def __init__(self, *, slots: ConcurrencySlots, label: str = ''):
        self._slots = slots
        self._label = label
        self._lock = Lock()
        self._terminated = False
        self._released = False
        self._timers: list[Timer] = []
        self.channel: Channel | None = None
        self.reason: str | None = None
        self.host_key_answered = False

    @property
    def terminated(self) -> bool:
        with self._lock:
            return self._terminated

    @property
    def released(self) -> bool:
        with self._lock:
            return self._released

    def start_timer(self, seconds: float, reason: str) -> Timer:
        timer = Timer(max(0.0, float(seconds)), self._on_timer, args=(reason,))
        timer.daemon = True
        with self._lock:
            self._timers.append(timer)
        timer.start()
        return timer

    def cancel_timers(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def attach(self, channel: Channel) -> None:
        with self._lock:
            self.channel = channel
            terminated = self._terminated
        if terminated:
            channel.terminate()

    def terminate(self, reason: str) -> bool:
        with self._lock:
            if self._terminated:
                return False
            self._terminated = True
            self.reason = reason
            channel = self.channel
        pid = channel.process.pid if channel is not None else None
        _log.warning('agent_terminated reason=%s pid=%s command=%s', reason, pid, self._label)
        if channel is not None:
            channel.terminate()
        return True

    def release(self) -> bool:
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._slots.release()
        return True

    def _on_timer(self, reason: str) -> None:
        if reason == SAFETY_TIMEOUT:
            _log.error('safety_timer_fired releasing slot command=%s', self._label)
            self.terminate(reason)
            self.release()
            return
        self.terminate(reason)


class ProcessExecutor:
    """Runs agent processes under a shared concurrency limit.

    One executor is built at startup and handed to every caller; its slot
    pool is the only process-wide accounting of running agents.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 5,
        slots: ConcurrencySlots | None = None,
        default_timeout_seconds: float = 300.0,
        idle_timeout_seconds: float = 600.0,
        safety_grace_seconds: float = 30.0,
        max_output_bytes: int = 10 * 1024 * 1024,
        prefer_pty: bool = True,
        env: dict[str, str] | None = None,
    ):
        self.slots = slots or ConcurrencySlots(max_concurrency)
        self.default_timeout_seconds = max(0.05, float(default_timeout_seconds))
        self.idle_timeout_seconds = max(0.05, float(idle_timeout_seconds))
        self.safety_grace_seconds = max(0.0, float(safety_grace_seconds))
        self.max_output_bytes = max(1, int(max_output_bytes))
        self.prefer_pty = bool(prefer_pty)
        self._env = dict(env) if env is not None else None

    def queue_status(self) -> dict[str, int]:
        return self.slots.stats().to_dict()

    def execute(
        self,
        command: list[str],
        working_dir: str | Path,
        timeout_seconds: float | None = None,
    ) -> ProcessResult:
        argv = resolve_executable([str(part) for part in command])
        if not argv:
            raise ValueError('command is required')
        cwd = Path(working_dir)
        timeout = max(0.05, float(timeout_seconds or self.default_timeout_seconds))
        label = format_command(argv)

        self.slots.acquire()
        started = time.monotonic()
        ctx = _InvocationContext(slots=self.slots, label=label)
        channel: Channel | None = None
        try:
            ctx.start_timer(timeout + self.safety_grace_seconds, SAFETY_TIMEOUT)
            channel = self._spawn(argv, cwd=cwd, started=started)
            ctx.attach(channel)
            ctx.start_timer(timeout, TIMEOUT)
            _log.info(
                'agent_started transport=%s pid=%s timeout=%.1f command=%s',
                channel.name,
                channel.process.pid,
                timeout,
                label,
            )
            return self._collect(channel, ctx, timeout=timeout, started=started)
        finally:
            ctx.cancel_timers()
            if channel is not None:
                channel.close()
            ctx.release()

    def _spawn(self, argv: list[str], *, cwd: Path, started: float) -> Channel:
        env = self._build_env()
        try:
            if self.prefer_pty:
                try:
                    return PtyChannel.spawn(argv, cwd=cwd, env=env)
                except TransportUnavailable as exc:
                    _log.warning('pty transport unavailable; falling back to pipes reason=%s', exc)
            return PipeChannel.spawn(argv, cwd=cwd, env=env)
        except OSError as exc:
            raise ProcessSpawnError(
                f'spawn_failed command={format_command(argv)} error={exc}',
                duration_seconds=(time.monotonic() - started),
            ) from exc

    def _collect(self, channel: Channel, ctx: _InvocationContext, *, timeout: float, started: float) -> ProcessResult:
        sink: Queue[tuple[str, bytes]] = Queue()
        channel.start(sink)
        decoders = {
            'stdout': codecs.getincrementaldecoder('utf-8')(errors='replace'),
            'stderr': codecs.getincrementaldecoder('utf-8')(errors='replace'),
        }
        chunks: dict[str, list[str]] = {'stdout': [], 'stderr': []}
        total_bytes = 0
        overflowed = False
        tail = ''
        auto_responses = 0
        last_output = time.monotonic()
        drain_deadline: float | None = None

        while True:
            try:
                stream_name, data = sink.get(timeout=_POLL_INTERVAL_SECONDS)
            except Empty:
                stream_name, data = '', None
            now = time.monotonic()

            if data is not None:
                last_output = now
                if not overflowed:
                    budget = self.max_output_bytes - total_bytes
                    total_bytes += len(data)
                    if total_bytes > self.max_output_bytes:
                        data = data[:max(0, budget)]
                        overflowed = True
                    text = decoders[stream_name].decode(data)
                    chunks[stream_name].append(text)
                    if overflowed:
                        ctx.terminate(OUTPUT_OVERFLOW)
                    elif channel.name == 'pty' and not ctx.host_key_answered:
                        tail = (tail + text)[-_HOST_KEY_TAIL_CHARS:]
                        if _HOST_KEY_PROMPT_RE.search(tail):
                            ctx.host_key_answered = True
                            if channel.write('yes\n'):
                                auto_responses += 1
                            _log.info('host_key_prompt_answered pid=%s', channel.process.pid)
            elif now - last_output >= self.idle_timeout_seconds:
                ctx.terminate(IDLE_TIMEOUT)

            if ctx.terminated and drain_deadline is None:
                drain_deadline = now + _DRAIN_AFTER_KILL_SECONDS

            finished = channel.process.poll() is not None
            drained = sink.empty() and not channel.reading
            if finished and drained:
                break
            if drain_deadline is not None and now >= drain_deadline and sink.empty():
                break

        for name, decoder in decoders.items():
            remainder = decoder.decode(b'', final=True)
            if remainder:
                chunks[name].append(remainder)
        stdout = ''.join(chunks['stdout'])
        stderr = ''.join(chunks['stderr'])
        if channel.name == 'pty':
            stdout = stdout.replace('\r\n', '\n')
        exit_code = channel.process.poll()
        duration = time.monotonic() - started

        reason = ctx.reason
        if reason is not None:
            detail = dict(stdout=stdout, stderr=stderr, exit_code=exit_code, duration_seconds=duration)
            if reason == OUTPUT_OVERFLOW:
                raise ProcessOverflowError(
                    f'agent output exceeded {self.max_output_bytes} bytes; process killed',
                    **detail,
                )
            if reason == IDLE_TIMEOUT:
                raise ProcessIdleTimeoutError(
                    f'agent produced no output for {self.idle_timeout_seconds:.1f}s; process killed',
                    **detail,
                )
            raise ProcessTimeoutError(f'agent timed out after {timeout:.1f}s; process killed', **detail)

        _log.info(
            'agent_finished pid=%s exit_code=%s duration=%.2f output_bytes=%d',
            channel.process.pid,
            exit_code,
            duration,
            total_bytes,
        )
        return ProcessResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            succeeded=(exit_code == 0),
            duration_seconds=duration,
            transport=channel.name,
            auto_responses=auto_responses,
        )

    def _build_env(self) -> dict[str, str]:
        if self._env is not None:
            return dict(self._env)
        return dict(os.environ)


__all__ = ['ProcessExecutor']
