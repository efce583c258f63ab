from __future__ import annotations

import os
from pathlib import Path
from queue import Queue
import select
import signal
import subprocess
from threading import Lock, Thread

from agent_runner.observability import get_logger

_log = get_logger('agent_runner.adapters.transport')

_READ_CHUNK_BYTES = 8192
_TERMINATE_GRACE_SECONDS = 1.0
_PTY_ROWS = 30
_PTY_COLS = 80
_SIGKILL = getattr(signal, 'SIGKILL', signal.SIGTERM)


class TransportUnavailable(RuntimeError):
    pass


def _signal_group(process: subprocess.Popen, sig: int) -> None:
    killpg = getattr(os, 'killpg', None)
    if killpg is not None:
        try:
            killpg(process.pid, sig)
            return
        except ProcessLookupError:
            return
        except OSError:
            _log.debug('killpg failed pid=%s signal=%s', process.pid, sig, exc_info=True)
    try:
        if sig == _SIGKILL:
            process.kill()
        else:
            process.terminate()
    except OSError:
        pass


class Channel:
    """A running agent process plus the threads draining its output."""

    name = 'channel'

    def __init__(self, process: subprocess.Popen):
        self.process = process
        self._readers: list[Thread] = []

    @property
    def reading(self) -> bool:
        return any(worker.is_alive() for worker in self._readers)

    def start(self, sink: Queue) -> None:
        raise NotImplementedError

    def write(self, data: str) -> bool:
        return False

    def terminate(self) -> None:
        """SIGTERM the process group, escalating to SIGKILL after a grace period."""
        if self.process.poll() is not None:
            # The leader is gone but grandchildren may still hold the output fds.
            _signal_group(self.process, _SIGKILL)
            return
        _signal_group(self.process, signal.SIGTERM)
        try:
            self.process.wait(timeout=_TERMINATE_GRACE_SECONDS)
            return
        except subprocess.TimeoutExpired:
            pass
        _signal_group(self.process, _SIGKILL)
        try:
            self.process.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            _log.warning('process did not exit after SIGKILL pid=%s', self.process.pid)

    def close(self) -> None:
        for worker in self._readers:
            worker.join(timeout=0.2)


class PipeChannel(Channel):
    name = 'pipe'

    @classmethod
    def spawn(cls, argv: list[str], *, cwd: Path, env: dict[str, str]) -> 'PipeChannel':
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd),
            env=env,
            bufsize=0,
            start_new_session=(os.name == 'posix'),
        )
        return cls(process)

    def start(self, sink: Queue) -> None:
        def _pump(pipe, stream_name: str) -> None:
            if pipe is None:
                return
            try:
                while True:
                    chunk = pipe.read(_READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    sink.put((stream_name, chunk))
            except (OSError, ValueError):
                pass
            finally:
                try:
                    pipe.close()
                except OSError:
                    pass

        self._readers = [
            Thread(target=_pump, args=(self.process.stdout, 'stdout'), daemon=True),
            Thread(target=_pump, args=(self.process.stderr, 'stderr'), daemon=True),
        ]
        for worker in self._readers:
            worker.start()


class PtyChannel(Channel):
    """Runs the agent attached to a pseudo-terminal.

    stdout and stderr share the terminal, so all output arrives on the
    stdout stream.
    """

    name = 'pty'

    def __init__(self, process: subprocess.Popen, master_fd: int):
        super().__init__(process)
        self.master_fd = master_fd
        self._fd_lock = Lock()
        self._closed = False

    @classmethod
    def spawn(cls, argv: list[str], *, cwd: Path, env: dict[str, str]) -> 'PtyChannel':
        try:
            import pty

            master_fd, slave_fd = pty.openpty()
        except (ImportError, OSError) as exc:
            raise TransportUnavailable(f'pty unavailable: {exc}') from exc

        _set_winsize(slave_fd, rows=_PTY_ROWS, cols=_PTY_COLS)
        terminal_env = dict(env)
        terminal_env['TERM'] = 'xterm-color'
        try:
            process = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=terminal_env,
                start_new_session=True,
                close_fds=True,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        return cls(process, master_fd)

    def start(self, sink: Queue) -> None:
        worker = Thread(target=self._read_loop, args=(sink,), daemon=True)
        self._readers = [worker]
        worker.start()

    def _read_loop(self, sink: Queue) -> None:
        while True:
            try:
                readable, _, _ = select.select([self.master_fd], [], [], 0.1)
            except (OSError, ValueError):
                break
            if readable:
                try:
                    data = os.read(self.master_fd, _READ_CHUNK_BYTES)
                except OSError:
                    # EIO once every holder of the slave side has gone away.
                    data = b''
                if not data:
                    break
                sink.put(('stdout', data))
                continue
            if self.process.poll() is not None:
                break

    def write(self, data: str) -> bool:
        with self._fd_lock:
            if self._closed:
                return False
            try:
                os.write(self.master_fd, data.encode('utf-8'))
            except OSError:
                _log.warning('pty write failed pid=%s', self.process.pid, exc_info=True)
                return False
        return True

    def close(self) -> None:
        super().close()
        with self._fd_lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.close(self.master_fd)
            except OSError:
                pass


def _set_winsize(fd: int, *, rows: int, cols: int) -> None:
    try:
        import fcntl
        import struct
        import termios

        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack('HHHH', rows, cols, 0, 0))
    except (ImportError, OSError):
        _log.debug('pty window size not applied fd=%s', fd, exc_info=True)


__all__ = ['Channel', 'PipeChannel', 'PtyChannel', 'TransportUnavailable']
