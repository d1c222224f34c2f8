"""Worker process spawning and output relay.

The supervisor only knows how to run a process. Whether it should keep
running (timeouts, iteration budgets) is the orchestrator's call.
"""

from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import struct
import termios
from collections.abc import Callable

from kanban_orchestrator.core.errors import SpawnFailure

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
TERMINAL_ROWS = 40
TERMINAL_COLS = 120
TERMINAL_ENV = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
    "FORCE_COLOR": "3",
    "COLUMNS": str(TERMINAL_COLS),
    "LINES": str(TERMINAL_ROWS),
}

ChunkCallback = Callable[[str], None]


class ProcessHandle:
    """A spawned worker process and its standard streams.

    In pseudo-terminal mode stdout and stderr are merged into ``stdout`` and
    ``stderr`` is None.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        stdout: asyncio.StreamReader,
        stderr: asyncio.StreamReader | None = None,
        master_fd: int | None = None,
        transport: asyncio.ReadTransport | None = None,
    ):
        self.process = process
        self.stdout = stdout
        self.stderr = stderr
        self._master_fd = master_fd
        self._transport = transport

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def uses_pty(self) -> bool:
        return self._master_fd is not None

    async def write(self, data: bytes | str):
        """Write raw input to the process."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self._master_fd is not None:
            os.write(self._master_fd, data)
            return
        stdin = self.process.stdin
        if stdin is None:
            raise BrokenPipeError("process has no stdin")
        stdin.write(data)
        await stdin.drain()

    async def wait(self) -> int:
        return await self.process.wait()

    def resize(self, cols: int, rows: int):
        """Set the pseudo-terminal window size. Ignored for piped processes."""
        if self._master_fd is None:
            return
        fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))

    def kill(self):
        """Force-kill the process. No-op once it has exited."""
        if self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass  # Already exited

    def close(self):
        """Release the pseudo-terminal, if any."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None


async def spawn(
    command: list[str],
    cwd: str | os.PathLike | None = None,
    env: dict[str, str] | None = None,
    use_pty: bool = False,
) -> ProcessHandle:
    """Launch a worker process with piped (or pseudo-terminal) streams.

    Raises SpawnFailure when the executable cannot be launched.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    if use_pty:
        return await _spawn_pty(command, cwd, full_env)

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=full_env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SpawnFailure(f"Could not launch {command[0]}: {e}", command=command) from e

    logger.debug("Spawned %s (PID %s) in %s", command[0], process.pid, cwd)
    return ProcessHandle(process, process.stdout, process.stderr)


async def _spawn_pty(command: list[str], cwd, env: dict[str, str]) -> ProcessHandle:
    env = {**env, **TERMINAL_ENV}
    master_fd, slave_fd = pty.openpty()
    try:
        fcntl.ioctl(
            slave_fd,
            termios.TIOCSWINSZ,
            struct.pack("HHHH", TERMINAL_ROWS, TERMINAL_COLS, 0, 0),
        )
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=env,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
        )
    except OSError as e:
        os.close(master_fd)
        raise SpawnFailure(f"Could not launch {command[0]}: {e}", command=command) from e
    finally:
        os.close(slave_fd)

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader),
        os.fdopen(os.dup(master_fd), "rb", buffering=0),
    )
    logger.debug("Spawned %s (PID %s) on a pseudo-terminal in %s", command[0], process.pid, cwd)
    return ProcessHandle(process, reader, None, master_fd=master_fd, transport=transport)


async def pump(
    handle: ProcessHandle,
    on_stdout: ChunkCallback | None,
    on_stderr: ChunkCallback | None = None,
) -> int:
    """Relay output until every stream is exhausted and the process exited.

    Stream EOFs and the process exit are separate event sources in a single
    ``asyncio.wait`` selection. Returns the exit code.
    """
    sources = {asyncio.ensure_future(_relay(handle.stdout, on_stdout))}
    if handle.stderr is not None:
        sources.add(asyncio.ensure_future(_relay(handle.stderr, on_stderr)))
    exit_task = asyncio.ensure_future(handle.wait())

    pending = sources | {exit_task}
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result()
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    return exit_task.result()


async def _relay(stream: asyncio.StreamReader, callback: ChunkCallback | None):
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        try:
            chunk = await stream.read(READ_CHUNK)
        except OSError as e:
            # A pseudo-terminal master reports EIO once the child side closes.
            if e.errno != errno.EIO:
                raise
            chunk = b""
        if not chunk:
            tail = decoder.decode(b"", final=True)
            if tail and callback:
                callback(tail)
            return
        text = decoder.decode(chunk)
        if text and callback:
            callback(text)
