"""Interactive worker sessions with buffered, fan-out output.

A session outlives its observers: web clients attach and detach freely while
the worker keeps running, and a late joiner first receives the buffered
output, then live chunks.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from kanban_orchestrator.config import Config
from kanban_orchestrator.core.errors import SpawnFailure
from kanban_orchestrator.core.events import EventBus
from kanban_orchestrator.core.supervisor import ProcessHandle, pump, spawn
from kanban_orchestrator.core.workspaces import WorkspaceManager

logger = logging.getLogger(__name__)

OBSERVER_QUEUE_SIZE = 1000


class OutputBuffer:
    """Bounded line buffer. Keeps the most recent ``max_lines`` lines.

    Lines keep their trailing newline. A chunk ending mid-line leaves an open
    last line that the next chunk continues.
    """

    def __init__(self, max_lines: int = 1000):
        self.max_lines = max_lines
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._open = False

    def append(self, chunk: str):
        if not chunk:
            return
        pieces = chunk.split("\n")
        lines = [piece + "\n" for piece in pieces[:-1]]
        if pieces[-1]:
            lines.append(pieces[-1])
        if self._open and self._lines and lines:
            self._lines[-1] = self._lines[-1] + lines.pop(0)
        self._lines.extend(lines)
        self._open = not chunk.endswith("\n")

    def lines(self) -> list[str]:
        return list(self._lines)

    def snapshot(self) -> str:
        return "".join(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class Observer:
    """A bounded delivery queue for one attached client.

    When the queue fills up the registry drops the observer rather than
    stall the relay. ``get()`` returns None once a dropped observer has
    drained what it was given.
    """

    def __init__(self, maxsize: int = OBSERVER_QUEUE_SIZE):
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.dropped = False

    def offer(self, data: str) -> bool:
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> str | None:
        if self.dropped and self._queue.empty():
            return None
        return await self._queue.get()

    def pending(self) -> list[str]:
        """Drain whatever is queued without waiting."""
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items


@dataclass(eq=False)
class WorkerSession:
    ticket_id: str
    buffer: OutputBuffer
    process: ProcessHandle | None = None
    observers: set[Observer] = field(default_factory=set)
    status: str = "stopped"
    started_at: datetime | None = None
    error: str | None = None
    task: asyncio.Task | None = None
    generation: int = 0


class SessionRegistry:
    """Owns every interactive session in the process.

    Buffer and observer set are only touched under one lock, so a client
    attaching mid-stream sees the replay and then each live chunk exactly
    once.
    """

    def __init__(
        self,
        config: Config,
        workspaces: WorkspaceManager | None = None,
        events: EventBus | None = None,
    ):
        self.config = config
        self.workspaces = workspaces
        self.events = events
        self._lock = threading.Lock()
        self._sessions: dict[str, WorkerSession] = {}

    def get(self, ticket_id: str) -> WorkerSession | None:
        with self._lock:
            return self._sessions.get(ticket_id)

    def get_or_create(self, ticket_id: str) -> WorkerSession:
        with self._lock:
            return self._get_or_create(ticket_id)

    def _get_or_create(self, ticket_id: str) -> WorkerSession:
        session = self._sessions.get(ticket_id)
        if session is None:
            session = WorkerSession(ticket_id=ticket_id, buffer=OutputBuffer(self.config.buffer_lines))
            self._sessions[ticket_id] = session
        return session

    def _cwd_for(self, ticket_id: str) -> Path:
        if self.workspaces is not None:
            path = self.workspaces.path_for(ticket_id)
            if path.exists():
                return path
        return Path(self.config.repo_path)

    def _publish(self, event_type: str, ticket_id: str, **payload):
        if self.events is not None:
            self.events.publish(event_type, {"ticket_id": ticket_id, **payload}, ticket_id=ticket_id)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self, ticket_id: str, resume_token: str | None = None) -> WorkerSession:
        """Start the interactive worker for a ticket if it is not running."""
        with self._lock:
            session = self._get_or_create(ticket_id)
            if session.status in ("starting", "running"):
                return session
            # A killed process may still be draining; its relay has to finish first
            previous = session.task if session.process is not None else None
            session.status = "starting"
            session.error = None
            session.generation += 1
            generation = session.generation

        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
            if session.generation != generation:
                return session

        command = [self.config.claude_path]
        if resume_token:
            command += ["--resume", resume_token]
        cwd = self._cwd_for(ticket_id)

        try:
            handle = await spawn(command, cwd=cwd, use_pty=self.config.terminal_pty)
        except SpawnFailure as e:
            with self._lock:
                if session.generation == generation:
                    session.status = "error"
                    session.error = str(e)
            logger.error("Terminal for ticket %s failed to start: %s", ticket_id, e)
            raise

        with self._lock:
            stale = session.generation != generation
            if not stale:
                session.process = handle
                session.status = "running"
                session.started_at = datetime.now(timezone.utc)
        if stale:
            logger.info("Terminal for ticket %s was killed while starting", ticket_id)
            handle.kill()
            await handle.wait()
            handle.close()
            return session

        session.task = asyncio.create_task(self._relay(session, handle))

        logger.info("Terminal for ticket %s started (PID %s) in %s", ticket_id, handle.pid, cwd)
        self._publish("terminal.started", ticket_id, pid=handle.pid, resumed=bool(resume_token))
        return session

    async def _relay(self, session: WorkerSession, handle: ProcessHandle):
        def deliver(chunk: str):
            self._broadcast(session, chunk)

        try:
            code = await pump(handle, deliver, deliver)
        except Exception:
            logger.exception("Output relay failed for ticket %s", session.ticket_id)
            handle.kill()
            code = await handle.wait()
        finally:
            handle.close()

        with self._lock:
            current = session.process is handle
            if current:
                session.process = None
                if session.status == "running":
                    session.status = "stopped"
        logger.info("Terminal for ticket %s exited with code %s", session.ticket_id, code)
        if not current:
            return
        self._broadcast(session, f"\r\n\x1b[33m[Terminal session ended (code {code})]\x1b[0m\r\n")
        self._publish("terminal.stopped", session.ticket_id, exit_code=code)

    def _broadcast(self, session: WorkerSession, chunk: str):
        with self._lock:
            session.buffer.append(chunk)
            lagging = [o for o in session.observers if not o.offer(chunk)]
            for observer in lagging:
                observer.dropped = True
                session.observers.discard(observer)
        for _ in lagging:
            logger.warning("Dropped a lagging observer from ticket %s", session.ticket_id)

    async def send(self, ticket_id: str, data: str | bytes) -> bool:
        """Write input to a ticket's running worker. Returns False if dropped."""
        session = self.get(ticket_id)
        handle = session.process if session else None
        if handle is None:
            logger.warning("No running terminal for ticket %s, dropping input", ticket_id)
            return False
        try:
            await handle.write(data)
        except OSError as e:
            logger.warning("Could not write to terminal for ticket %s: %s", ticket_id, e)
            return False
        return True

    def resize(self, ticket_id: str, cols: int, rows: int):
        session = self.get(ticket_id)
        if session and session.process:
            session.process.resize(cols, rows)

    def kill(self, ticket_id: str):
        """Force-kill a ticket's worker. Safe to call repeatedly."""
        with self._lock:
            session = self._sessions.get(ticket_id)
            if session is None:
                return
            handle = session.process
            session.status = "stopped"
            session.generation += 1
        if handle is not None:
            handle.kill()
            logger.info("Killed terminal for ticket %s", ticket_id)

    async def shutdown(self):
        """Kill every session and wait for the relays to finish."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            self.kill(session.ticket_id)
        tasks = [s.task for s in sessions if s.task is not None and not s.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Observers ─────────────────────────────────────────────────────────

    def attach(self, ticket_id: str, observer: Observer | None = None) -> Observer:
        """Register an observer, queuing the buffered output first."""
        observer = observer or Observer()
        with self._lock:
            session = self._get_or_create(ticket_id)
            replay = session.buffer.snapshot()
            if replay:
                observer.offer(replay)
            session.observers.add(observer)
        return observer

    def detach(self, ticket_id: str, observer: Observer):
        with self._lock:
            session = self._sessions.get(ticket_id)
            if session is not None:
                session.observers.discard(observer)

    def status(self, ticket_id: str) -> dict:
        with self._lock:
            session = self._sessions.get(ticket_id)
            if session is None:
                return {"running": False, "status": "none", "clients": 0, "started_at": None, "error": None}
            return {
                "running": session.status == "running" and session.process is not None,
                "status": session.status,
                "clients": len(session.observers),
                "started_at": session.started_at.isoformat() if session.started_at else None,
                "error": session.error,
            }
