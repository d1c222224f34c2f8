"""Ticket queue and the agent continuation loop.

One job runs at a time. Each job works in the ticket's own worktree and calls
the worker in bounded iterations until it reports completion, asks for human
input, or runs out of iterations.

Job lifecycle::

    idle -> starting -> running -> completed
                                -> failed
                                -> blocked --resume--> (new job, same workspace)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from kanban_orchestrator.config import Config
from kanban_orchestrator.core import output, prompts
from kanban_orchestrator.core.agents import create_agent_run, get_latest_agent_run, update_agent_run
from kanban_orchestrator.core.errors import (
    IterationBudgetExhausted,
    IterationTimeout,
    NoActiveJob,
    SpawnFailure,
    TicketNotFound,
)
from kanban_orchestrator.core.events import EventBus
from kanban_orchestrator.core.supervisor import ProcessHandle, pump, spawn
from kanban_orchestrator.core.tickets import (
    add_message,
    get_requirements,
    get_ticket,
    set_session_id,
    update_ticket_column,
)
from kanban_orchestrator.core.workspaces import WorkspaceManager
from kanban_orchestrator.db.models import Workspace

logger = logging.getLogger(__name__)

JOB_STATUSES = ("idle", "starting", "running", "blocked", "completed", "failed")
_SUMMARY_LIMIT = 2000


@dataclass(eq=False)
class AgentJob:
    ticket_id: str
    job_id: int
    status: str = "idle"
    iterations: int = 0
    process: ProcessHandle | None = None
    last_output: str = ""
    session_id: str | None = None
    workspace_path: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    killed: bool = False

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "job_id": self.job_id,
            "status": self.status,
            "iterations": self.iterations,
            "session_id": self.session_id,
            "workspace_path": self.workspace_path,
            "started_at": self.started_at.isoformat(),
            "pid": self.process.pid if self.process else None,
        }


@dataclass
class IterationOutcome:
    records: list
    exit_code: int
    exit_class: str
    stderr: str = ""


def classify_exit(exit_code: int, records: list) -> str:
    """Name the way a bounded worker call ended.

    ``ok`` for a clean exit, ``turn_limit`` when the worker stopped at its
    turn cap, ``killed`` for a signal, ``crashed`` for anything else.
    """
    if exit_code == 0:
        return "ok"
    if exit_code < 0:
        return "killed"
    if output.result_subtype(records) == "error_max_turns":
        return "turn_limit"
    return "crashed"


class Orchestrator:
    """Owns the ticket queue, the running job and the parked blocked jobs."""

    def __init__(
        self,
        db: sqlite3.Connection,
        config: Config,
        workspaces: WorkspaceManager,
        events: EventBus | None = None,
        spawner=spawn,
    ):
        self.db = db
        self.config = config
        self.workspaces = workspaces
        self.events = events or EventBus()
        self.spawner = spawner
        self._queue: deque[str] = deque()
        self._processing: str | None = None
        self._current: AgentJob | None = None
        self._blocked: dict[str, AgentJob] = {}
        self._pending_responses: dict[str, str] = {}
        self._drain_task: asyncio.Task | None = None

    # ── Queue ─────────────────────────────────────────────────────────────

    def enqueue(self, ticket_id: str) -> bool:
        """Queue a ticket for processing. Returns False if already queued."""
        if ticket_id in self._queue or ticket_id == self._processing:
            logger.info("Ticket %s already queued", ticket_id)
            return False
        self._queue.append(ticket_id)
        logger.info("Ticket %s added to queue (length %d)", ticket_id, len(self._queue))
        self._publish_queue()
        self._kick()
        return True

    def dequeue(self, ticket_id: str) -> bool:
        if ticket_id not in self._queue:
            return False
        self._queue.remove(ticket_id)
        self._publish_queue()
        return True

    def _kick(self):
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # No loop yet; join() starts draining
        self._drain_task = loop.create_task(self._drain())

    async def _drain(self):
        while self._queue:
            ticket_id = self._queue.popleft()
            self._processing = ticket_id
            self._publish_queue()
            try:
                await self.start_agent(ticket_id)
            except Exception as e:
                logger.exception("Failed to start agent for ticket %s", ticket_id)
                if get_ticket(self.db, ticket_id):
                    self.move_ticket(ticket_id, "blocked")
                    self._post(ticket_id, "system", f"Agent failed to start: {e}")
            finally:
                self._processing = None
        self._publish_queue()

    async def join(self):
        """Wait until every queued ticket has been processed."""
        while True:
            task = self._drain_task
            if task is None or task.done():
                if not self._queue:
                    return
                self._kick()
                continue
            await task

    async def shutdown(self):
        """Kill the running worker and stop draining."""
        self._queue.clear()
        job = self._current
        if job is not None:
            job.killed = True
            if job.process is not None:
                job.process.kill()
            update_agent_run(self.db, job.job_id, status="FAILED", summary="Interrupted by shutdown")
            logger.info("Interrupted agent for ticket %s on shutdown", job.ticket_id)
        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    # ── Jobs ──────────────────────────────────────────────────────────────

    async def start_agent(self, ticket_id: str) -> AgentJob:
        """Run one job for a ticket until it completes, blocks or fails."""
        ticket = get_ticket(self.db, ticket_id)
        if not ticket:
            raise TicketNotFound(f"Ticket {ticket_id} not found")

        parked = self._blocked.pop(ticket_id, None)
        response = self._pending_responses.pop(ticket_id, None)
        resuming = parked is not None or response is not None
        token = ticket.session_id if resuming else None

        run = create_agent_run(self.db, ticket_id, self.config.max_iterations, session_id=token)
        job = AgentJob(ticket_id=ticket_id, job_id=run.id, status="starting", session_id=token)
        self._current = job
        logger.info("Starting agent for ticket %s (run %s%s)", ticket_id, run.id, ", resuming" if resuming else "")
        self._publish("agent.started", ticket_id, job_id=run.id, resumed=resuming)

        try:
            if resuming:
                workspace = await asyncio.to_thread(self._reuse_workspace, ticket_id)
            else:
                workspace = await asyncio.to_thread(
                    self.workspaces.create, ticket_id, self.config.base_branch
                )
        except Exception as e:
            logger.error("Workspace setup failed for ticket %s: %s", ticket_id, e)
            await self._fail(job, str(e))
            return job

        if job.killed:
            # Killed while the workspace was being set up; _fail ran without it
            if job.status == "failed":
                await self._discard_workspace(ticket_id)
            return job

        job.workspace_path = workspace.path
        update_agent_run(self.db, job.job_id, worktree_path=workspace.path)
        self._post(ticket_id, "system", f"Agent started. Working in branch: {workspace.branch}")

        try:
            await self._run_loop(job, workspace, response)
        except Exception as e:
            logger.exception("Agent loop crashed for ticket %s", ticket_id)
            await self._fail(job, str(e))
        return job

    def _reuse_workspace(self, ticket_id: str) -> Workspace:
        workspace = self.workspaces.get(ticket_id)
        if workspace is None:
            logger.warning("Workspace for ticket %s is gone, creating a new one", ticket_id)
            return self.workspaces.create(ticket_id, self.config.base_branch)
        self.workspaces.lock(ticket_id, f"Agent working on ticket {ticket_id}")
        workspace.locked = True
        return workspace

    async def _run_loop(self, job: AgentJob, workspace: Workspace, response: str | None):
        ticket_id = job.ticket_id
        max_iterations = self.config.max_iterations
        requirements = get_requirements(self.db, ticket_id) or "No PRD content available"

        while not job.killed:
            if job.iterations >= max_iterations:
                await self._block(job, str(IterationBudgetExhausted(max_iterations)))
                return

            job.iterations += 1
            job.status = "running"
            update_agent_run(self.db, job.job_id, status="RUNNING", iteration_count=job.iterations)
            self._publish(
                "agent.progress",
                ticket_id,
                job_id=job.job_id,
                iteration=job.iterations,
                max_iterations=max_iterations,
            )

            if response is not None:
                instruction = prompts.resume_prompt(
                    response, None if job.session_id else requirements
                )
                response = None
            elif job.session_id:
                instruction = prompts.continue_prompt()
            else:
                instruction = prompts.task_prompt(requirements)

            logger.info("Running iteration %d for ticket %s in %s", job.iterations, ticket_id, workspace.path)
            try:
                outcome = await self._iterate(job, workspace.path, instruction)
            except SpawnFailure as e:
                await self._fail(job, str(e))
                return
            except Exception as e:
                if job.killed:
                    return
                logger.exception("Error in iteration %d for ticket %s", job.iterations, ticket_id)
                self._post(ticket_id, "system", f"Error in iteration {job.iterations}: {e}")
            else:
                if job.killed:
                    return
                text = output.signal_text(outcome.records)
                job.last_output = text
                if output.is_complete(text):
                    await self._complete(job)
                    return
                if output.needs_input(text):
                    await self._block(job, output.find_question(outcome.records))
                    return
                if outcome.exit_class == "crashed":
                    detail = outcome.stderr.strip().splitlines()[-1:] or [""]
                    self._post(
                        ticket_id,
                        "system",
                        f"Worker exited with code {outcome.exit_code} in iteration {job.iterations}"
                        + (f": {detail[0]}" if detail[0] else ""),
                    )
                elif outcome.exit_class == "turn_limit":
                    logger.debug("Iteration %d for ticket %s stopped at the turn limit", job.iterations, ticket_id)

            if job.killed:
                return
            if job.iterations < max_iterations and self.config.iteration_delay > 0:
                await asyncio.sleep(self.config.iteration_delay)

    def _command(self, instruction: str, session_id: str | None) -> list[str]:
        cmd = [
            self.config.claude_path,
            "-p", instruction,
            "--output-format", "stream-json",
            "--verbose",
            "--max-turns", str(self.config.turns_per_iteration),
            "--permission-mode", self.config.permission_mode,
        ]
        if self.config.agent_model:
            cmd += ["--model", self.config.agent_model]
        if session_id:
            cmd += ["--resume", session_id]
        return cmd

    async def _iterate(self, job: AgentJob, cwd: str, instruction: str) -> IterationOutcome:
        handle = await self.spawner(
            self._command(instruction, job.session_id),
            cwd=cwd,
            env={"CLAUDE_CODE_HEADLESS": "1"},
        )
        job.process = handle
        parser = output.StreamParser()
        stderr_parts: list[str] = []

        def on_stdout(chunk: str):
            for record in parser.feed(chunk):
                self._relay(job, record)

        try:
            exit_code = await asyncio.wait_for(
                pump(handle, on_stdout, stderr_parts.append),
                timeout=self.config.iteration_timeout,
            )
        except asyncio.TimeoutError:
            handle.kill()
            await handle.wait()
            raise IterationTimeout(
                f"Iteration timed out after {self.config.iteration_timeout:g} seconds"
            ) from None
        finally:
            job.process = None

        for record in parser.close():
            self._relay(job, record)

        session_id = output.find_session_id(parser.records)
        if session_id and session_id != job.session_id:
            job.session_id = session_id
            set_session_id(self.db, job.ticket_id, session_id)
            update_agent_run(self.db, job.job_id, session_id=session_id)

        return IterationOutcome(
            records=parser.records,
            exit_code=exit_code,
            exit_class=classify_exit(exit_code, parser.records),
            stderr="".join(stderr_parts),
        )

    def _relay(self, job: AgentJob, record):
        described = output.describe(record)
        if described is None:
            return
        kind, content = described
        self._publish("agent.output", job.ticket_id, content=content, type=kind)

    # ── Termination ───────────────────────────────────────────────────────

    async def _complete(self, job: AgentJob):
        ticket_id = job.ticket_id
        logger.info("Agent completed ticket %s after %d iterations", ticket_id, job.iterations)
        job.status = "completed"
        update_agent_run(
            self.db,
            job.job_id,
            status="COMPLETED",
            iteration_count=job.iterations,
            exit_code=0,
            summary=job.last_output[-_SUMMARY_LIMIT:],
        )
        self.move_ticket(ticket_id, "review")
        self._post(ticket_id, "system", "Agent completed the task. Please review the changes.")
        try:
            await asyncio.to_thread(self.workspaces.unlock, ticket_id)
        except Exception:
            logger.warning("Could not unlock workspace for ticket %s", ticket_id, exc_info=True)
        self._publish("agent.completed", ticket_id, job_id=job.job_id, iterations=job.iterations)
        self._release(job)

    async def _block(self, job: AgentJob, question: str):
        ticket_id = job.ticket_id
        logger.info("Agent blocked on ticket %s: %s", ticket_id, question)
        job.status = "blocked"
        update_agent_run(
            self.db, job.job_id, status="BLOCKED", iteration_count=job.iterations, summary=question
        )
        self.move_ticket(ticket_id, "blocked")
        self._post(ticket_id, "agent", question)
        self._blocked[ticket_id] = job
        self._publish("agent.blocked", ticket_id, job_id=job.job_id, question=question)
        self._release(job)

    async def _fail(self, job: AgentJob, error: str):
        if job.status == "failed":
            return
        ticket_id = job.ticket_id
        logger.warning("Agent failed for ticket %s: %s", ticket_id, error)
        job.status = "failed"
        update_agent_run(
            self.db, job.job_id, status="FAILED", iteration_count=job.iterations, summary=error
        )
        self.move_ticket(ticket_id, "blocked")
        self._post(ticket_id, "system", f"Agent failed: {error}")
        if job.workspace_path is not None:
            await self._discard_workspace(ticket_id)
        self._publish("agent.failed", ticket_id, job_id=job.job_id, error=error)
        self._release(job)

    async def _discard_workspace(self, ticket_id: str):
        try:
            await asyncio.to_thread(self.workspaces.remove, ticket_id, True)
        except Exception:
            logger.warning("Could not remove workspace for ticket %s", ticket_id, exc_info=True)

    def _release(self, job: AgentJob):
        job.process = None
        if self._current is job:
            self._current = None

    # ── Human interaction ─────────────────────────────────────────────────

    def is_blocked(self, ticket_id: str) -> bool:
        """True if the ticket has a blocked job waiting for a response.

        Falls back to the latest run record so a restarted server can still
        resume jobs that blocked before it went down.
        """
        if ticket_id in self._blocked:
            return True
        if ticket_id in self._pending_responses:
            return False
        if self._current is not None and self._current.ticket_id == ticket_id:
            return False
        latest = get_latest_agent_run(self.db, ticket_id)
        return latest is not None and latest.status == "BLOCKED"

    async def resume_agent(self, ticket_id: str, response: str):
        """Answer a blocked job and queue the ticket to continue."""
        if not self.is_blocked(ticket_id):
            raise NoActiveJob(f"No blocked agent found for ticket {ticket_id}")
        self._post(ticket_id, "human", response)
        self._blocked.pop(ticket_id, None)
        self._pending_responses[ticket_id] = response
        self.enqueue(ticket_id)

    async def kill_agent(self, ticket_id: str):
        """Kill the running job for a ticket and discard its workspace."""
        job = self._current
        if job is None or job.ticket_id != ticket_id:
            raise NoActiveJob(f"No active agent found for ticket {ticket_id}")
        job.killed = True
        if job.process is not None:
            job.process.kill()
        await self._fail(job, "Agent killed by user")

    # ── Status ────────────────────────────────────────────────────────────

    @property
    def current_job(self) -> AgentJob | None:
        return self._current

    @property
    def queue(self) -> list[str]:
        return list(self._queue)

    def get_status(self) -> dict:
        return {
            "queue": list(self._queue),
            "processing": self._processing,
            "current_job": self._current.to_dict() if self._current else None,
            "blocked": [job.to_dict() for job in self._blocked.values()],
        }

    # ── Store and event helpers ───────────────────────────────────────────

    def move_ticket(self, ticket_id: str, column_id: str):
        if update_ticket_column(self.db, ticket_id, column_id):
            self._publish("ticket.updated", ticket_id, column_id=column_id)

    def _post(self, ticket_id: str, sender_type: str, content: str):
        message = add_message(self.db, ticket_id, sender_type, content)
        self._publish("message.created", ticket_id, message_id=message.id, content=content, sender_type=sender_type)

    def _publish(self, event_type: str, ticket_id: str | None = None, **payload):
        if ticket_id is not None:
            payload = {"ticket_id": ticket_id, **payload}
        self.events.publish(event_type, payload, ticket_id=ticket_id)

    def _publish_queue(self):
        self._publish(
            "queue.updated",
            queue=list(self._queue),
            current_ticket_id=self._current.ticket_id if self._current else self._processing,
        )
