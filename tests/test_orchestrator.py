"""Tests for the ticket queue and the agent continuation loop.

The worker is a small Python script that prints stream-json records and logs
its argv and cwd to ``$STUB_LOG`` so tests can inspect each call.
"""

import asyncio
import json
import textwrap
import time

import pytest

from conftest import git
from kanban_orchestrator.config import Config
from kanban_orchestrator.core import prompts
from kanban_orchestrator.core.agents import get_latest_agent_run, list_agent_runs
from kanban_orchestrator.core.errors import NoActiveJob
from kanban_orchestrator.core.events import EventBus
from kanban_orchestrator.core.orchestrator import Orchestrator, classify_exit
from kanban_orchestrator.core.output import ResultRecord
from kanban_orchestrator.core.tickets import create_ticket, get_ticket, list_messages
from kanban_orchestrator.core.workspaces import WorkspaceManager
from kanban_orchestrator.integrations.git import branch_exists

PRELUDE = '''
import json
import os
import sys
import time

with open(os.environ["STUB_LOG"], "a") as log:
    log.write(json.dumps({"argv": sys.argv[1:], "cwd": os.getcwd()}) + "\\n")
with open(os.environ["STUB_LOG"]) as log:
    CALL = len(log.readlines())
PROMPT = sys.argv[sys.argv.index("-p") + 1] if "-p" in sys.argv else ""


def emit(kind, **fields):
    print(json.dumps({"type": kind, **fields}), flush=True)


def say(text, session="sess-1"):
    emit("assistant", message={"content": [{"type": "text", "text": text}]}, session_id=session)
'''


@pytest.fixture
def stub_log(tmp_path, monkeypatch):
    path = tmp_path / "calls.jsonl"
    monkeypatch.setenv("STUB_LOG", str(path))
    return path


def calls(path):
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.fixture
def build(tmp_path, git_repo, db, make_worker, stub_log):
    """Build an orchestrator around a stand-in worker script.

    Returns ``(orchestrator, events)`` where ``events`` records every
    published event.
    """

    def factory(body=None, **overrides):
        if body is None:
            claude_path = str(tmp_path / "missing" / "claude")
        else:
            claude_path = str(make_worker(PRELUDE + textwrap.dedent(body)))
        settings = {
            "repo_path": git_repo,
            "worktree_dir": tmp_path / "worktrees",
            "claude_path": claude_path,
            "iteration_delay": 0,
            "max_iterations": 5,
        }
        settings.update(overrides)
        config = Config(**settings)
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append)
        workspaces = WorkspaceManager(git_repo, config.worktrees_path)
        return Orchestrator(db, config, workspaces, bus), seen

    return factory


@pytest.fixture
def ticket(db):
    return create_ticket(db, "Implement X", prd="implement X")


def drain(orch, *ticket_ids):
    async def go():
        for ticket_id in ticket_ids:
            orch.enqueue(ticket_id)
        await orch.join()

    asyncio.run(go())


def messages(db, ticket_id):
    return [(m.sender_type, m.content) for m in list_messages(db, ticket_id)]


def event_types(seen):
    return [e.type for e in seen]


async def wait_for_process(orch, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        job = orch.current_job
        if job is not None and job.process is not None:
            return job
        await asyncio.sleep(0.02)
    raise AssertionError("worker never started")


COMPLETES = """
emit("system", subtype="init", session_id="sess-1")
say("Implemented X. TASK_COMPLETE")
emit("result", subtype="success", result="Done", session_id="sess-1")
"""

NEVER_DONE = """
say(f"Still exploring ({CALL})")
"""

SLEEPS = """
say("Starting")
time.sleep(30)
"""


class TestCompletion:
    def test_completes_on_first_iteration(self, build, db, ticket, stub_log):
        orch, seen = build(COMPLETES)
        drain(orch, ticket.id)

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "COMPLETED"
        assert run.iteration_count == 1
        assert run.exit_code == 0
        assert get_ticket(db, ticket.id).column_id == "review"
        assert get_ticket(db, ticket.id).session_id == "sess-1"

        ws = orch.workspaces.get(ticket.id)
        assert ws is not None
        assert ws.locked is False

        assert messages(db, ticket.id) == [
            ("system", f"Agent started. Working in branch: ticket/{ticket.id}"),
            ("system", "Agent completed the task. Please review the changes."),
        ]
        types = event_types(seen)
        assert types.index("agent.started") < types.index("agent.progress") < types.index("agent.completed")
        completed = [e for e in seen if e.type == "agent.completed"][0]
        assert completed.payload["job_id"] == run.id
        assert completed.ticket_id == ticket.id
        assert orch.current_job is None

    def test_first_call_gets_task_prompt_in_workspace(self, build, ticket, stub_log):
        orch, _ = build(COMPLETES)
        drain(orch, ticket.id)

        (call,) = calls(stub_log)
        argv = call["argv"]
        assert argv[argv.index("-p") + 1] == prompts.task_prompt("implement X")
        assert argv[argv.index("--output-format") + 1] == "stream-json"
        assert argv[argv.index("--max-turns") + 1] == "1"
        assert "--resume" not in argv
        assert call["cwd"] == str(orch.workspaces.path_for(ticket.id))

    def test_model_flag_passed_when_configured(self, build, ticket, stub_log):
        orch, _ = build(COMPLETES, agent_model="sonnet")
        drain(orch, ticket.id)
        argv = calls(stub_log)[0]["argv"]
        assert argv[argv.index("--model") + 1] == "sonnet"

    def test_later_iterations_continue_the_session(self, build, db, ticket, stub_log):
        orch, seen = build("""
            if CALL < 3:
                emit("system", subtype="init", session_id="sess-b")
                say(f"Working on step {CALL}", session="sess-b")
            else:
                say("TASK_COMPLETE", session="sess-b")
        """)
        drain(orch, ticket.id)

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "COMPLETED"
        assert run.iteration_count == 3
        assert run.session_id == "sess-b"

        logged = calls(stub_log)
        assert len(logged) == 3
        assert "--resume" not in logged[0]["argv"]
        for call in logged[1:]:
            argv = call["argv"]
            assert argv[argv.index("--resume") + 1] == "sess-b"
            assert argv[argv.index("-p") + 1] == prompts.continue_prompt()

        progress = [e.payload["iteration"] for e in seen if e.type == "agent.progress"]
        assert progress == [1, 2, 3]

    def test_output_is_relayed_to_ticket(self, build, ticket):
        orch, seen = build("""
            emit("assistant", message={"content": [
                {"type": "text", "text": "Reading files"},
                {"type": "tool_use", "name": "Read", "input": {"path": "README.md"}},
            ]}, session_id="sess-1")
            say("TASK_COMPLETE")
        """)
        drain(orch, ticket.id)

        relayed = [(e.payload["type"], e.payload["content"]) for e in seen if e.type == "agent.output"]
        assert ("assistant", "Reading files") in relayed
        assert ("tool", "Using tool: Read") in relayed
        assert all(e.ticket_id == ticket.id for e in seen if e.type == "agent.output")

    def test_completion_in_result_record(self, build, db, ticket):
        orch, _ = build("""
            emit("result", subtype="success", result="All good. TASK_COMPLETE", session_id="sess-1")
        """)
        drain(orch, ticket.id)
        assert get_latest_agent_run(db, ticket.id).status == "COMPLETED"

    def test_sentinel_in_tool_result_is_ignored(self, build, db, ticket):
        orch, _ = build("""
            emit("user", message={"content": [
                {"type": "tool_result", "content": "grep: TASK_COMPLETE found in prompts.py"},
            ]}, session_id="sess-1")
            emit("tool_use", name="Bash", input={"command": "echo NEED_HUMAN_INPUT: nope"})
            say("Looked around")
        """, max_iterations=1)
        drain(orch, ticket.id)

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "BLOCKED"
        assert run.summary.startswith("Reached maximum iterations (1)")


class TestBlockAndResume:
    ASKS = """
        if "The human responded" in PROMPT:
            say("Using it. TASK_COMPLETE", session="sess-c")
        else:
            emit("system", subtype="init", session_id="sess-c")
            say("I looked at the schema.\\nNEED_HUMAN_INPUT: Which database?", session="sess-c")
    """

    def test_need_input_blocks_job(self, build, db, ticket):
        orch, seen = build(self.ASKS)
        drain(orch, ticket.id)

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "BLOCKED"
        assert run.summary == "Which database?"
        assert get_ticket(db, ticket.id).column_id == "blocked"
        assert messages(db, ticket.id)[-1] == ("agent", "Which database?")

        ws = orch.workspaces.get(ticket.id)
        assert ws is not None
        assert ws.locked is True

        blocked = [e for e in seen if e.type == "agent.blocked"]
        assert blocked[0].payload["question"] == "Which database?"
        assert orch.is_blocked(ticket.id)
        assert orch.current_job is None
        assert orch.queue == []

    def test_question_repeated_in_result_is_not_duplicated(self, build, db, ticket):
        orch, _ = build("""
            say("NEED_HUMAN_INPUT: Which database?")
            emit("result", subtype="success", result="NEED_HUMAN_INPUT: Which database?")
        """)
        drain(orch, ticket.id)

        assert get_latest_agent_run(db, ticket.id).summary == "Which database?"

    def test_resume_continues_in_same_workspace(self, build, db, ticket, stub_log):
        orch, seen = build(self.ASKS)

        async def scenario():
            orch.enqueue(ticket.id)
            await orch.join()
            await orch.resume_agent(ticket.id, "Use PostgreSQL")
            await orch.join()

        asyncio.run(scenario())

        runs = list_agent_runs(db, ticket_id=ticket.id)
        assert [r.status for r in runs] == ["COMPLETED", "BLOCKED"]
        assert runs[0].session_id == "sess-c"
        assert get_ticket(db, ticket.id).column_id == "review"
        assert ("human", "Use PostgreSQL") in messages(db, ticket.id)
        assert not orch.is_blocked(ticket.id)

        first, second = calls(stub_log)
        argv = second["argv"]
        assert argv[argv.index("--resume") + 1] == "sess-c"
        assert "Use PostgreSQL" in argv[argv.index("-p") + 1]
        assert second["cwd"] == first["cwd"]

        started = [e.payload["resumed"] for e in seen if e.type == "agent.started"]
        assert started == [False, True]

    def test_resume_after_restart_uses_stored_run(self, build, db, ticket, stub_log):
        orch, _ = build(self.ASKS)
        drain(orch, ticket.id)

        restarted, _ = build(self.ASKS)
        assert restarted.is_blocked(ticket.id)

        async def scenario():
            await restarted.resume_agent(ticket.id, "Use PostgreSQL")
            await restarted.join()

        asyncio.run(scenario())
        assert get_latest_agent_run(db, ticket.id).status == "COMPLETED"
        argv = calls(stub_log)[-1]["argv"]
        assert argv[argv.index("--resume") + 1] == "sess-c"

    def test_resume_without_blocked_job(self, build, ticket):
        orch, _ = build(COMPLETES)
        with pytest.raises(NoActiveJob, match="No blocked agent found"):
            asyncio.run(orch.resume_agent(ticket.id, "hello"))

    def test_question_defaults_when_marker_is_bare(self, build, db, ticket):
        orch, _ = build("""
            say("NEED_HUMAN_INPUT:")
        """)
        drain(orch, ticket.id)
        assert messages(db, ticket.id)[-1] == ("agent", "Agent needs human input")


class TestFailure:
    def test_workspace_creation_failure_fails_job(self, build, db, git_repo, ticket, stub_log):
        git(git_repo, "branch", f"ticket/{ticket.id}")
        orch, seen = build(COMPLETES)
        drain(orch, ticket.id)

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "FAILED"
        assert run.iteration_count == 0
        assert get_ticket(db, ticket.id).column_id == "blocked"
        assert calls(stub_log) == []
        assert not orch.workspaces.path_for(ticket.id).exists()
        # The colliding branch belongs to someone else
        assert branch_exists(git_repo, f"ticket/{ticket.id}")

        sender, content = messages(db, ticket.id)[-1]
        assert sender == "system"
        assert content.startswith("Agent failed: ")
        types = event_types(seen)
        assert "agent.failed" in types
        assert "agent.progress" not in types

    def test_existing_workspace_is_kept(self, build, db, ticket):
        orch, _ = build(COMPLETES)
        orch.workspaces.create(ticket.id)
        drain(orch, ticket.id)

        assert get_latest_agent_run(db, ticket.id).status == "FAILED"
        assert orch.workspaces.path_for(ticket.id).exists()

    def test_spawn_failure_fails_job_and_removes_workspace(self, build, db, git_repo, ticket):
        orch, _ = build(None)
        drain(orch, ticket.id)

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "FAILED"
        assert "Could not launch" in run.summary
        assert not orch.workspaces.path_for(ticket.id).exists()
        assert not branch_exists(git_repo, f"ticket/{ticket.id}")
        assert messages(db, ticket.id)[-1][1].startswith("Agent failed: Could not launch")

    def test_crash_is_reported_and_loop_continues(self, build, db, ticket, stub_log):
        orch, _ = build("""
            if CALL == 1:
                print("boom", file=sys.stderr)
                sys.exit(3)
            say("TASK_COMPLETE")
        """)
        drain(orch, ticket.id)

        assert ("system", "Worker exited with code 3 in iteration 1: boom") in messages(db, ticket.id)
        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "COMPLETED"
        assert run.iteration_count == 2

    def test_timeout_is_reported_and_loop_continues(self, build, db, ticket):
        orch, _ = build(SLEEPS, iteration_timeout=0.5, max_iterations=1)
        drain(orch, ticket.id)

        assert ("system", "Error in iteration 1: Iteration timed out after 0.5 seconds") in messages(db, ticket.id)
        assert get_latest_agent_run(db, ticket.id).status == "BLOCKED"

    def test_kill_fails_job_and_removes_workspace(self, build, db, ticket):
        orch, seen = build(SLEEPS)

        async def scenario():
            orch.enqueue(ticket.id)
            await wait_for_process(orch)
            await orch.kill_agent(ticket.id)
            await orch.join()

        asyncio.run(scenario())

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "FAILED"
        assert run.summary == "Agent killed by user"
        assert get_ticket(db, ticket.id).column_id == "blocked"
        assert not orch.workspaces.path_for(ticket.id).exists()
        assert [e.type for e in seen].count("agent.failed") == 1
        assert orch.current_job is None

    def test_kill_during_workspace_setup_removes_workspace(self, build, db, git_repo, ticket, stub_log):
        orch, seen = build(COMPLETES)
        create = orch.workspaces.create

        def slow_create(*args):
            time.sleep(0.5)
            return create(*args)

        orch.workspaces.create = slow_create

        async def scenario():
            orch.enqueue(ticket.id)
            while orch.current_job is None:
                await asyncio.sleep(0.01)
            assert orch.current_job.status == "starting"
            await orch.kill_agent(ticket.id)
            await orch.join()

        asyncio.run(scenario())

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "FAILED"
        assert run.summary == "Agent killed by user"
        assert not orch.workspaces.path_for(ticket.id).exists()
        assert not branch_exists(git_repo, f"ticket/{ticket.id}")
        assert orch.workspaces.list() == []
        assert calls(stub_log) == []
        assert messages(db, ticket.id) == [("system", "Agent failed: Agent killed by user")]
        assert [e.type for e in seen].count("agent.failed") == 1

    def test_kill_without_active_job(self, build, ticket):
        orch, _ = build(COMPLETES)
        with pytest.raises(NoActiveJob, match="No active agent found"):
            asyncio.run(orch.kill_agent(ticket.id))

    def test_shutdown_interrupts_but_keeps_workspace(self, build, db, ticket):
        orch, _ = build(SLEEPS)

        async def scenario():
            orch.enqueue(ticket.id)
            await wait_for_process(orch)
            await orch.shutdown()

        asyncio.run(scenario())

        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "FAILED"
        assert run.summary == "Interrupted by shutdown"
        assert orch.workspaces.path_for(ticket.id).exists()


class TestIterationBudget:
    def test_budget_exhaustion_blocks(self, build, db, ticket, stub_log):
        orch, seen = build(NEVER_DONE, max_iterations=3)
        drain(orch, ticket.id)

        assert len(calls(stub_log)) == 3
        run = get_latest_agent_run(db, ticket.id)
        assert run.status == "BLOCKED"
        assert run.iteration_count == 3

        question = "Reached maximum iterations (3). Please review progress and provide guidance."
        assert messages(db, ticket.id)[-1] == ("agent", question)
        assert get_ticket(db, ticket.id).column_id == "blocked"
        assert orch.workspaces.get(ticket.id).locked is True
        assert [e.payload["question"] for e in seen if e.type == "agent.blocked"] == [question]

    def test_turn_limit_is_not_a_crash(self, build, db, ticket):
        orch, _ = build("""
            say("Partway there")
            emit("result", subtype="error_max_turns", is_error=True, session_id="sess-1")
            sys.exit(1)
        """, max_iterations=1)
        drain(orch, ticket.id)

        contents = [content for _, content in messages(db, ticket.id)]
        assert not any(c.startswith("Worker exited") for c in contents)


class TestClassifyExit:
    def test_clean_exit(self):
        assert classify_exit(0, []) == "ok"

    def test_signal(self):
        assert classify_exit(-9, []) == "killed"

    def test_turn_limit(self):
        assert classify_exit(1, [ResultRecord(text="", subtype="error_max_turns")]) == "turn_limit"

    def test_other_non_zero(self):
        assert classify_exit(2, [ResultRecord(text="", subtype="error_during_execution")]) == "crashed"
        assert classify_exit(1, []) == "crashed"


class TestQueue:
    def test_enqueue_is_idempotent(self, build, ticket):
        orch, _ = build(COMPLETES)
        assert orch.enqueue(ticket.id) is True
        assert orch.enqueue(ticket.id) is False
        assert orch.queue == [ticket.id]

    def test_dequeue(self, build, db):
        orch, _ = build(COMPLETES)
        a = create_ticket(db, "First")
        b = create_ticket(db, "Second")
        orch.enqueue(a.id)
        orch.enqueue(b.id)
        assert orch.dequeue(b.id) is True
        assert orch.dequeue(b.id) is False
        assert orch.queue == [a.id]

    def test_processing_ticket_cannot_be_requeued(self, build, ticket):
        orch, seen = build(COMPLETES)
        observed = []

        def on_start(event):
            if event.type == "agent.started":
                observed.append((orch.enqueue(ticket.id), orch.queue, orch.get_status()["processing"]))

        orch.events.subscribe(on_start)
        drain(orch, ticket.id)
        assert observed == [(False, [], ticket.id)]

    def test_tickets_run_one_at_a_time_in_order(self, build, db, stub_log):
        orch, seen = build(COMPLETES)
        a = create_ticket(db, "First")
        b = create_ticket(db, "Second")
        drain(orch, a.id, b.id)

        order = [(e.type, e.ticket_id) for e in seen if e.type in ("agent.started", "agent.completed")]
        assert order == [
            ("agent.started", a.id),
            ("agent.completed", a.id),
            ("agent.started", b.id),
            ("agent.completed", b.id),
        ]
        assert [c["cwd"] for c in calls(stub_log)] == [
            str(orch.workspaces.path_for(a.id)),
            str(orch.workspaces.path_for(b.id)),
        ]

    def test_blocked_ticket_does_not_hold_up_queue(self, build, db):
        orch, _ = build("""
            if "Blocker" in PROMPT:
                say("NEED_HUMAN_INPUT: Which API version?")
            else:
                say("TASK_COMPLETE")
        """)
        a = create_ticket(db, "Blocker", prd="Blocker work")
        b = create_ticket(db, "Easy", prd="Easy work")
        drain(orch, a.id, b.id)

        assert get_latest_agent_run(db, a.id).status == "BLOCKED"
        assert get_latest_agent_run(db, b.id).status == "COMPLETED"
        assert orch.queue == []

    def test_unknown_ticket_is_skipped(self, build, db, ticket):
        orch, _ = build(COMPLETES)
        drain(orch, "no-such-ticket", ticket.id)
        assert list_agent_runs(db, ticket_id="no-such-ticket") == []
        assert get_latest_agent_run(db, ticket.id).status == "COMPLETED"

    def test_status_is_a_plain_projection(self, build, ticket):
        orch, _ = build("""
            say("NEED_HUMAN_INPUT: Which database?")
        """)
        drain(orch, ticket.id)

        status = orch.get_status()
        json.dumps(status)
        assert status["queue"] == []
        assert status["current_job"] is None
        assert status["blocked"][0]["ticket_id"] == ticket.id
        assert status["blocked"][0]["status"] == "blocked"
        assert status["blocked"][0]["pid"] is None
