"""CLI entry point for the kanban orchestrator."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from kanban_orchestrator.config import get_config
from kanban_orchestrator.core import agents as agents_mod
from kanban_orchestrator.core import tickets as tickets_mod
from kanban_orchestrator.core.errors import OrchestratorError
from kanban_orchestrator.core.events import EventBus
from kanban_orchestrator.core.orchestrator import Orchestrator
from kanban_orchestrator.core.workspaces import WorkspaceManager
from kanban_orchestrator.db.engine import get_db
from kanban_orchestrator.db.models import COLUMNS
from kanban_orchestrator.integrations import slack as slack_mod
from kanban_orchestrator.integrations.git import GitError


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _get_workspaces() -> WorkspaceManager:
    config = get_config()
    return WorkspaceManager(config.repo_path, config.worktrees_path, remote=config.git_remote)


def _fail(message):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
def main():
    """ko - Kanban Orchestrator CLI"""
    pass


# ── Server ────────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve(host, port):
    """Run the HTTP/WebSocket API with the agent queue."""
    from kanban_orchestrator.web.app import run_server

    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Serving on http://{host}:{port} (repo: {config.repo_path})")
    run_server(host=host, port=port, config=config)


# ── Ticket Commands ───────────────────────────────────────────────────────────


@main.group("ticket")
def ticket_group():
    """Manage tickets."""
    pass


@ticket_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Ticket description")
@click.option("--prd-file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Markdown file with the requirements document")
@click.option("--priority", "-p", default="medium", help="Priority label")
def ticket_add(title, description, prd_file, priority):
    """Create a new ticket."""
    prd = Path(prd_file).read_text() if prd_file else None
    with _get_db() as db:
        ticket = tickets_mod.create_ticket(db, title, description, prd=prd, priority=priority)
        click.echo(f"Created ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  Column: {ticket.column_id}")
        if prd is not None:
            click.echo(f"  PRD: {len(prd.splitlines())} lines")


@ticket_group.command("list")
@click.option("--column", type=click.Choice(COLUMNS), default=None, help="Filter by column")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ticket_list(column, json_output):
    """List tickets."""
    with _get_db() as db:
        tickets = tickets_mod.list_tickets(db, column_id=column)

        if json_output:
            click.echo(json.dumps([_ticket_dict(t) for t in tickets], indent=2))
            return

        if not tickets:
            click.echo("No tickets found.")
            return

        column_icons = {
            "backlog": "○",
            "prd-review": "◐",
            "in-progress": "●",
            "blocked": "✗",
            "review": "◎",
            "done": "✓",
        }
        for ticket in tickets:
            icon = column_icons.get(ticket.column_id, "?")
            click.echo(f"  {icon} {ticket.id}: {ticket.title} ({ticket.column_id})")


@ticket_group.command("show")
@click.argument("ticket_id")
def ticket_show(ticket_id):
    """Show ticket details, chat and history."""
    with _get_db() as db:
        ticket = tickets_mod.get_ticket(db, ticket_id)
        if not ticket:
            click.echo(f"Ticket not found: {ticket_id}", err=True)
            sys.exit(1)

        click.echo(f"Ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  Column: {ticket.column_id}")
        click.echo(f"  Priority: {ticket.priority}")
        if ticket.description:
            click.echo(f"  Description: {ticket.description}")
        if ticket.session_id:
            click.echo(f"  Session: {ticket.session_id}")
        prd = tickets_mod.get_prd(db, ticket_id)
        if prd:
            click.echo(f"  PRD: v{prd.version}, {len(prd.content.splitlines())} lines")

        messages = tickets_mod.list_messages(db, ticket_id)
        if messages:
            click.echo(f"  Messages:")
            for m in messages:
                click.echo(f"    [{m.sender_type}] {m.content}")

        events = tickets_mod.get_ticket_events(db, ticket_id)
        if events:
            click.echo(f"  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@ticket_group.command("move")
@click.argument("ticket_id")
@click.argument("column", type=click.Choice(COLUMNS))
def ticket_move(ticket_id, column):
    """Move a ticket to another column."""
    with _get_db() as db:
        ticket = tickets_mod.update_ticket_column(db, ticket_id, column)
        if not ticket:
            click.echo(f"Ticket not found: {ticket_id}", err=True)
            sys.exit(1)
        click.echo(f"Moved {ticket_id} to {ticket.column_id}")


@ticket_group.command("prd")
@click.argument("ticket_id")
@click.argument("prd_file", type=click.Path(exists=True, dir_okay=False))
def ticket_prd(ticket_id, prd_file):
    """Set a ticket's requirements document from a file."""
    with _get_db() as db:
        try:
            prd = tickets_mod.set_prd(db, ticket_id, Path(prd_file).read_text())
        except ValueError as e:
            _fail(e)
        click.echo(f"PRD for {ticket_id} is now version {prd.version}")


# ── Workspace Commands ────────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage ticket worktrees."""
    pass


@workspace_group.command("list")
def workspace_list():
    """List ticket worktrees."""
    try:
        workspaces = _get_workspaces().list()
    except GitError as e:
        _fail(e)
    if not workspaces:
        click.echo("No workspaces found.")
        return
    for ws in workspaces:
        lock = " [locked]" if ws.locked else ""
        click.echo(f"  {ws.ticket_id}: {ws.branch} at {ws.path}{lock}")


@workspace_group.command("remove")
@click.argument("ticket_id")
@click.option("--force", is_flag=True, help="Discard uncommitted changes and unmerged branch")
def workspace_remove(ticket_id, force):
    """Remove a ticket's worktree and branch."""
    try:
        _get_workspaces().remove(ticket_id, force=force)
    except (GitError, OrchestratorError) as e:
        _fail(e)
    click.echo(f"Removed workspace for {ticket_id}")


@workspace_group.command("run", context_settings={"ignore_unknown_options": True})
@click.argument("ticket_id")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def workspace_run(ticket_id, command):
    """Run a command inside a ticket's worktree."""
    try:
        result = _get_workspaces().run_in_workspace(ticket_id, list(command))
    except OrchestratorError as e:
        _fail(e)
    if result.stdout:
        click.echo(result.stdout, nl=False)
    if result.stderr:
        click.echo(result.stderr, nl=False, err=True)
    sys.exit(result.returncode)


@workspace_group.command("commit")
@click.argument("ticket_id")
@click.option("--message", "-m", required=True, help="Commit message")
def workspace_commit(ticket_id, message):
    """Commit all changes in a ticket's worktree."""
    try:
        sha = _get_workspaces().commit(ticket_id, message)
    except (GitError, OrchestratorError) as e:
        _fail(e)
    click.echo(f"Committed {sha[:10]} on ticket/{ticket_id}")


@workspace_group.command("push")
@click.argument("ticket_id")
def workspace_push(ticket_id):
    """Push a ticket's branch to the remote."""
    try:
        _get_workspaces().push(ticket_id)
    except (GitError, OrchestratorError) as e:
        _fail(e)
    click.echo(f"Pushed ticket/{ticket_id}")


@workspace_group.command("status")
@click.argument("ticket_id")
def workspace_status(ticket_id):
    """Show git status of a ticket's worktree."""
    try:
        status = _get_workspaces().status(ticket_id)
    except (GitError, OrchestratorError) as e:
        _fail(e)
    click.echo(status or "Clean")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Run and inspect coding agents."""
    pass


@agent_group.command("run")
@click.argument("ticket_id")
def agent_run(ticket_id):
    """Run the agent loop for a ticket in the foreground."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with _get_db() as db:
        ticket = tickets_mod.get_ticket(db, ticket_id)
        if not ticket:
            click.echo(f"Ticket not found: {ticket_id}", err=True)
            sys.exit(1)

        events = EventBus()
        events.subscribe(_echo_event, ticket_id=ticket_id)
        orchestrator = Orchestrator(db, config, _get_workspaces(), events)
        slack_mod.SlackNotifier(config.slack_bot_token, config.slack_channel, background=False).attach(events)

        async def run():
            orchestrator.move_ticket(ticket_id, "in-progress")
            orchestrator.enqueue(ticket_id)
            await orchestrator.join()

        try:
            asyncio.run(run())
        except KeyboardInterrupt:
            click.echo("Interrupted.", err=True)
            sys.exit(130)

        run_record = agents_mod.get_latest_agent_run(db, ticket_id)
        ticket = tickets_mod.get_ticket(db, ticket_id)
        click.echo(f"Agent run #{run_record.id}: {run_record.status} after {run_record.iteration_count} iterations")
        click.echo(f"  Ticket column: {ticket.column_id}")
        if run_record.summary and run_record.status != "COMPLETED":
            click.echo(f"  {run_record.summary}")
        if run_record.status == "FAILED":
            sys.exit(1)


def _echo_event(event):
    if event.type == "agent.output":
        click.echo(f"[{event.payload.get('type')}] {event.payload.get('content')}")
    elif event.type == "agent.progress":
        click.echo(f"--- iteration {event.payload['iteration']}/{event.payload['max_iterations']} ---")


@agent_group.command("runs")
@click.option("--status", default=None, help="Filter: running, blocked, completed, failed")
@click.option("--ticket", default=None, help="Filter by ticket")
def agent_runs(status, ticket):
    """List agent runs."""
    with _get_db() as db:
        runs = agents_mod.list_agent_runs(db, status=status, ticket_id=ticket)
        if not runs:
            click.echo("No agent runs found.")
            return
        for run in runs:
            click.echo(
                f"  #{run.id} [{run.status}] ticket={run.ticket_id} "
                f"iterations={run.iteration_count}/{run.max_iterations}"
            )


@agent_group.command("status")
@click.argument("ticket_id")
def agent_status_cmd(ticket_id):
    """Show the latest agent run for a ticket."""
    with _get_db() as db:
        run = agents_mod.get_latest_agent_run(db, ticket_id)
        if not run:
            click.echo(f"No agent runs found for ticket: {ticket_id}")
            return

        click.echo(f"Agent run #{run.id} for ticket '{run.ticket_id}'")
        click.echo(f"  Status: {run.status}")
        click.echo(f"  Iterations: {run.iteration_count}/{run.max_iterations}")
        if run.worktree_path:
            click.echo(f"  Worktree: {run.worktree_path}")
        if run.session_id:
            click.echo(f"  Session: {run.session_id}")
        if run.started_at:
            click.echo(f"  Started: {run.started_at}")
        if run.completed_at:
            click.echo(f"  Completed: {run.completed_at}")
        if run.summary:
            click.echo(f"  Summary: {run.summary}")


# ── Slack Commands ────────────────────────────────────────────────────────────


@main.group("slack")
def slack_group():
    """Slack integration commands."""
    pass


@slack_group.command("send")
@click.argument("channel")
@click.argument("message")
def slack_send(channel, message):
    """Send a message to a Slack channel."""
    config = get_config()
    try:
        result = slack_mod.send_message(config.slack_bot_token, channel, message)
        click.echo(f"Message sent to {result.channel} (ts: {result.ts})")
    except slack_mod.SlackError as e:
        _fail(e)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _ticket_dict(ticket) -> dict:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "column": ticket.column_id,
        "priority": ticket.priority,
        "description": ticket.description,
        "session_id": ticket.session_id,
    }


if __name__ == "__main__":
    main()
