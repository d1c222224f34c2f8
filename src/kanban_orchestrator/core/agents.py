"""Persistent agent run records."""

import sqlite3
from datetime import datetime

from kanban_orchestrator.core.tickets import log_event
from kanban_orchestrator.db.models import AgentRun

RUN_STATUSES = ("IDLE", "STARTING", "RUNNING", "BLOCKED", "COMPLETED", "FAILED")
_FINISHED = ("COMPLETED", "FAILED")


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_agent_run(row: sqlite3.Row) -> AgentRun:
    return AgentRun(
        id=row["id"],
        ticket_id=row["ticket_id"],
        status=row["status"],
        worktree_path=row["worktree_path"],
        session_id=row["session_id"],
        iteration_count=row["iteration_count"] or 0,
        max_iterations=row["max_iterations"],
        exit_code=row["exit_code"],
        summary=row["summary"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def create_agent_run(
    db: sqlite3.Connection,
    ticket_id: str,
    max_iterations: int,
    session_id: str | None = None,
) -> AgentRun:
    """Record a new agent run in STARTING state."""
    cursor = db.execute(
        """INSERT INTO agent_runs (ticket_id, status, iteration_count, max_iterations, session_id)
           VALUES (?, 'STARTING', 0, ?, ?)""",
        (ticket_id, max_iterations, session_id),
    )
    log_event(db, ticket_id, "agent_started", None, f"run {cursor.lastrowid}")
    return get_agent_run(db, cursor.lastrowid)


def update_agent_run(
    db: sqlite3.Connection,
    run_id: int,
    status: str | None = None,
    **fields,
) -> AgentRun | None:
    """Update an agent run's status and any of its columns."""
    allowed = {"worktree_path", "session_id", "iteration_count", "exit_code", "summary"}
    updates = {k: v for k, v in fields.items() if k in allowed}
    if status is not None:
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown agent status: {status}")
        updates["status"] = status
    if not updates:
        return get_agent_run(db, run_id)

    set_parts = [f"{k} = ?" for k in updates]
    if status in _FINISHED:
        set_parts.append("completed_at = datetime('now')")
    values = list(updates.values()) + [run_id]
    db.execute(
        f"UPDATE agent_runs SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    db.commit()
    return get_agent_run(db, run_id)


def get_agent_run(db: sqlite3.Connection, run_id: int) -> AgentRun | None:
    """Get an agent run by its ID."""
    row = db.execute(
        "SELECT * FROM agent_runs WHERE id = ?", (run_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_agent_run(row)


def get_latest_agent_run(db: sqlite3.Connection, ticket_id: str) -> AgentRun | None:
    """Get the most recent agent run for a ticket."""
    row = db.execute(
        "SELECT * FROM agent_runs WHERE ticket_id = ? ORDER BY id DESC LIMIT 1",
        (ticket_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_agent_run(row)


def list_agent_runs(
    db: sqlite3.Connection,
    status: str | None = None,
    ticket_id: str | None = None,
) -> list[AgentRun]:
    """List agent runs, newest first, optionally filtered."""
    query = "SELECT * FROM agent_runs WHERE 1=1"
    params: list = []
    if status:
        query += " AND status = ?"
        params.append(status.upper())
    if ticket_id:
        query += " AND ticket_id = ?"
        params.append(ticket_id)
    query += " ORDER BY id DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent_run(r) for r in rows]
