"""Ticket, PRD and chat message operations."""

import re
import sqlite3
from datetime import datetime

from kanban_orchestrator.db.models import COLUMNS, PRD, SENDER_TYPES, Message, Ticket, TicketEvent


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique ticket ID from a slug, appending a number if needed."""
    existing = db.execute(
        "SELECT id FROM tickets WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tickets WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_ticket(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    prd: str | None = None,
    priority: str = "medium",
    column_id: str = "backlog",
) -> Ticket:
    """Create a new ticket, optionally with its PRD."""
    if column_id not in COLUMNS:
        raise ValueError(f"Unknown column: {column_id}")
    ticket_id = _unique_id(db, slugify(title) or "ticket")

    db.execute(
        """INSERT INTO tickets (id, title, description, column_id, priority)
           VALUES (?, ?, ?, ?, ?)""",
        (ticket_id, title, description, column_id, priority),
    )
    if prd is not None:
        db.execute(
            "INSERT INTO prds (ticket_id, content) VALUES (?, ?)",
            (ticket_id, prd),
        )

    _log_event(db, ticket_id, "created", None, column_id)
    db.commit()
    return get_ticket(db, ticket_id)


def get_ticket(db: sqlite3.Connection, ticket_id: str) -> Ticket | None:
    """Get a ticket by ID."""
    row = db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
    if not row:
        return None
    return _row_to_ticket(row)


def list_tickets(
    db: sqlite3.Connection,
    column_id: str | None = None,
) -> list[Ticket]:
    """List tickets, optionally filtered by column."""
    query = "SELECT * FROM tickets"
    params: list = []
    if column_id:
        query += " WHERE column_id = ?"
        params.append(column_id)
    query += " ORDER BY created_at ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_ticket(r) for r in rows]


def update_ticket_column(
    db: sqlite3.Connection,
    ticket_id: str,
    column_id: str,
) -> Ticket | None:
    """Move a ticket to another column. Returns the updated ticket."""
    if column_id not in COLUMNS:
        raise ValueError(f"Unknown column: {column_id}")
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        return None

    db.execute(
        "UPDATE tickets SET column_id = ?, updated_at = datetime('now') WHERE id = ?",
        (column_id, ticket_id),
    )
    _log_event(db, ticket_id, "column_changed", ticket.column_id, column_id)
    db.commit()
    return get_ticket(db, ticket_id)


def set_session_id(
    db: sqlite3.Connection,
    ticket_id: str,
    session_id: str | None,
) -> Ticket | None:
    """Remember the worker conversation id so later runs can resume it."""
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        return None
    if ticket.session_id == session_id:
        return ticket
    db.execute(
        "UPDATE tickets SET session_id = ?, updated_at = datetime('now') WHERE id = ?",
        (session_id, ticket_id),
    )
    _log_event(db, ticket_id, "session_changed", ticket.session_id, session_id)
    db.commit()
    return get_ticket(db, ticket_id)


# ── PRDs ──────────────────────────────────────────────────────────────────────


def set_prd(db: sqlite3.Connection, ticket_id: str, content: str) -> PRD:
    """Create or replace a ticket's PRD, bumping its version."""
    if not get_ticket(db, ticket_id):
        raise ValueError(f"Ticket not found: {ticket_id}")
    existing = get_prd(db, ticket_id)
    if existing:
        db.execute(
            """UPDATE prds SET content = ?, version = version + 1, updated_at = datetime('now')
               WHERE ticket_id = ?""",
            (content, ticket_id),
        )
    else:
        db.execute(
            "INSERT INTO prds (ticket_id, content) VALUES (?, ?)",
            (ticket_id, content),
        )
    _log_event(db, ticket_id, "prd_updated", None, None)
    db.commit()
    return get_prd(db, ticket_id)


def get_prd(db: sqlite3.Connection, ticket_id: str) -> PRD | None:
    row = db.execute("SELECT * FROM prds WHERE ticket_id = ?", (ticket_id,)).fetchone()
    if not row:
        return None
    return PRD(
        ticket_id=row["ticket_id"],
        content=row["content"],
        version=row["version"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def get_requirements(db: sqlite3.Connection, ticket_id: str) -> str | None:
    """Requirements text handed to the agent.

    The PRD content when one exists, otherwise the ticket title and
    description. None if the ticket does not exist.
    """
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        return None
    prd = get_prd(db, ticket_id)
    if prd and prd.content.strip():
        return prd.content
    return f"# {ticket.title}\n\n{ticket.description or 'No description provided'}"


# ── Messages ──────────────────────────────────────────────────────────────────


def add_message(
    db: sqlite3.Connection,
    ticket_id: str,
    sender_type: str,
    content: str,
) -> Message:
    """Append a chat message to a ticket."""
    if sender_type not in SENDER_TYPES:
        raise ValueError(f"Unknown sender type: {sender_type}")
    cursor = db.execute(
        "INSERT INTO messages (ticket_id, sender_type, content) VALUES (?, ?, ?)",
        (ticket_id, sender_type, content),
    )
    db.commit()
    row = db.execute("SELECT * FROM messages WHERE id = ?", (cursor.lastrowid,)).fetchone()
    return _row_to_message(row)


def list_messages(db: sqlite3.Connection, ticket_id: str) -> list[Message]:
    """Get a ticket's chat history, oldest first."""
    rows = db.execute(
        "SELECT * FROM messages WHERE ticket_id = ? ORDER BY id",
        (ticket_id,),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


# ── History ───────────────────────────────────────────────────────────────────


def get_ticket_events(db: sqlite3.Connection, ticket_id: str) -> list[TicketEvent]:
    """Get the event history for a ticket."""
    rows = db.execute(
        "SELECT * FROM ticket_events WHERE ticket_id = ? ORDER BY id",
        (ticket_id,),
    ).fetchall()
    return [
        TicketEvent(
            id=r["id"],
            ticket_id=r["ticket_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def log_event(
    db: sqlite3.Connection,
    ticket_id: str,
    event_type: str,
    old_value: str | None = None,
    new_value: str | None = None,
):
    """Record a history entry and commit."""
    _log_event(db, ticket_id, event_type, old_value, new_value)
    db.commit()


def _log_event(
    db: sqlite3.Connection,
    ticket_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO ticket_events (ticket_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (ticket_id, event_type, old_value, new_value),
    )


def _row_to_ticket(row: sqlite3.Row) -> Ticket:
    return Ticket(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        column_id=row["column_id"],
        priority=row["priority"],
        session_id=row["session_id"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        ticket_id=row["ticket_id"],
        sender_type=row["sender_type"],
        content=row["content"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
