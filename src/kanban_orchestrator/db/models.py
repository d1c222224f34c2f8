"""Data models for the kanban orchestrator."""

from dataclasses import dataclass
from datetime import datetime

COLUMNS = ("backlog", "prd-review", "in-progress", "blocked", "review", "done")
SENDER_TYPES = ("human", "agent", "system")


@dataclass
class Ticket:
    id: str
    title: str
    description: str = ""
    column_id: str = "backlog"
    priority: str = "medium"
    session_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PRD:
    ticket_id: str
    content: str = ""
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Message:
    id: int | None = None
    ticket_id: str = ""
    sender_type: str = "system"
    content: str = ""
    created_at: datetime | None = None


@dataclass
class TicketEvent:
    id: int | None = None
    ticket_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentRun:
    id: int | None = None
    ticket_id: str = ""
    status: str = "IDLE"
    worktree_path: str | None = None
    session_id: str | None = None
    iteration_count: int = 0
    max_iterations: int = 50
    exit_code: int | None = None
    summary: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Workspace:
    path: str
    branch: str
    head: str = ""
    locked: bool = False
    ticket_id: str | None = None
