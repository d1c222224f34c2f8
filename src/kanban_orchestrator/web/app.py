"""HTTP and WebSocket API for the kanban orchestrator."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from kanban_orchestrator.config import Config, get_config
from kanban_orchestrator.core import agents as agents_mod
from kanban_orchestrator.core import tickets as tickets_mod
from kanban_orchestrator.core.errors import (
    NoActiveJob,
    SpawnFailure,
    TicketNotFound,
    WorkspaceNotFound,
)
from kanban_orchestrator.core.events import TICKET_SCOPED, Event, EventBus
from kanban_orchestrator.core.orchestrator import Orchestrator
from kanban_orchestrator.core.sessions import SessionRegistry
from kanban_orchestrator.core.workspaces import WorkspaceManager
from kanban_orchestrator.db.engine import init_db
from kanban_orchestrator.integrations.git import GitError
from kanban_orchestrator.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 1000


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _require_ticket(request: Request, ticket_id: str):
    ticket = tickets_mod.get_ticket(request.app.state.db, ticket_id)
    if not ticket:
        raise TicketNotFound(f"Ticket not found: {ticket_id}")
    return ticket


# ── Handlers ──────────────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"status": "ok", "queue": len(request.app.state.orchestrator.queue)})


async def api_list_tickets(request: Request):
    column = request.query_params.get("column")
    tickets = tickets_mod.list_tickets(request.app.state.db, column_id=column)
    return JSONResponse([_ticket_dict(t) for t in tickets])


async def api_get_ticket(request: Request):
    db = request.app.state.db
    ticket = _require_ticket(request, request.path_params["ticket_id"])
    td = _ticket_dict(ticket)
    prd = tickets_mod.get_prd(db, ticket.id)
    td["prd"] = prd.content if prd else None
    td["messages"] = [_message_dict(m) for m in tickets_mod.list_messages(db, ticket.id)]
    td["events"] = [_event_dict(e) for e in tickets_mod.get_ticket_events(db, ticket.id)]
    latest = agents_mod.get_latest_agent_run(db, ticket.id)
    td["agent"] = _run_dict(latest) if latest else None
    return JSONResponse(td)


async def api_list_agents(request: Request):
    status_filter = request.query_params.get("status")
    runs = agents_mod.list_agent_runs(request.app.state.db, status=status_filter)
    return JSONResponse([_run_dict(r) for r in runs])


async def api_agent_status(request: Request):
    return JSONResponse(request.app.state.orchestrator.get_status())


async def api_start_agent(request: Request):
    ticket = _require_ticket(request, request.path_params["ticket_id"])
    orchestrator = request.app.state.orchestrator
    orchestrator.move_ticket(ticket.id, "in-progress")
    queued = orchestrator.enqueue(ticket.id)
    return JSONResponse({
        "message": "Agent queued" if queued else "Agent already queued",
        "ticket_id": ticket.id,
        "queued": queued,
    })


async def api_resume_agent(request: Request):
    ticket_id = request.path_params["ticket_id"]
    body = await _json_body(request)
    response = body.get("response")
    if not response or not isinstance(response, str):
        return JSONResponse({"error": "Response is required"}, status_code=400)
    await request.app.state.orchestrator.resume_agent(ticket_id, response)
    return JSONResponse({"message": "Agent resumed", "ticket_id": ticket_id})


async def api_kill_agent(request: Request):
    ticket_id = request.path_params["ticket_id"]
    await request.app.state.orchestrator.kill_agent(ticket_id)
    return JSONResponse({"message": "Agent killed", "ticket_id": ticket_id})


async def api_list_worktrees(request: Request):
    workspaces = await asyncio.to_thread(request.app.state.workspaces.list)
    return JSONResponse([_workspace_dict(w) for w in workspaces])


async def api_remove_worktree(request: Request):
    ticket_id = request.path_params["ticket_id"]
    force = request.query_params.get("force", "").lower() in ("1", "true", "yes")
    manager = request.app.state.workspaces
    if not manager.path_for(ticket_id).exists():
        raise WorkspaceNotFound(f"Workspace not found for ticket {ticket_id}")
    await asyncio.to_thread(manager.remove, ticket_id, force)
    return JSONResponse({"message": "Worktree removed", "ticket_id": ticket_id})


async def api_start_terminal(request: Request):
    ticket = _require_ticket(request, request.path_params["ticket_id"])
    sessions = request.app.state.sessions
    try:
        await sessions.start(ticket.id, resume_token=ticket.session_id)
    except SpawnFailure as e:
        return JSONResponse({"error": str(e)}, status_code=500)
    return JSONResponse({"ticket_id": ticket.id, **sessions.status(ticket.id)})


async def api_terminal_status(request: Request):
    ticket_id = request.path_params["ticket_id"]
    return JSONResponse({"ticket_id": ticket_id, **request.app.state.sessions.status(ticket_id)})


async def api_chat(request: Request):
    """Record a human message and type it into the ticket's terminal."""
    ticket = _require_ticket(request, request.path_params["ticket_id"])
    body = await _json_body(request)
    content = body.get("content")
    if not content or not isinstance(content, str):
        return JSONResponse({"error": "Content is required"}, status_code=400)

    state = request.app.state
    message = tickets_mod.add_message(state.db, ticket.id, "human", content)
    state.events.publish(
        "message.created",
        {"ticket_id": ticket.id, "message_id": message.id, "content": content, "sender_type": "human"},
        ticket_id=ticket.id,
    )

    sent = False
    try:
        await state.sessions.start(ticket.id, resume_token=ticket.session_id)
        sent = await state.sessions.send(ticket.id, content + "\n")
    except SpawnFailure as e:
        logger.warning("Chat for ticket %s not delivered: %s", ticket.id, e)

    return JSONResponse({"message": _message_dict(message), "sent": sent})


# ── WebSockets ────────────────────────────────────────────────────────────────


async def ws_events(websocket: WebSocket):
    """Lifecycle events. Ticket-scoped events need a ``subscribe`` first."""
    await websocket.accept()
    bus: EventBus = websocket.app.state.events
    outbox: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
    subscriptions: set[str] = set()

    def on_event(event: Event):
        if event.type in TICKET_SCOPED and event.ticket_id not in subscriptions:
            return
        try:
            outbox.put_nowait(event.to_dict())
        except asyncio.QueueFull:
            logger.warning("Event client lagging, dropped %s", event.type)

    bus.subscribe(on_event)
    sender = asyncio.create_task(_send_json(websocket, outbox))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON event socket message")
                continue
            if not isinstance(msg, dict):
                continue
            kind = msg.get("type")
            ticket_id = msg.get("ticket_id")
            if kind == "subscribe" and ticket_id:
                subscriptions.add(ticket_id)
            elif kind == "unsubscribe" and ticket_id:
                subscriptions.discard(ticket_id)
            elif kind == "ping":
                if not outbox.full():
                    outbox.put_nowait({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(on_event)
        await _stop_writer(sender)


async def _stop_writer(task: asyncio.Task):
    """Cancel a socket writer task and collect its outcome."""
    task.cancel()
    for result in await asyncio.gather(task, return_exceptions=True):
        if isinstance(result, Exception):
            logger.debug("Socket writer ended with %r", result)


async def _send_json(websocket: WebSocket, outbox: asyncio.Queue):
    while True:
        item = await outbox.get()
        await websocket.send_json(item)


async def ws_terminal(websocket: WebSocket):
    """Live terminal: buffered replay, then output as it arrives."""
    ticket_id = websocket.path_params["ticket_id"]
    state = websocket.app.state
    ticket = tickets_mod.get_ticket(state.db, ticket_id)
    await websocket.accept()
    if not ticket:
        await websocket.close(code=4404)
        return

    sessions: SessionRegistry = state.sessions
    observer = sessions.attach(ticket_id)
    try:
        await sessions.start(ticket_id, resume_token=ticket.session_id)
    except SpawnFailure as e:
        await websocket.send_text(f"\r\n[Failed to start terminal: {e}]\r\n")

    forwarder = asyncio.create_task(_forward_output(websocket, observer))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                msg = None
            if isinstance(msg, dict) and msg.get("type") == "input":
                await sessions.send(ticket_id, str(msg.get("data", "")))
            elif isinstance(msg, dict) and msg.get("type") == "resize":
                try:
                    sessions.resize(ticket_id, int(msg["cols"]), int(msg["rows"]))
                except (KeyError, TypeError, ValueError, OSError) as e:
                    logger.debug("Ignoring bad resize for ticket %s: %s", ticket_id, e)
            else:
                await sessions.send(ticket_id, raw)
    except WebSocketDisconnect:
        pass
    finally:
        sessions.detach(ticket_id, observer)
        await _stop_writer(forwarder)


async def _forward_output(websocket: WebSocket, observer):
    while True:
        data = await observer.get()
        if data is None:
            await websocket.close(code=1013)
            return
        await websocket.send_text(data)


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt):
    return dt.isoformat() if dt else None


def _ticket_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "column_id": t.column_id,
        "priority": t.priority,
        "session_id": t.session_id,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def _message_dict(m) -> dict:
    return {
        "id": m.id,
        "ticket_id": m.ticket_id,
        "sender_type": m.sender_type,
        "content": m.content,
        "created_at": _iso(m.created_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def _run_dict(r) -> dict:
    return {
        "id": r.id,
        "ticket_id": r.ticket_id,
        "status": r.status,
        "worktree_path": r.worktree_path,
        "session_id": r.session_id,
        "iteration_count": r.iteration_count,
        "max_iterations": r.max_iterations,
        "exit_code": r.exit_code,
        "summary": r.summary,
        "started_at": _iso(r.started_at),
        "completed_at": _iso(r.completed_at),
    }


def _workspace_dict(w) -> dict:
    return {
        "ticket_id": w.ticket_id,
        "path": w.path,
        "branch": w.branch,
        "head": w.head,
        "locked": w.locked,
    }


# ── Errors ────────────────────────────────────────────────────────────────────


async def _client_error(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _not_found(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=404)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None) -> Starlette:
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        db = init_db(config.db_path)
        events = EventBus()
        workspaces = WorkspaceManager(config.repo_path, config.worktrees_path, remote=config.git_remote)
        app.state.config = config
        app.state.db = db
        app.state.events = events
        app.state.workspaces = workspaces
        app.state.sessions = SessionRegistry(config, workspaces, events)
        app.state.orchestrator = Orchestrator(db, config, workspaces, events)
        SlackNotifier(config.slack_bot_token, config.slack_channel).attach(events)
        logger.info("Orchestrator ready for %s (worktrees in %s)", config.repo_path, config.worktrees_path)
        try:
            yield
        finally:
            await app.state.sessions.shutdown()
            await app.state.orchestrator.shutdown()
            db.close()

    routes = [
        Route("/health", health),
        Route("/api/tickets", api_list_tickets),
        Route("/api/tickets/{ticket_id}", api_get_ticket),
        Route("/api/agents", api_list_agents),
        Route("/api/agents/status", api_agent_status),
        Route("/api/agents/start/{ticket_id}", api_start_agent, methods=["POST"]),
        Route("/api/agents/resume/{ticket_id}", api_resume_agent, methods=["POST"]),
        Route("/api/agents/kill/{ticket_id}", api_kill_agent, methods=["POST"]),
        Route("/api/agents/worktrees", api_list_worktrees),
        Route("/api/agents/worktrees/{ticket_id}", api_remove_worktree, methods=["DELETE"]),
        Route("/api/agents/terminal/start/{ticket_id}", api_start_terminal, methods=["POST"]),
        Route("/api/agents/terminal/status/{ticket_id}", api_terminal_status),
        Route("/api/chat/{ticket_id}", api_chat, methods=["POST"]),
        WebSocketRoute("/ws", ws_events),
        WebSocketRoute("/ws/terminal/{ticket_id}", ws_terminal),
    ]
    exception_handlers = {
        NoActiveJob: _client_error,
        WorkspaceNotFound: _client_error,
        GitError: _client_error,
        TicketNotFound: _not_found,
    }
    return Starlette(routes=routes, lifespan=lifespan, exception_handlers=exception_handlers)


def run_server(host: str = "127.0.0.1", port: int = 8787, config: Config | None = None):
    app = create_app(config)
    uvicorn.run(app, host=host, port=port)
