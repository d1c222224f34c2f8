"""Per-ticket git worktree lifecycle.

Every ticket gets its own worktree at ``<worktree_dir>/ticket-<id>`` on branch
``ticket/<id>``. Names are derived only from the ticket id, so ``list()`` can
reconcile workspaces after a restart without any extra bookkeeping.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from kanban_orchestrator.core.errors import WorkspaceAlreadyExists, WorkspaceNotFound
from kanban_orchestrator.db.models import Workspace
from kanban_orchestrator.integrations import git
from kanban_orchestrator.integrations.git import GitError

logger = logging.getLogger(__name__)

_TICKET_DIR = re.compile(r"^ticket-(.+)$")


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    returncode: int


class WorkspaceManager:
    """Creates, locks, inspects and destroys ticket worktrees."""

    def __init__(
        self,
        repo_path: str | Path,
        worktree_dir: str | Path,
        remote: str = "origin",
    ):
        self.repo_path = Path(repo_path).resolve()
        self.worktree_dir = Path(worktree_dir).resolve()
        self.remote = remote
        self.worktree_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, ticket_id: str) -> Path:
        return self.worktree_dir / f"ticket-{ticket_id}"

    def branch_for(self, ticket_id: str) -> str:
        return f"ticket/{ticket_id}"

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def create(self, ticket_id: str, base_branch: str = "main") -> Workspace:
        """Create and lock a worktree for a ticket.

        Starts from the remote's copy of ``base_branch`` when the remote is
        configured, else from the local branch. Partial state is removed
        before any error propagates.
        """
        wt_path = self.path_for(ticket_id)
        branch = self.branch_for(ticket_id)

        if wt_path.exists():
            raise WorkspaceAlreadyExists(f"Workspace already exists for ticket {ticket_id}")

        branch_created = False
        try:
            start_point = base_branch
            if git.remote_exists(self.repo_path, self.remote):
                git.fetch(self.repo_path, self.remote, base_branch)
                start_point = f"{self.remote}/{base_branch}"

            git.worktree_add(self.repo_path, wt_path, branch, start_point, create_branch=True)
            branch_created = True

            self.lock(ticket_id, f"Agent working on ticket {ticket_id}")

            return Workspace(
                path=str(wt_path),
                branch=branch,
                head=git.get_head(wt_path),
                locked=True,
                ticket_id=ticket_id,
            )
        except Exception:
            self._discard_partial(wt_path, branch if branch_created else None)
            raise

    def _discard_partial(self, wt_path: Path, branch: str | None):
        try:
            git.worktree_unlock(self.repo_path, wt_path)
        except GitError:
            pass  # Not locked or not registered
        if wt_path.exists():
            try:
                git.worktree_remove(self.repo_path, wt_path, force=True)
            except GitError:
                shutil.rmtree(wt_path, ignore_errors=True)
        try:
            git.worktree_prune(self.repo_path)
        except GitError:
            logger.warning("Could not prune worktree metadata for %s", wt_path)
        if branch and git.branch_exists(self.repo_path, branch):
            try:
                git.delete_branch(self.repo_path, branch, force=True)
            except GitError:
                logger.warning("Could not delete branch %s after failed create", branch)

    def list(self) -> list[Workspace]:
        """List worktrees that follow the ticket naming convention."""
        result = []
        for wt in git.worktree_list(self.repo_path):
            if wt.is_bare:
                continue
            wt_path = Path(wt.path).resolve()
            if wt_path.parent != self.worktree_dir:
                continue
            match = _TICKET_DIR.match(wt_path.name)
            if not match:
                continue
            result.append(
                Workspace(
                    path=wt.path,
                    branch=wt.branch,
                    head=wt.head,
                    locked=wt.locked,
                    ticket_id=match.group(1),
                )
            )
        return result

    def get(self, ticket_id: str) -> Workspace | None:
        """Get the workspace for a ticket, or None."""
        for ws in self.list():
            if ws.ticket_id == ticket_id:
                return ws
        return None

    def lock(self, ticket_id: str, reason: str | None = None):
        """Lock a ticket's worktree. Already-locked is not an error."""
        try:
            git.worktree_lock(self.repo_path, self.path_for(ticket_id), reason)
        except GitError as e:
            if "already locked" not in str(e):
                raise

    def unlock(self, ticket_id: str):
        """Unlock a ticket's worktree. Not-locked is not an error."""
        try:
            git.worktree_unlock(self.repo_path, self.path_for(ticket_id))
        except GitError as e:
            if "not locked" not in str(e):
                raise

    def remove(self, ticket_id: str, force: bool = False):
        """Remove a ticket's worktree and delete its branch.

        Without ``force`` git refuses worktrees holding uncommitted changes
        and branches that are not merged.
        """
        wt_path = self.path_for(ticket_id)
        branch = self.branch_for(ticket_id)

        try:
            git.worktree_unlock(self.repo_path, wt_path)
        except GitError:
            pass  # Not locked

        git.worktree_remove(self.repo_path, wt_path, force=force)

        if git.branch_exists(self.repo_path, branch):
            try:
                git.delete_branch(self.repo_path, branch, force=force)
            except GitError:
                if force:
                    raise
                logger.info("Kept unmerged branch %s", branch)

    # ── Working inside a workspace ────────────────────────────────────────

    def _require(self, ticket_id: str) -> Path:
        wt_path = self.path_for(ticket_id)
        if not wt_path.exists():
            raise WorkspaceNotFound(f"Workspace not found for ticket {ticket_id}")
        return wt_path

    def run_in_workspace(self, ticket_id: str, command: list[str]) -> CommandResult:
        """Run a command with the workspace as cwd and capture its output."""
        wt_path = self._require(ticket_id)
        proc = subprocess.run(
            command,
            cwd=wt_path,
            capture_output=True,
            text=True,
        )
        return CommandResult(stdout=proc.stdout, stderr=proc.stderr, returncode=proc.returncode)

    def commit(self, ticket_id: str, message: str) -> str:
        """Stage everything and commit. Returns the new commit sha."""
        wt_path = self._require(ticket_id)
        git.add_all(wt_path)
        return git.commit(wt_path, message)

    def push(self, ticket_id: str):
        """Push the ticket branch to the remote with upstream tracking."""
        wt_path = self._require(ticket_id)
        git.push(wt_path, self.remote, self.branch_for(ticket_id))

    def status(self, ticket_id: str) -> str:
        """Short git status of the workspace."""
        return git.get_status(self._require(ticket_id))
