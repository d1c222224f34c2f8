"""Thin wrappers over the git CLI used by the workspace manager."""

import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """A git invocation exited non-zero. The message carries git's stderr."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False
    locked: bool = False


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run ``git <args>`` in ``cwd`` and return its stripped stdout."""
    try:
        proc = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    return proc.stdout.strip()


# ── Remotes ───────────────────────────────────────────────────────────────────


def remote_exists(repo_path: str | Path, remote: str) -> bool:
    return remote in run_git(["remote"], cwd=repo_path).split()


def fetch(repo_path: str | Path, remote: str, branch: str) -> str:
    """Update ``<remote>/<branch>`` from the remote."""
    return run_git(["fetch", remote, branch], cwd=repo_path)


def push(cwd: str | Path, remote: str, branch: str) -> str:
    """Push ``branch`` to the same name on ``remote`` and track it."""
    return run_git(["push", "--set-upstream", remote, branch], cwd=cwd)


# ── Worktrees ─────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    start_point: str = "main",
    create_branch: bool = True,
) -> str:
    """Check out ``branch`` in a new worktree.

    With ``create_branch`` the branch is created at ``start_point`` and git
    refuses if it already exists.
    """
    if create_branch:
        args = ["worktree", "add", "-b", branch, str(worktree_path), start_point]
    else:
        args = ["worktree", "add", str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def _parse_worktree(block: str) -> WorktreeInfo:
    fields: dict[str, str] = {}
    for line in block.splitlines():
        key, _, value = line.partition(" ")
        fields[key] = value
    return WorktreeInfo(
        path=fields.get("worktree", ""),
        branch=fields.get("branch", "").removeprefix("refs/heads/"),
        head=fields.get("HEAD", ""),
        is_bare="bare" in fields,
        locked="locked" in fields,
    )


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """Every worktree of the repository, main checkout included.

    Parses ``--porcelain`` output, where each worktree is a block of
    ``key value`` lines and blocks are separated by a blank line.
    """
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    return [_parse_worktree(block) for block in output.split("\n\n") if block.strip()]


def worktree_lock(repo_path: str | Path, worktree_path: str | Path, reason: str | None = None) -> str:
    """Lock a worktree. Plain ``git worktree remove`` then refuses it."""
    args = ["worktree", "lock", str(worktree_path)]
    if reason:
        args += ["--reason", reason]
    return run_git(args, cwd=repo_path)


def worktree_unlock(repo_path: str | Path, worktree_path: str | Path) -> str:
    return run_git(["worktree", "unlock", str(worktree_path)], cwd=repo_path)


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Delete a worktree directory and its metadata.

    ``force`` discards uncommitted changes.
    """
    args = ["worktree", "remove", "--force", str(worktree_path)] if force else ["worktree", "remove", str(worktree_path)]
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    """Drop metadata of worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Branches and commits ──────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
    except GitError:
        return False
    return True


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a local branch. Without ``force`` git keeps unmerged branches."""
    return run_git(["branch", "-D" if force else "-d", branch], cwd=repo_path)


def get_head(cwd: str | Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    return run_git(["branch", "--show-current"], cwd=cwd)


def get_status(cwd: str | Path) -> str:
    """Short-format status; empty when the tree is clean."""
    return run_git(["status", "--short"], cwd=cwd)


def add_all(cwd: str | Path) -> str:
    return run_git(["add", "-A"], cwd=cwd)


def commit(cwd: str | Path, message: str) -> str:
    """Commit what is staged and return the new HEAD sha."""
    run_git(["commit", "-m", message], cwd=cwd)
    return get_head(cwd)
