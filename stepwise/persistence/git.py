"""Git operations used by finalization, publish and workspace setup.

All commands run through ``git`` in a subprocess with the session workspace
as cwd. Failures raise GitError carrying git's stderr.
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        self.args_ = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr}")


def run_git(args: Sequence[str], cwd: Path, check: bool = True) -> subprocess.CompletedProcess:
    proc = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        raise GitError(args, proc.returncode, proc.stderr.strip())
    return proc


def get_git_sha(workspace: Path, ref: str = "HEAD") -> str:
    return run_git(["rev-parse", ref], workspace).stdout.strip()


def current_branch(workspace: Path) -> Optional[str]:
    try:
        proc = run_git(["rev-parse", "--abbrev-ref", "HEAD"], workspace, check=False)
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    branch = proc.stdout.strip()
    return None if branch == "HEAD" else branch


def repo_root(path: Path) -> Optional[Path]:
    """Top of the enclosing repository; None outside a repo or without git."""
    try:
        proc = run_git(["rev-parse", "--show-toplevel"], path, check=False)
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    return Path(proc.stdout.strip())


class GitChangePersister:
    """Persists a step's change set as one commit in the workspace."""

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace)

    def persist(self, files: list[str], message: str) -> str:
        """Stage files and commit them. Returns the new commit sha."""
        if not files:
            raise GitError(["commit"], 1, "no files to commit")

        run_git(["add", "--", *files], self.workspace)
        staged = run_git(["diff", "--cached", "--name-only"], self.workspace).stdout.split()
        if not staged:
            raise GitError(["commit"], 1, "nothing staged; change set is empty")

        run_git(["commit", "-m", message], self.workspace)
        sha = get_git_sha(self.workspace)
        logger.info(f"Committed {len(staged)} file(s) as {sha[:12]}")
        return sha


def create_worktree(repo: Path, worktree_path: Path, branch: str, base: str = "HEAD") -> Path:
    """Create an isolated worktree on a fresh branch."""
    worktree_path.parent.mkdir(parents=True, exist_ok=True)
    run_git(["worktree", "add", "-b", branch, str(worktree_path), base], repo)
    logger.info(f"Created worktree {worktree_path} on branch {branch}")
    return worktree_path


def push_branch(workspace: Path, remote: str, branch: str) -> None:
    run_git(["push", "--set-upstream", remote, branch], workspace)
    logger.info(f"Pushed {branch} to {remote}")
