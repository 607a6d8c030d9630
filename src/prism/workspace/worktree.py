from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from prism.constants import DEFAULT_WORKTREES_DIR
from prism.errors import WorkspaceCreationFailed, WorkspaceRemovalFailed
from prism.machines.base import Machine
from prism.util.log import log


@dataclass(frozen=True)
class IsolatedWorkspace:
    path: str
    branch: str


def safe_branch_name(branch: str) -> str:
    return branch.replace("/", "-").replace(" ", "-")


class WorktreeManager:
    """
    Git worktrees for isolated threads, laid out as <base_dir>/<project_id>/<branch>.
    """

    def __init__(self, *, machine: Machine, base_dir: str = DEFAULT_WORKTREES_DIR, git_bin: str = "git") -> None:
        self._machine = machine
        self._base_dir = os.path.expanduser(base_dir)
        self._git = git_bin

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def workspace_path(self, project_id: str, branch: str) -> str:
        return os.path.join(self._base_dir, project_id, safe_branch_name(branch))

    async def create_isolated_workspace(self, project_id: str, repo_path: str, branch: str) -> IsolatedWorkspace:
        branch = branch.strip()
        if not branch:
            raise WorkspaceCreationFailed("Branch name is required", repo_path=repo_path, branch=branch)
        path = self.workspace_path(project_id, branch)

        try:
            check = await self._machine.exec_capture([self._git, "rev-parse", "--is-inside-work-tree"], cwd=repo_path)
        except OSError as exc:
            raise WorkspaceCreationFailed(
                f"Failed to run git: {exc}", repo_path=repo_path, branch=branch
            ) from exc
        if check.exit_code != 0 or check.stdout.strip() != "true":
            raise WorkspaceCreationFailed(
                f"{repo_path} is not a git repository: {check.output}", repo_path=repo_path, branch=branch
            )

        existed = await self._machine.exists(path)
        try:
            await self._machine.make_dirs(os.path.dirname(path))
            err = await self._add_worktree(repo_path, path, branch)
        except OSError as exc:
            err = str(exc)
        if err is None:
            return IsolatedWorkspace(path=path, branch=branch)

        if not existed:
            try:
                await self._machine.remove_tree(path)
            except OSError as exc:
                log(f"failed to clean up {path} after worktree failure: {exc}")
        raise WorkspaceCreationFailed(f"git worktree add failed: {err}", repo_path=repo_path, branch=branch)

    async def _add_worktree(self, repo_path: str, path: str, branch: str) -> Optional[str]:
        """Returns None on success, else git's complaint."""
        res = await self._machine.exec_capture([self._git, "worktree", "add", path, "-b", branch], cwd=repo_path)
        if res.exit_code == 0:
            return None
        if "already exists" not in res.output:
            return res.output or f"git exited with {res.exit_code}"
        # The branch exists already: check it out instead of creating it.
        res = await self._machine.exec_capture([self._git, "worktree", "add", path, branch], cwd=repo_path)
        if res.exit_code == 0:
            return None
        return res.output or f"git exited with {res.exit_code}"

    async def remove_isolated_workspace(self, path: str, *, repo_path: Optional[str] = None) -> None:
        """
        Remove a worktree. Git's own bookkeeping is best-effort; only a directory that
        survives counts as a failure.
        """
        try:
            res = await self._machine.exec_capture([self._git, "worktree", "remove", "--force", path], cwd=repo_path)
            if res.exit_code != 0:
                log(f"git worktree remove {path}: {res.output}")
        except OSError as exc:
            log(f"git worktree remove {path}: {exc}")

        try:
            await self._machine.remove_tree(path)
        except OSError as exc:
            raise WorkspaceRemovalFailed(path, str(exc)) from exc
        if await self._machine.exists(path):
            raise WorkspaceRemovalFailed(path, "directory still exists")
