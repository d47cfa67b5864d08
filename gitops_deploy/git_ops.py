"""
git_ops
-------

매니페스트 갱신과 미러링에 필요한 git 명령 래퍼.

모든 명령은 subprocess_utils.run_command 로 실행되며 실패 시 CommandError 를 던진다.
force push 는 제공하지 않는다.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional, Sequence

from .logging_utils import get_logger
from .subprocess_utils import CommandError, RunResult, Runner, run_command


logger = get_logger(__name__)

_REJECTED_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "Updates were rejected",
    "stale info",
)


def is_push_rejection(err: CommandError) -> bool:
    text = err.output
    return any(m in text for m in _REJECTED_MARKERS)


class GitRepo:
    """작업 트리 하나에 대한 git CLI 래퍼."""

    def __init__(self, path: str = ".", *, timeout: float = 300.0, runner: Optional[Runner] = None) -> None:
        self.path = os.path.abspath(path)
        self.timeout = timeout
        self._runner = runner or run_command

    def run(self, *args: str, env: Optional[Mapping[str, str]] = None) -> RunResult:
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)
        return self._runner(
            ["git", "-C", self.path, *args],
            env=full_env,
            timeout=self.timeout,
            show_progress=False,
        )

    def is_repo(self) -> bool:
        try:
            out = self.run("rev-parse", "--is-inside-work-tree").stdout.strip()
        except CommandError:
            return False
        return out == "true"

    def current_branch(self) -> str:
        return self.run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def head_commit(self) -> str:
        return self.run("rev-parse", "HEAD").stdout.strip()

    def status_porcelain(self, paths: Sequence[str] = ()) -> str:
        args = ["status", "--porcelain"]
        if paths:
            args += ["--", *paths]
        return self.run(*args).stdout.strip()

    def add(self, paths: Sequence[str]) -> None:
        self.run("add", "--", *paths)

    def commit(self, message: str, *, author_name: str, author_email: str) -> str:
        identity = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_COMMITTER_NAME": author_name,
            "GIT_COMMITTER_EMAIL": author_email,
        }
        self.run("commit", "-m", message, env=identity)
        return self.head_commit()

    def fetch(self, remote: str, branch: str) -> None:
        self.run("fetch", remote, branch)

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        try:
            self.run("rev-parse", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}")
        except CommandError:
            return False
        return True

    def fast_forward(self, remote: str, branch: str) -> None:
        """원격 브랜치로 fast-forward 만 허용한다. 갈라진 경우 CommandError."""
        self.run("merge", "--ff-only", f"{remote}/{branch}")

    def push(self, remote: str, branch: str) -> None:
        self.run("push", remote, f"HEAD:refs/heads/{branch}")

    def push_mirror(self, url: str) -> None:
        self.run("push", "--mirror", url)

    def bundle_all(self, dest: str) -> None:
        self.run("bundle", "create", dest, "--all")
