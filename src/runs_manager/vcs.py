from __future__ import annotations

from runs_manager.process import Runner, run_command


class GitRepository:
    def __init__(self, *, executable: str = "git", runner: Runner = run_command):
        self.executable = executable
        self._run = runner

    def head_commit(self) -> str:
        result = self._run(
            [self.executable, "rev-parse", "HEAD"], capture=True, check=True
        )
        return result.stdout.strip()

    def last_commit_message(self) -> str:
        result = self._run(
            [self.executable, "log", "-1", "--pretty=%B"], capture=True, check=True
        )
        return result.stdout.strip()

    def is_dirty(self) -> bool:
        # Porcelain output, not the exit code, signals uncommitted changes.
        result = self._run(
            [self.executable, "status", "--porcelain"], capture=True, check=False
        )
        return bool(result.stdout.strip())
