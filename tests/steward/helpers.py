# ruff: noqa: E402

from __future__ import annotations

import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from steward.exec import CommandRequest, CommandResult
from steward.models import ActionNode, GitCredentials

HEAD_COMMIT = "0123456789abcdef0123456789abcdef01234567"


class FakeGitRunner:
    """Scripted git: clones create a minimal checkout on disk.

    ``fail_clone`` lists URL substrings whose clone fails; ``failures`` maps
    a git subcommand to the stderr it fails with. The first ``flaky_clones``
    clones fail with a network error after leaving a partial ``.git``.
    """

    def __init__(
        self,
        *,
        remote_branches: tuple[str, ...] = (),
        fail_clone: tuple[str, ...] = (),
        failures: dict[str, str] | None = None,
        head: str = HEAD_COMMIT,
        flaky_clones: int = 0,
    ) -> None:
        self.remote_branches = set(remote_branches)
        self.fail_clone = fail_clone
        self.failures = dict(failures or {})
        self.head = head
        self.flaky_clones = flaky_clones
        self.calls: list[tuple[str, ...]] = []
        self.cwds: list[Path | None] = []
        self._lock = threading.Lock()

    def commands(self, subcommand: str) -> list[tuple[str, ...]]:
        with self._lock:
            return [call for call in self.calls if call and call[0] == subcommand]

    def run(self, request: CommandRequest) -> CommandResult | None:
        args = tuple(request.argv[1:])
        with self._lock:
            self.calls.append(args)
            self.cwds.append(request.cwd)
        subcommand = args[0]
        if subcommand in self.failures:
            return CommandResult(request.argv, 1, "", self.failures[subcommand])
        if subcommand == "clone":
            return self._clone(request, url=args[-2], target=Path(args[-1]))
        if subcommand == "ls-remote":
            branch = args[-1]
            stdout = f"{self.head}\trefs/heads/{branch}\n" if branch in self.remote_branches else ""
            return CommandResult(request.argv, 0, stdout, "")
        if subcommand == "rev-parse":
            if "--show-toplevel" in args:
                return CommandResult(request.argv, 0, f"{request.cwd}\n", "")
            if "--abbrev-ref" in args:
                return CommandResult(request.argv, 0, "main\n", "")
            return CommandResult(request.argv, 0, f"{self.head}\n", "")
        if subcommand == "symbolic-ref":
            return CommandResult(request.argv, 0, "origin/main\n", "")
        return CommandResult(request.argv, 0, "", "")

    def _clone(self, request: CommandRequest, *, url: str, target: Path) -> CommandResult:
        if target.exists() and any(target.iterdir()):
            return CommandResult(
                request.argv,
                128,
                "",
                f"fatal: destination path '{target}' already exists and is not an empty directory.",
            )
        if any(marker in url for marker in self.fail_clone):
            return CommandResult(
                request.argv, 128, "", f"fatal: repository '{url}' not found"
            )
        git_dir = target / ".git"
        with self._lock:
            flaky = self.flaky_clones > 0
            if flaky:
                self.flaky_clones -= 1
        if flaky:
            (git_dir / "objects").mkdir(parents=True, exist_ok=True)
            return CommandResult(
                request.argv,
                128,
                "",
                "fatal: unable to access: Could not resolve host: github.com",
            )
        for directory in ("info", "refs", "objects"):
            (git_dir / directory).mkdir(parents=True, exist_ok=True)
        (git_dir / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
        (git_dir / "config").write_text("[core]\n", encoding="utf-8")
        (target / "README.md").write_text("hello\n", encoding="utf-8")
        return CommandResult(request.argv, 0, "", "")


class MissingExecutableRunner:
    def run(self, request: CommandRequest) -> CommandResult | None:
        return None


def make_credentials(**overrides: object) -> GitCredentials:
    data: dict[str, object] = {
        "token": "ghs_secret",
        "name": "Steward Bot",
        "email": "bot@example.com",
    }
    data.update(overrides)
    return GitCredentials.model_validate(data)


def node(node_id: str, *children: ActionNode, **fields: object) -> ActionNode:
    """Build an ``ActionNode``; children given positionally."""
    data: dict[str, object] = {"id": node_id, "title": node_id.upper()}
    if children:
        data["children"] = children
    data.update(fields)
    return ActionNode.model_validate(data)
