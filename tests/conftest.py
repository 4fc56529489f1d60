# ruff: noqa: E402

import sys
from pathlib import Path

import pytest
from _pytest.doctest import DoctestModule

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import steward.log as steward_log

DOCTEST_MODULES = {
    ROOT / "src" / "steward" / "__init__.py",
    ROOT / "src" / "steward" / "config.py",
    ROOT / "src" / "steward" / "git.py",
    ROOT / "src" / "steward" / "log.py",
    ROOT / "src" / "steward" / "models.py",
    ROOT / "src" / "steward" / "multi_repo.py",
    ROOT / "src" / "steward" / "paths.py",
    ROOT / "src" / "steward" / "retry.py",
    ROOT / "src" / "steward" / "selection.py",
    ROOT / "src" / "steward" / "worker" / "runtime.py",
}


@pytest.fixture(autouse=True)
def _reset_log_state(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(steward_log, "_configured_level", None)
    monkeypatch.setattr(steward_log, "_no_color_override", None)
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.delenv("STEWARD_LOG_LEVEL", raising=False)
    for name in (
        "STEWARD_API_URL",
        "STEWARD_API_TOKEN",
        "STEWARD_WORKER_ID",
        "STEWARD_WORKSPACE_STRATEGY",
        "STEWARD_CLEANUP_TIMING",
        "STEWARD_CACHE_ROOT",
        "STEWARD_GIT_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


def pytest_collect_file(
    parent: pytest.Collector, file_path: Path
) -> DoctestModule | None:
    path = file_path if isinstance(file_path, Path) else Path(str(file_path))
    if path in DOCTEST_MODULES:
        return DoctestModule.from_parent(parent, path=path)
    return None
