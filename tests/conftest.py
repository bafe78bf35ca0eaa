"""Test fixtures and configuration helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

# Keep ``tests.helpers`` importable regardless of how pytest picks its rootdir.
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from phoenix_toolkit import backup, restore  # noqa: E402
from phoenix_toolkit.config import SystemPaths  # noqa: E402
from phoenix_toolkit.console import Console  # noqa: E402
from phoenix_toolkit.context import ExecutionContext  # noqa: E402
from phoenix_toolkit.report import RunReport  # noqa: E402
from tests.helpers.fake_runner import FakeRunner  # noqa: E402


@pytest.fixture(autouse=True)
def _no_settle_delays(monkeypatch: pytest.MonkeyPatch) -> None:
    """Redis BGSAVE and restore verification wait for services; tests do not."""

    monkeypatch.setattr(backup.time, "sleep", lambda _seconds: None)
    monkeypatch.setattr(restore.time, "sleep", lambda _seconds: None)


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    root = tmp_path / "host"
    root.mkdir()
    return root


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_ctx(host_root: Path, fake_runner: FakeRunner):
    def _make(operation: str = "test", *, user: str = "alice", runner: FakeRunner | None = None):
        return ExecutionContext(
            runner=runner or fake_runner,
            console=Console(),
            report=RunReport(operation),
            paths=SystemPaths(host_root),
            user=user,
            use_sudo=False,
        )

    return _make


@pytest.fixture
def ctx(make_ctx) -> ExecutionContext:
    return make_ctx()
