"""Pytest configuration and shared fixtures for Vault Guard tests."""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from vault_guard.backup.manager import BackupManager
from vault_guard.config import ConfigResolver, ResolvedConfig
from vault_guard.executor.pipeline import GuardrailPipeline
from vault_guard.safety.models import OperationRequest, Period
from vault_guard.vault.models import CommandList, FetchResult, VaultCommand, VaultResponse


class FakeVault:
    """In-memory stand-in for the vault REST service."""

    def __init__(
        self,
        notes: Optional[Dict[str, str]] = None,
        commands: Optional[Dict[str, str]] = None,
    ):
        self.notes: Dict[str, str] = dict(notes or {})
        self.commands = commands or {}
        self.executed: List[Tuple[str, str, Optional[str]]] = []
        self.fail_with: Optional[int] = None
        # period value -> vault path of the note the periodic endpoint serves
        self.periodic_paths: Dict[str, str] = {}

    async def fetch_periodic(self, period: Period) -> FetchResult:
        path = self.periodic_paths.get(period.value)
        if path is None:
            return FetchResult(exists=False)
        return FetchResult(exists=True, content=self.notes.get(path), path=path)

    async def fetch(self, request: OperationRequest) -> FetchResult:
        key = request.resource_key
        if key not in self.notes:
            return FetchResult(exists=False, path=request.path or None)
        return FetchResult(exists=True, content=self.notes[key], path=request.path or None)

    async def execute(
        self, request: OperationRequest, approved_content: Optional[str]
    ) -> VaultResponse:
        self.executed.append((request.method.value, request.resource_key, approved_content))

        if self.fail_with is not None:
            return VaultResponse(
                success=False,
                status_category="5xx" if self.fail_with >= 500 else "4xx",
                status_code=self.fail_with,
                error_message="service error",
            )

        key = request.resource_key
        method = request.method.value
        if method == "GET":
            if key not in self.notes:
                return VaultResponse(
                    success=False, status_category="4xx", status_code=404, error_message="Not Found"
                )
            return VaultResponse(
                success=True, status_category="2xx", status_code=200, body=self.notes[key]
            )
        if method == "DELETE":
            self.notes.pop(key, None)
        elif method == "PUT":
            self.notes[key] = approved_content or ""
        elif method == "POST" and request.command_id is None:
            self.notes[key] = self.notes.get(key, "") + (approved_content or "")

        return VaultResponse(success=True, status_category="2xx", status_code=204)

    async def list_commands(self) -> CommandList:
        return CommandList(
            commands=[VaultCommand(id=cid, name=name) for cid, name in self.commands.items()]
        )


class FakeClock:
    """Deterministic clock advancing a fixed step per call."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., ResolvedConfig]:
    """Build settings snapshots with safe defaults for tests."""

    def _make(**overrides) -> ResolvedConfig:
        values = {
            "api_key": "test-key",
            "allow_delete": True,
            "backup_dir": str(tmp_path / "backups"),
        }
        values.update(overrides)
        return ResolvedConfig(**values)

    return _make


@pytest.fixture
def test_config(make_config) -> ResolvedConfig:
    """Default test settings: deletes allowed, confirmations enforced."""
    return make_config()


@pytest.fixture
def fake_vault() -> FakeVault:
    """Vault holding a few notes."""
    return FakeVault(
        notes={
            "Inbox/todo.md": "# Todo\n- [ ] write tests\n",
            "Projects/plan.md": "# Plan\n## Tasks\none\n## Notes\ntwo\n## Tasks\nthree\n",
            "periodic/daily": "# Today\nstandup notes\n",
            ".obsidian/app.json": '{"theme": "dark"}',
        },
        commands={
            "editor:toggle-bold": "Toggle bold",
            "app:delete-file": "Delete current file",
        },
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pipeline(fake_vault: FakeVault, tmp_path: Path) -> GuardrailPipeline:
    """Pipeline over the fake vault with isolated config files."""
    resolver = ConfigResolver(
        project_file=tmp_path / "missing.env",
        user_file=tmp_path / "missing.json",
        environ={"OBSIDIAN_API_KEY": "test-key"},
    )
    return GuardrailPipeline(fake_vault, resolver=resolver)


@pytest.fixture
def backup_manager(tmp_path: Path, fake_clock: FakeClock) -> BackupManager:
    return BackupManager(tmp_path / "backups", keep_last_n=3, clock=fake_clock)
