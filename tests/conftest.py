"""Shared fixtures: no test talks to AWS or spawns a real ssh."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import rds_proxy


@pytest.fixture(autouse=True)
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def key_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "ssm-tunnel"
    monkeypatch.setattr(rds_proxy, "KEY_DIR", path)
    return path


class FakeRunner:
    """Stands in for run_local; ssh-keygen writes key files, ssh answers per config."""

    public_key = "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABgQC7x2Lq9ZVb3mYkEw8rT5hP0dJ4sN6uF1aGk3WcXyZpQrS8vTmNbL2hJ9oE4iU7 test@host\n"

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.check_returncode = 255
        self.exit_returncode = 0

    def __call__(self, cmd, capture=False, check=True, timeout=None):
        self.calls.append(list(cmd))
        returncode = 0
        if cmd[0] == "ssh-keygen":
            key = Path(cmd[cmd.index("-f") + 1])
            key.write_text("PRIVATE")
            key.with_suffix(".pub").write_text(self.public_key)
        elif cmd[:3] == ["ssh", "-O", "check"]:
            returncode = self.check_returncode
        elif cmd[:3] == ["ssh", "-O", "exit"]:
            returncode = self.exit_returncode
        if check and returncode != 0:
            raise rds_proxy.CommandError(list(cmd), returncode)
        return subprocess.CompletedProcess(cmd, returncode, "", "")

    def commands(self, program: str) -> list[list[str]]:
        return [call for call in self.calls if call[0] == program]


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    fake = FakeRunner()
    monkeypatch.setattr(rds_proxy, "run_local", fake)
    return fake
