from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator
import os
import shlex
import shutil
import subprocess
import time
import uuid

import pytest

from nerdy_stack_manager.config import AppConfig
from nerdy_stack_manager.runtime import ComposeRuntimeGateway

_ENV_RUN_FLAG = "NSM_RUN_COMPOSE_INTEGRATION"
_REQUIRED_BINARIES = ("docker",)
_COMPOSE_FILE = """\
services:
  postgres:
    image: postgres:16-alpine
    environment:
      POSTGRES_USER: n8n
      POSTGRES_PASSWORD: n8n
      POSTGRES_DB: n8n
  n8n:
    image: busybox:1.36
    command: ["tail", "-f", "/dev/null"]
    depends_on:
      - postgres
"""


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _render_command(command: list[str]) -> str:
    return " ".join(shlex.quote(token) for token in command)


def _run_command(
    command: list[str],
    *,
    cwd: Path | None = None,
    timeout_seconds: int,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    completed = subprocess.run(
        command,
        cwd=cwd,
        check=False,
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
    )

    if check and completed.returncode != 0:
        stdout = completed.stdout.strip() or "<empty>"
        stderr = completed.stderr.strip() or "<empty>"
        raise RuntimeError(
            f"Command failed with exit code {completed.returncode}: {_render_command(command)}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )

    return completed


def _verify_prerequisites() -> None:
    if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
        pytest.skip(
            "Compose integration tests are disabled by default. "
            f"Set {_ENV_RUN_FLAG}=1 to run them.",
            allow_module_level=True,
        )

    missing = [binary for binary in _REQUIRED_BINARIES if shutil.which(binary) is None]
    if missing:
        pytest.skip(
            f"Compose integration prerequisites are missing: {', '.join(sorted(missing))}.",
            allow_module_level=True,
        )

    compose_version = _run_command(["docker", "compose", "version"], timeout_seconds=30, check=False)
    if compose_version.returncode != 0:
        stderr = compose_version.stderr.strip() or compose_version.stdout.strip() or "unknown docker error"
        pytest.skip(
            f"docker compose is not usable for integration tests: {stderr}.",
            allow_module_level=True,
        )


@dataclass(frozen=True)
class ComposeStackContext:
    project_name: str
    config: AppConfig

    @property
    def gateway(self) -> ComposeRuntimeGateway:
        return ComposeRuntimeGateway(self.config)

    def collect_diagnostics(self) -> str:
        sections: list[str] = []
        for title, args in (("ps", ["ps", "-a"]), ("logs", ["logs", "--no-color", "--tail", "50"])):
            completed = _run_command(
                ["docker", "compose", "-p", self.project_name, *args],
                cwd=self.config.project_dir,
                timeout_seconds=60,
                check=False,
            )
            output = completed.stdout.strip() or completed.stderr.strip() or "<no output>"
            sections.append(f"[{title}]\n{output}")
        return "\n\n".join(sections)


def _wait_for_database(stack: ComposeStackContext, *, timeout_seconds: int) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if stack.gateway.probe_readiness(stack.config.database_service, 5):
            return
        time.sleep(2)

    raise RuntimeError(f"postgres did not become ready in time.\n{stack.collect_diagnostics()}")


@pytest.fixture(scope="session")
def compose_stack(tmp_path_factory: pytest.TempPathFactory) -> Iterator[ComposeStackContext]:
    _verify_prerequisites()

    harness_dir = tmp_path_factory.mktemp("compose-harness")
    project_dir = harness_dir / "n8n"
    data_dir = project_dir / "data"
    data_dir.mkdir(parents=True)
    (project_dir / "docker-compose.yml").write_text(_COMPOSE_FILE, encoding="utf-8")
    (project_dir / ".env").write_text("POSTGRES_PASSWORD=n8n\n", encoding="utf-8")
    project_name = f"nsm-it-{uuid.uuid4().hex[:8]}"

    stack = ComposeStackContext(
        project_name=project_name,
        config=AppConfig(
            runtime="compose",
            project_dir=project_dir,
            data_dir=data_dir,
            env_file=project_dir / ".env",
            backup_dir=harness_dir / "backups",
            metadata_db_path=harness_dir / "operations.db",
            compose_command=f"docker compose -p {project_name}",
            database_ready_attempts=30,
            database_ready_interval_seconds=2.0,
        ),
    )

    try:
        stack.gateway.start_service()
        _wait_for_database(stack, timeout_seconds=120)
        yield stack
    finally:
        _run_command(
            ["docker", "compose", "-p", project_name, "down", "-v"],
            cwd=project_dir,
            timeout_seconds=240,
            check=False,
        )
