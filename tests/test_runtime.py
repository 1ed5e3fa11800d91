from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import Mock
import io
import subprocess

import httpx
import pytest

from nerdy_stack_manager.config import AppConfig
from nerdy_stack_manager.errors import RuntimeGatewayError
from nerdy_stack_manager.runtime import (
    ComposeRuntimeGateway,
    build_runtime_gateway,
    disk_usage_percent,
    probe_http_endpoint,
)


class _FakePopen:
    """Records the command and serves canned stdout/stderr."""

    instances: list[_FakePopen] = []

    def __init__(self, command: list[str], **kwargs: Any) -> None:
        self.command = command
        self.kwargs = kwargs
        self.stdin = _RecordingPipe() if kwargs["stdin"] == subprocess.PIPE else None
        self.stdout = io.BytesIO(self.canned_stdout) if kwargs["stdout"] == subprocess.PIPE else None
        kwargs["stderr"].write(self.canned_stderr)
        self.killed = False
        _FakePopen.instances.append(self)

    canned_stdout = b""
    canned_stderr = b""
    returncode = 0

    def wait(self) -> int:
        return self.returncode

    def kill(self) -> None:
        self.killed = True


class _RecordingPipe(io.BytesIO):
    def close(self) -> None:
        self.captured = self.getvalue()
        super().close()


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> SimpleNamespace:
    return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def compose_gateway(stack_config: AppConfig, monkeypatch: pytest.MonkeyPatch) -> ComposeRuntimeGateway:
    monkeypatch.setattr("nerdy_stack_manager.runtime.shutil.which", lambda name: f"/usr/bin/{name}")
    return ComposeRuntimeGateway(stack_config)


def test_stop_service_runs_compose_down_in_project_dir(
    compose_gateway: ComposeRuntimeGateway,
    stack_config: AppConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    run = Mock(return_value=_completed())
    monkeypatch.setattr("nerdy_stack_manager.runtime.subprocess.run", run)

    compose_gateway.stop_service()

    assert run.call_args.args[0] == ["/usr/bin/docker", "compose", "down"]
    assert run.call_args.kwargs["cwd"] == stack_config.project_dir


def test_start_commands_bring_up_stack_or_single_dependency(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    run = Mock(return_value=_completed())
    monkeypatch.setattr("nerdy_stack_manager.runtime.subprocess.run", run)

    compose_gateway.start_dependency("postgres")
    compose_gateway.start_service()

    assert [call.args[0][2:] for call in run.call_args_list] == [["up", "-d", "postgres"], ["up", "-d"]]


def test_compose_failure_raises_runtime_gateway_error(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "nerdy_stack_manager.runtime.subprocess.run",
        Mock(return_value=_completed(returncode=1, stderr="no configuration file provided")),
    )

    with pytest.raises(RuntimeGatewayError, match="no configuration file provided"):
        compose_gateway.stop_service()


def test_missing_compose_binary_raises_runtime_gateway_error(
    stack_config: AppConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("nerdy_stack_manager.runtime.shutil.which", lambda _name: None)

    with pytest.raises(RuntimeGatewayError, match="docker is required"):
        ComposeRuntimeGateway(stack_config).start_service()


@pytest.mark.parametrize(
    ("services", "expected"),
    [
        ("n8n\npostgres\n", True),
        ("postgres\n", False),
        ("", False),
        ("postgres\nn8n\nredis\n", True),
    ],
)
def test_process_running_state_requires_app_and_database(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
    services: str,
    expected: bool,
) -> None:
    monkeypatch.setattr(
        "nerdy_stack_manager.runtime.subprocess.run",
        Mock(return_value=_completed(stdout=services)),
    )

    assert compose_gateway.process_running_state() is expected


def test_probe_readiness_runs_pg_isready_with_bounded_timeout(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    run = Mock(return_value=_completed())
    monkeypatch.setattr("nerdy_stack_manager.runtime.subprocess.run", run)

    assert compose_gateway.probe_readiness("postgres", 2.5) is True

    command = run.call_args.args[0]
    assert command[2:] == ["exec", "-T", "postgres", "pg_isready", "-U", "n8n", "-d", "n8n", "-t", "3"]
    assert run.call_args.kwargs["timeout"] == 2.5


def test_probe_readiness_returns_false_on_timeout(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "nerdy_stack_manager.runtime.subprocess.run",
        Mock(side_effect=subprocess.TimeoutExpired(cmd="pg_isready", timeout=1)),
    )

    assert compose_gateway.probe_readiness("postgres", 1) is False


def test_run_in_database_streams_stdout_to_sink(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakePopen.instances = []
    monkeypatch.setattr(_FakePopen, "canned_stdout", b"-- PostgreSQL database dump\n")
    monkeypatch.setattr("nerdy_stack_manager.runtime.subprocess.Popen", _FakePopen)
    sink = io.BytesIO()

    compose_gateway.run_in_database(["pg_dump", "-U", "n8n", "n8n"], stdout=sink)

    assert sink.getvalue() == b"-- PostgreSQL database dump\n"
    process = _FakePopen.instances[0]
    assert process.command[2:] == ["exec", "-T", "postgres", "pg_dump", "-U", "n8n", "n8n"]
    assert process.kwargs["stdin"] == subprocess.DEVNULL


def test_run_in_database_feeds_stdin_and_closes_pipe(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakePopen.instances = []
    monkeypatch.setattr("nerdy_stack_manager.runtime.subprocess.Popen", _FakePopen)

    compose_gateway.run_in_database(["psql"], stdin=io.BytesIO(b"SELECT 1;\n"))

    process = _FakePopen.instances[0]
    assert process.stdin is not None
    assert process.stdin.closed is True
    assert process.stdin.captured == b"SELECT 1;\n"


def test_run_in_database_nonzero_exit_includes_stderr(
    compose_gateway: ComposeRuntimeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(_FakePopen, "canned_stderr", b"psql: error: FATAL: role does not exist\n")
    monkeypatch.setattr(_FakePopen, "returncode", 2)
    monkeypatch.setattr("nerdy_stack_manager.runtime.subprocess.Popen", _FakePopen)

    with pytest.raises(RuntimeGatewayError, match="exited with status 2: psql: error: FATAL: role does not exist"):
        compose_gateway.run_in_database(["psql"], stdin=io.BytesIO(b""))


@pytest.mark.parametrize(("status_code", "expected"), [(200, True), (204, True), (503, False), (404, False)])
def test_probe_http_endpoint_requires_success_status(
    monkeypatch: pytest.MonkeyPatch,
    status_code: int,
    expected: bool,
) -> None:
    get = Mock(return_value=httpx.Response(status_code))
    monkeypatch.setattr("nerdy_stack_manager.runtime.httpx.get", get)

    assert probe_http_endpoint("http://localhost:5678/healthz", 5.0) is expected
    assert get.call_args.kwargs["timeout"] == 5.0


def test_probe_http_endpoint_returns_false_on_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "nerdy_stack_manager.runtime.httpx.get",
        Mock(side_effect=httpx.ConnectTimeout("timed out")),
    )

    assert probe_http_endpoint("http://localhost:5678/healthz", 0.1) is False


@pytest.mark.parametrize(
    ("used", "free", "expected"),
    [(41, 59, 41), (1, 2, 34), (0, 100, 0), (100, 0, 100), (0, 0, 0)],
)
def test_disk_usage_percent_rounds_up_like_df(
    monkeypatch: pytest.MonkeyPatch,
    used: int,
    free: int,
    expected: int,
) -> None:
    monkeypatch.setattr(
        "nerdy_stack_manager.runtime.shutil.disk_usage",
        lambda _path: SimpleNamespace(total=used + free + 10, used=used, free=free),
    )

    assert disk_usage_percent(Path("/opt/n8n")) == expected


def test_build_runtime_gateway_defaults_to_compose(stack_config: AppConfig) -> None:
    assert isinstance(build_runtime_gateway(stack_config), ComposeRuntimeGateway)
