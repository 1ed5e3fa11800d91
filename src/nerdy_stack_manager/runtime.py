from __future__ import annotations

from pathlib import Path
import math
import shlex
import shutil
import subprocess
import tempfile
from typing import BinaryIO, Protocol, Sequence

import httpx
import structlog

from .config import AppConfig
from .errors import RuntimeGatewayError

logger = structlog.get_logger(__name__)

_COPY_CHUNK_SIZE = 64 * 1024


class RuntimeGateway(Protocol):
    """Primitive operations the backup, restore and health components rely on."""

    def stop_service(self) -> None: ...

    def start_service(self) -> None: ...

    def start_dependency(self, name: str) -> None: ...

    def run_in_database(
        self,
        command: Sequence[str],
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None: ...

    def probe_readiness(self, dependency: str, timeout: float) -> bool: ...

    def probe_http_endpoint(self, url: str, timeout: float) -> bool: ...

    def process_running_state(self) -> bool: ...

    def disk_usage_percent(self, path: Path) -> int: ...


def probe_http_endpoint(url: str, timeout: float) -> bool:
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as error:
        logger.debug("endpoint_probe_failed", url=url, error=_error_message(error))
        return False
    return response.is_success


def disk_usage_percent(path: Path) -> int:
    usage = shutil.disk_usage(path)
    # Same rounding as df(1): used / (used + available), rounded up.
    capacity = usage.used + usage.free
    if capacity <= 0:
        return 0
    percent = math.ceil(usage.used * 100 / capacity)
    return max(0, min(100, percent))


class ComposeRuntimeGateway:
    """Runs docker compose commands against one project directory."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.compose_command = shlex.split(config.compose_command)

    def stop_service(self) -> None:
        self._run_compose(["down"])

    def start_service(self) -> None:
        self._run_compose(["up", "-d"])

    def start_dependency(self, name: str) -> None:
        self._run_compose(["up", "-d", name])

    def run_in_database(
        self,
        command: Sequence[str],
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        full_command = self._compose_binary() + ["exec", "-T", self.config.database_service, *command]
        logger.debug("database_command_started", command=_render_command(full_command))
        with tempfile.TemporaryFile() as stderr_sink:
            process = subprocess.Popen(
                full_command,
                cwd=self.config.project_dir,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE if stdout is not None else subprocess.DEVNULL,
                stderr=stderr_sink,
            )
            try:
                if stdin is not None and process.stdin is not None:
                    try:
                        shutil.copyfileobj(stdin, process.stdin, _COPY_CHUNK_SIZE)
                    except BrokenPipeError:
                        # The command exited early; its exit status below carries the error.
                        pass
                    finally:
                        process.stdin.close()
                if stdout is not None and process.stdout is not None:
                    shutil.copyfileobj(process.stdout, stdout, _COPY_CHUNK_SIZE)
                    process.stdout.close()
                returncode = process.wait()
            except BaseException:
                process.kill()
                process.wait()
                raise

            if returncode != 0:
                stderr_sink.seek(0)
                stderr_text = stderr_sink.read().decode("utf-8", errors="replace").strip()
                raise RuntimeGatewayError(
                    f"{_render_command(list(command))} exited with status {returncode}: "
                    f"{stderr_text or 'no error output'}"
                )

    def probe_readiness(self, dependency: str, timeout: float) -> bool:
        command = self._compose_binary() + [
            "exec",
            "-T",
            dependency,
            "pg_isready",
            "-U",
            self.config.database_user,
            "-d",
            self.config.database_name,
            "-t",
            str(max(1, math.ceil(timeout))),
        ]
        try:
            completed = subprocess.run(
                command,
                cwd=self.config.project_dir,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as error:
            logger.debug("readiness_probe_failed", dependency=dependency, error=_error_message(error))
            return False
        return completed.returncode == 0

    def probe_http_endpoint(self, url: str, timeout: float) -> bool:
        return probe_http_endpoint(url, timeout)

    def process_running_state(self) -> bool:
        completed = self._run_compose(["ps", "--status", "running", "--services"])
        running_services = {line.strip() for line in completed.stdout.splitlines() if line.strip()}
        required_services = {self.config.app_service, self.config.database_service}
        return required_services.issubset(running_services)

    def disk_usage_percent(self, path: Path) -> int:
        return disk_usage_percent(path)

    def _compose_binary(self) -> list[str]:
        binary = shutil.which(self.compose_command[0])
        if binary is None:
            raise RuntimeGatewayError(
                f"{self.compose_command[0]} is required for compose runtime operations but was not found in PATH"
            )
        return [binary, *self.compose_command[1:]]

    def _run_compose(self, arguments: list[str]) -> subprocess.CompletedProcess[str]:
        command = self._compose_binary() + arguments
        logger.debug("compose_command_started", command=_render_command(command))
        try:
            completed = subprocess.run(
                command,
                cwd=self.config.project_dir,
                check=False,
                capture_output=True,
                text=True,
            )
        except OSError as error:
            raise RuntimeGatewayError(f"unable to run {_render_command(command)}: {_error_message(error)}") from error
        if completed.returncode != 0:
            raise RuntimeGatewayError(
                completed.stderr.strip() or completed.stdout.strip() or f"{_render_command(command)} failed"
            )
        return completed


def build_runtime_gateway(config: AppConfig) -> RuntimeGateway:
    if config.runtime == "kubernetes":
        from .k8s import KubernetesRuntimeGateway, load_kubernetes_clients, require_mounted_data_dir

        require_mounted_data_dir(config.data_dir)
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.kube_context,
            in_cluster=config.kube_in_cluster,
        )
        return KubernetesRuntimeGateway(clients=clients, config=config)
    return ComposeRuntimeGateway(config)


def _render_command(command: list[str]) -> str:
    return " ".join(shlex.quote(token) for token in command)


def _error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
