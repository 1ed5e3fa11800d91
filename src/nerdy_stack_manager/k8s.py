from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import shlex
import time
from typing import BinaryIO, Callable, Sequence, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.stream import stream
import structlog

from .config import AppConfig
from .errors import ConfigurationError, RuntimeGatewayError
from .runtime import disk_usage_percent, probe_http_endpoint

logger = structlog.get_logger(__name__)

SUPPORTED_WORKLOAD_KINDS = ("deployment", "statefulset")
DEFAULT_SCALE_TIMEOUT_SECONDS = 120
_COPY_CHUNK_SIZE = 64 * 1024
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api


@dataclass(frozen=True)
class WorkloadRef:
    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def parse_workload(value: str) -> WorkloadRef:
    kind, separator, name = value.strip().partition("/")
    normalized_kind = kind.strip().lower()
    if not separator or not name.strip() or normalized_kind not in SUPPORTED_WORKLOAD_KINDS:
        raise ConfigurationError(
            f"Invalid workload reference {value!r}. Expected '<kind>/<name>' with kind one of: "
            f"{', '.join(SUPPORTED_WORKLOAD_KINDS)}."
        )
    return WorkloadRef(kind=normalized_kind, name=name.strip())


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
    )


def require_mounted_data_dir(data_dir: Path) -> None:
    """Reject a data directory that is not a mount of the application volume.

    Only database traffic goes through the cluster. Archiving and restoring
    the data directory, the env snapshot and the disk check all act on the
    controller's own filesystem, so the controller pod must mount the
    application's volume at ``data_dir``.
    """
    if not data_dir.is_dir():
        raise ConfigurationError(
            "kubernetes runtime requires the application volume mounted at data_dir",
            details={"data_dir": str(data_dir), "problem": "not a directory"},
        )
    if not os.path.ismount(data_dir):
        raise ConfigurationError(
            "kubernetes runtime requires the application volume mounted at data_dir",
            details={"data_dir": str(data_dir), "problem": "not a mount point"},
        )


class KubernetesRuntimeGateway:
    """Drives the application and database workloads of one namespace."""

    def __init__(self, *, clients: KubernetesClients, config: AppConfig) -> None:
        self.clients = clients
        self.config = config
        self.namespace = config.kube_namespace
        self.app_workload = parse_workload(config.kube_app_workload)
        self.database_workload = parse_workload(config.kube_database_workload)
        self.scale_timeout_seconds = DEFAULT_SCALE_TIMEOUT_SECONDS

    def stop_service(self) -> None:
        for workload in (self.app_workload, self.database_workload):
            self._scale(workload, replicas=0)
        for workload in (self.app_workload, self.database_workload):
            self._wait_for_no_pods(workload)

    def start_service(self) -> None:
        self._scale(self.database_workload, replicas=1)
        self._scale(self.app_workload, replicas=1)

    def start_dependency(self, name: str) -> None:
        if name != self.config.database_service:
            raise RuntimeGatewayError(f"unknown dependency {name!r}; only {self.config.database_service!r} is managed")
        self._scale(self.database_workload, replicas=1)

    def run_in_database(
        self,
        command: Sequence[str],
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        pod_name = self._running_pod_name(self.database_workload)
        exec_command = list(command)
        if stdin is not None:
            # Exec streams cannot signal end-of-input, so bound the read on the pod side.
            payload_size = _measure_stream(stdin)
            exec_command = ["sh", "-c", f"head -c {payload_size} | {shlex.join(exec_command)}"]

        returncode, stderr_text = self._exec(pod_name, exec_command, stdin=stdin, stdout=stdout)
        if returncode != 0:
            raise RuntimeGatewayError(
                f"{shlex.join(list(command))} exited with status {returncode} in pod {pod_name}: "
                f"{stderr_text or 'no error output'}"
            )

    def probe_readiness(self, dependency: str, timeout: float) -> bool:
        try:
            pod_name = self._running_pod_name(self.database_workload)
            returncode, _ = self._exec(
                pod_name,
                ["pg_isready", "-U", self.config.database_user, "-d", self.config.database_name],
                timeout=timeout,
            )
        except (RuntimeGatewayError, TimeoutError) as error:
            logger.debug("readiness_probe_failed", dependency=dependency, error=str(error))
            return False
        return returncode == 0

    def probe_http_endpoint(self, url: str, timeout: float) -> bool:
        return probe_http_endpoint(url, timeout)

    def process_running_state(self) -> bool:
        for workload in (self.app_workload, self.database_workload):
            pods = self._list_pods(workload)
            if not any(_pod_phase(pod) == "Running" for pod in pods):
                return False
        return True

    def disk_usage_percent(self, path: Path) -> int:
        return disk_usage_percent(path)

    def _scale(self, workload: WorkloadRef, *, replicas: int) -> None:
        body = {"spec": {"replicas": replicas}}
        if workload.kind == "deployment":
            patch: Callable[..., object] = self.clients.apps_api.patch_namespaced_deployment_scale
        else:
            patch = self.clients.apps_api.patch_namespaced_stateful_set_scale
        logger.debug("workload_scaling", workload=str(workload), replicas=replicas)
        _safe_kubernetes_call(
            operation=f"scale {workload} to {replicas}",
            hint="Verify RBAC allows patch on the scale subresource.",
            func=lambda: patch(name=workload.name, namespace=self.namespace, body=body),
        )

    def _wait_for_no_pods(self, workload: WorkloadRef) -> None:
        deadline = time.time() + self.scale_timeout_seconds
        remaining = 0
        while time.time() < deadline:
            remaining = len(self._list_pods(workload))
            if remaining == 0:
                return
            time.sleep(2)
        raise RuntimeGatewayError(
            f"{workload} still has {remaining} pod(s) after {self.scale_timeout_seconds}s of scale-down"
        )

    def _label_selector(self, workload: WorkloadRef) -> str:
        if workload.kind == "deployment":
            read: Callable[..., object] = self.clients.apps_api.read_namespaced_deployment
        else:
            read = self.clients.apps_api.read_namespaced_stateful_set
        resource = _safe_kubernetes_call(
            operation=f"read {workload}",
            hint="Check the workload name, namespace and RBAC verbs for get.",
            func=lambda: read(name=workload.name, namespace=self.namespace),
        )
        spec = getattr(resource, "spec", None)
        selector = getattr(spec, "selector", None)
        match_labels = getattr(selector, "match_labels", None) or {}
        if not match_labels:
            raise RuntimeGatewayError(f"{workload} has no matchLabels selector")
        return ",".join(f"{key}={value}" for key, value in sorted(match_labels.items()))

    def _list_pods(self, workload: WorkloadRef) -> list[object]:
        selector = self._label_selector(workload)
        response = _safe_kubernetes_call(
            operation=f"list pods of {workload}",
            hint="Check RBAC verbs for pods in the namespace.",
            func=lambda: self.clients.core_api.list_namespaced_pod(namespace=self.namespace, label_selector=selector),
        )
        return list(getattr(response, "items", None) or [])

    def _running_pod_name(self, workload: WorkloadRef) -> str:
        for pod in self._list_pods(workload):
            if _pod_phase(pod) == "Running":
                return pod.metadata.name  # type: ignore[attr-defined]
        raise RuntimeGatewayError(f"{workload} has no Running pod in namespace {self.namespace}")

    def _exec(
        self,
        pod_name: str,
        command: list[str],
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        timeout: float | None = None,
    ) -> tuple[int, str]:
        logger.debug("pod_exec_started", pod=pod_name, command=shlex.join(command))
        response = _safe_kubernetes_call(
            operation=f"exec into pod {pod_name}",
            hint="Verify RBAC allows create on pods/exec.",
            func=lambda: stream(
                self.clients.core_api.connect_get_namespaced_pod_exec,
                pod_name,
                self.namespace,
                command=command,
                stderr=True,
                stdin=stdin is not None,
                stdout=True,
                tty=False,
                binary=True,
                _preload_content=False,
            ),
        )
        deadline = time.monotonic() + timeout if timeout is not None else None
        stderr_chunks: list[bytes] = []
        try:
            if stdin is not None:
                for chunk in iter(lambda: stdin.read(_COPY_CHUNK_SIZE), b""):
                    response.write_stdin(chunk)
            while response.is_open():
                response.update(timeout=1)
                _drain(response, stdout, stderr_chunks)
                if deadline is not None and time.monotonic() > deadline:
                    raise TimeoutError(f"command in pod {pod_name} exceeded {timeout:g}s")
            _drain(response, stdout, stderr_chunks)
            returncode = response.returncode
        finally:
            response.close()

        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
        return (returncode if returncode is not None else 1), stderr_text


def _drain(response: object, stdout: BinaryIO | None, stderr_chunks: list[bytes]) -> None:
    if response.peek_stdout():  # type: ignore[attr-defined]
        data = response.read_stdout()  # type: ignore[attr-defined]
        if stdout is not None:
            stdout.write(data if isinstance(data, bytes) else data.encode("utf-8"))
    if response.peek_stderr():  # type: ignore[attr-defined]
        data = response.read_stderr()  # type: ignore[attr-defined]
        stderr_chunks.append(data if isinstance(data, bytes) else data.encode("utf-8"))


def _measure_stream(source: BinaryIO) -> int:
    if not source.seekable():
        raise RuntimeGatewayError("database input must be seekable for Kubernetes exec")
    start = source.tell()
    size = 0
    for chunk in iter(lambda: source.read(_COPY_CHUNK_SIZE), b""):
        size += len(chunk)
    source.seek(start)
    return size


def _pod_phase(pod: object) -> str:
    status = getattr(pod, "status", None)
    return getattr(status, "phase", None) or "Unknown"


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise RuntimeGatewayError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes call failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
