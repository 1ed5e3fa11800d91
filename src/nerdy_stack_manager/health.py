from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable

import structlog

from .config import AppConfig
from .models import CheckName, CheckResult, HealthReport
from .runtime import RuntimeGateway

logger = structlog.get_logger(__name__)


class HealthAggregator:
    """Runs every probe on each call; one failing probe fails the report.

    A probe that raises becomes a failed check whose detail is the error. The
    disk detail carries a percentage only when the usage probe returned one.
    """

    def __init__(self, *, gateway: RuntimeGateway, config: AppConfig) -> None:
        self.gateway = gateway
        self.config = config

    def check_health(self) -> HealthReport:
        checks = (
            self._run_check(CheckName.PROCESS_UP, self._check_processes),
            self._run_check(CheckName.ENDPOINT_UP, self._check_endpoint),
            self._run_check(CheckName.DATABASE_READY, self._check_database),
            self._run_check(CheckName.DISK_OK, self._check_disk),
        )
        report = HealthReport(checks=checks, checked_at=datetime.now(tz=UTC).replace(microsecond=0).isoformat())
        logger.info(
            "health_checked",
            healthy=report.healthy,
            failing=[check.name.value for check in checks if not check.ok],
        )
        return report

    def _run_check(self, name: CheckName, probe: Callable[[], CheckResult]) -> CheckResult:
        try:
            return probe()
        except Exception as error:  # pylint: disable=broad-except
            reason = str(error).strip() or error.__class__.__name__
            logger.warning("health_probe_error", check=name.value, error=reason)
            return CheckResult(name=name, ok=False, detail=f"probe error: {reason}")

    def _check_processes(self) -> CheckResult:
        if self.gateway.process_running_state():
            return CheckResult(name=CheckName.PROCESS_UP, ok=True, detail="Containers are running")
        return CheckResult(name=CheckName.PROCESS_UP, ok=False, detail="Containers are not running")

    def _check_endpoint(self) -> CheckResult:
        url = self.config.health_url
        if self.gateway.probe_http_endpoint(url, self.config.endpoint_timeout_seconds):
            return CheckResult(name=CheckName.ENDPOINT_UP, ok=True, detail=f"{url} is responding")
        return CheckResult(
            name=CheckName.ENDPOINT_UP,
            ok=False,
            detail=f"{url} did not respond within {self.config.endpoint_timeout_seconds:g}s",
        )

    def _check_database(self) -> CheckResult:
        dependency = self.config.database_service
        if self.gateway.probe_readiness(dependency, self.config.database_probe_timeout_seconds):
            return CheckResult(name=CheckName.DATABASE_READY, ok=True, detail="Database is ready")
        return CheckResult(name=CheckName.DATABASE_READY, ok=False, detail="Database connection failed")

    def _check_disk(self) -> CheckResult:
        path = self.config.storage_path
        percent = self.gateway.disk_usage_percent(path)
        threshold = self.config.disk_threshold_percent
        if percent < threshold:
            return CheckResult(
                name=CheckName.DISK_OK,
                ok=True,
                detail=f"Disk space OK ({percent}% used, threshold {threshold}%)",
            )
        return CheckResult(
            name=CheckName.DISK_OK,
            ok=False,
            detail=f"Disk space low ({percent}% used, threshold {threshold}%)",
        )
