from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
import gzip
import shutil
import tarfile
import time
from typing import Callable

import structlog

from .backup import resolve_backup_set
from .config import AppConfig
from .errors import (
    ConfirmationDeclined,
    DependencyTimeout,
    IrrecoverableRestoreFailure,
    StackOperationError,
)
from .models import BackupSet, RestoreResult, RestoreState
from .runtime import RuntimeGateway

logger = structlog.get_logger(__name__)

CONFIRMATION_PROMPT = "This will overwrite current data. Continue? (y/N): "
AFFIRMATIVE_RESPONSES = frozenset({"y", "yes"})

# Receives the prompt text and returns the operator's raw answer (None for no input).
ConfirmationCallback = Callable[[str], str | None]


def is_affirmative(response: str | None) -> bool:
    return (response or "").strip().lower() in AFFIRMATIVE_RESPONSES


class RestoreEngine:
    """Replays a complete backup set over the live service.

    Order is fixed: validate, confirm, stop everything, restore the database
    with only the database running, then replace the data directory, then
    start the full service. A failed stop aborts with nothing modified. Any
    failure after the stop leaves the service stopped; nothing is rolled back.
    """

    def __init__(
        self,
        *,
        gateway: RuntimeGateway,
        config: AppConfig,
        confirm: ConfirmationCallback,
    ) -> None:
        self.gateway = gateway
        self.config = config
        self.confirm = confirm
        self.state = RestoreState.IDLE
        self._transitions: list[RestoreState] = []

    def restore(self, timestamp: str, *, assume_yes: bool = False) -> RestoreResult:
        started_at = _utc_now_iso()
        self._transitions = []
        self.state = RestoreState.IDLE
        status = "failed"
        failed_stage: str | None = None
        message = ""

        logger.info("restore_started", timestamp=timestamp, assume_yes=assume_yes)
        try:
            self._enter(RestoreState.VALIDATING)
            backup_set = resolve_backup_set(self.config.backup_dir, timestamp)

            self._enter(RestoreState.CONFIRMING)
            self._confirm(assume_yes=assume_yes)

            self._stop_service()
            self._enter(RestoreState.STOPPED)

            self._enter(RestoreState.DATABASE_RESTORING)
            self._restore_database(backup_set)
            self._enter(RestoreState.DATABASE_READY)

            self._enter(RestoreState.FILES_RESTORING)
            self._restore_files(backup_set)

            self._enter(RestoreState.RESTARTING)
            self._restart_service()

            self._enter(RestoreState.IDLE)
            status = "success"
        except ConfirmationDeclined as error:
            self._enter(RestoreState.ABORTED)
            status = "aborted"
            failed_stage = error.stage
            message = str(error)
        except Exception as error:  # pylint: disable=broad-except
            if isinstance(error, StackOperationError):
                failed_stage = error.stage
                message = str(error)
            else:
                failed_stage = "unexpected"
                message = f"unexpected restore failure: {_error_message(error)}"
            # Nothing has been touched before the stop completes. A failed stop is
            # still a failure, not a validation abort.
            if self.state in (RestoreState.VALIDATING, RestoreState.CONFIRMING):
                self._enter(RestoreState.ABORTED)
                status = "failed" if failed_stage == "stop" else "aborted"

        if status == "success":
            logger.info("restore_completed", timestamp=timestamp)
        elif status == "aborted":
            logger.warning("restore_aborted", timestamp=timestamp, stage=failed_stage, reason=message)
        else:
            logger.error("restore_failed", timestamp=timestamp, stage=failed_stage, state=self.state.value, error=message)

        return RestoreResult(
            timestamp=timestamp,
            status=status,
            state=self.state,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            transitions=tuple(self._transitions),
            failed_stage=failed_stage,
            message=message,
        )

    def _enter(self, state: RestoreState) -> None:
        logger.debug("restore_state_changed", previous=self.state.value, current=state.value)
        self.state = state
        self._transitions.append(state)

    def _confirm(self, *, assume_yes: bool) -> None:
        if assume_yes:
            logger.info("restore_confirmation_overridden")
            return
        try:
            response = self.confirm(CONFIRMATION_PROMPT)
        except EOFError:
            response = None
        if not is_affirmative(response):
            raise ConfirmationDeclined(response)

    def _stop_service(self) -> None:
        try:
            self.gateway.stop_service()
        except Exception as error:  # pylint: disable=broad-except
            raise StackOperationError(stage="stop", reason=_error_message(error)) from error

    def _restore_database(self, backup_set: BackupSet) -> None:
        dependency = self.config.database_service
        try:
            self.gateway.start_dependency(dependency)
        except Exception as error:  # pylint: disable=broad-except
            raise IrrecoverableRestoreFailure(stage="database-restore", reason=_error_message(error)) from error

        self._wait_for_database(dependency)

        command = [
            "psql",
            "-v",
            "ON_ERROR_STOP=1",
            "-U",
            self.config.database_user,
            "-d",
            self.config.database_name,
        ]
        try:
            with gzip.open(backup_set.database_dump, "rb") as dump_stream:
                self.gateway.run_in_database(command, stdin=dump_stream)  # type: ignore[arg-type]
        except Exception as error:  # pylint: disable=broad-except
            raise IrrecoverableRestoreFailure(stage="database-restore", reason=_error_message(error)) from error

    def _wait_for_database(self, dependency: str) -> None:
        attempts = self.config.database_ready_attempts
        timeout = self.config.database_probe_timeout_seconds
        for attempt in range(1, attempts + 1):
            try:
                if self.gateway.probe_readiness(dependency, timeout):
                    logger.info("database_ready", dependency=dependency, attempt=attempt)
                    return
            except Exception as error:  # pylint: disable=broad-except
                logger.debug("database_probe_error", dependency=dependency, attempt=attempt, error=_error_message(error))
            if attempt < attempts:
                time.sleep(self.config.database_ready_interval_seconds)

        raise DependencyTimeout(dependency=dependency, attempts=attempts, timeout_seconds=timeout)

    def _restore_files(self, backup_set: BackupSet) -> None:
        data_dir = self.config.data_dir
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            _clear_directory(data_dir)
            with tarfile.open(backup_set.file_archive, "r:gz") as archive:
                archive.extractall(data_dir, filter="tar")
        except Exception as error:  # pylint: disable=broad-except
            raise IrrecoverableRestoreFailure(stage="files-restore", reason=_error_message(error)) from error

    def _restart_service(self) -> None:
        try:
            self.gateway.start_service()
        except Exception as error:  # pylint: disable=broad-except
            raise IrrecoverableRestoreFailure(stage="restart", reason=_error_message(error)) from error


def _clear_directory(directory: Path) -> None:
    logger.info("data_directory_clearing", path=str(directory))
    for entry in directory.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _error_message(error: BaseException) -> str:
    if isinstance(error, StackOperationError):
        return error.reason
    message = str(error).strip()
    return message or error.__class__.__name__
