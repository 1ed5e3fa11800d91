from __future__ import annotations

from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path
import gzip
import os
import re
import shutil
import tarfile
import time
from typing import Callable

import structlog

from .config import AppConfig
from .errors import PartialArtifactFailure, StackOperationError, ValidationError
from .models import ArtifactKind, BackupResult, BackupSet, BackupSetStatus
from .runtime import RuntimeGateway

logger = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
TIMESTAMP_PATTERN = re.compile(r"^\d{8}_\d{6}$")
_ARTIFACT_NAME_PATTERN = re.compile(r"^(database|files|env)_(\d{8}_\d{6})(\.sql\.gz|\.tar\.gz)?$")
_MAX_TIMESTAMP_ALLOCATION_ATTEMPTS = 5


class BackupEngine:
    """Writes a database dump, a data archive and an env snapshot under one timestamp.

    The three artifacts are produced one after another while the service keeps
    running, so writes landing between the dump and the archive are not
    captured consistently in both. Stop the service first when that matters.
    """

    def __init__(
        self,
        *,
        gateway: RuntimeGateway,
        config: AppConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.gateway = gateway
        self.config = config
        self.clock = clock or _utc_now

    def create_backup(self) -> BackupResult:
        started_at = _utc_now_iso()
        timestamp = self.clock().strftime(TIMESTAMP_FORMAT)
        backup_set = BackupSet.at(self.config.backup_dir, timestamp)
        status = "failed"
        failed_stage: str | None = None
        message = ""

        logger.info("backup_started", timestamp=timestamp, backup_dir=str(self.config.backup_dir))
        try:
            backup_set = self._prepare(backup_set)
            self._dump_database(backup_set)
            self._archive_files(backup_set)
            self._snapshot_config(backup_set)
            status = "success"
        except PartialArtifactFailure as error:
            failed_stage = error.stage
            message = str(error)
        except Exception as error:  # pylint: disable=broad-except
            failed_stage = "unexpected"
            message = f"unexpected backup failure: {_error_message(error)}"

        artifacts = backup_set.existing_artifacts()
        if status == "success":
            logger.info("backup_completed", timestamp=backup_set.timestamp, artifacts=[str(path) for path in artifacts])
        else:
            # Partial artifacts stay on disk for diagnosis; listing reports the set as incomplete.
            logger.error(
                "backup_failed",
                timestamp=backup_set.timestamp,
                stage=failed_stage,
                error=message,
                existing_artifacts=[str(path) for path in artifacts],
            )

        return BackupResult(
            timestamp=backup_set.timestamp,
            status=status,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            artifacts=artifacts,
            failed_stage=failed_stage,
            message=message,
        )

    def _prepare(self, backup_set: BackupSet) -> BackupSet:
        try:
            self.config.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise PartialArtifactFailure(stage="prepare", reason=_error_message(error), existing_artifacts=()) from error

        for _ in range(_MAX_TIMESTAMP_ALLOCATION_ATTEMPTS):
            if not backup_set.existing_artifacts():
                return backup_set
            logger.warning("backup_timestamp_in_use", timestamp=backup_set.timestamp)
            time.sleep(1)
            backup_set = BackupSet.at(self.config.backup_dir, self.clock().strftime(TIMESTAMP_FORMAT))

        raise PartialArtifactFailure(
            stage="prepare",
            reason=f"artifacts already exist for timestamp {backup_set.timestamp}",
            existing_artifacts=(),
        )

    def _dump_database(self, backup_set: BackupSet) -> None:
        command = [
            "pg_dump",
            "--clean",
            "--if-exists",
            "-U",
            self.config.database_user,
            self.config.database_name,
        ]
        try:
            with backup_set.database_dump.open("xb") as raw_handle, gzip.GzipFile(
                filename="", mode="wb", fileobj=raw_handle
            ) as compressed_handle:
                self.gateway.run_in_database(command, stdout=compressed_handle)
        except Exception as error:  # pylint: disable=broad-except
            raise _stage_failure("database", error, backup_set) from error

    def _archive_files(self, backup_set: BackupSet) -> None:
        try:
            if not self.config.data_dir.is_dir():
                raise FileNotFoundError(f"data directory not found at {self.config.data_dir}")
            with tarfile.open(backup_set.file_archive, "x:gz") as archive:
                archive.add(self.config.data_dir, arcname=".")
        except Exception as error:  # pylint: disable=broad-except
            raise _stage_failure("files", error, backup_set) from error

    def _snapshot_config(self, backup_set: BackupSet) -> None:
        try:
            with self.config.env_file.open("rb") as source, backup_set.config_snapshot.open("xb") as target:
                shutil.copyfileobj(source, target)
            # The env file holds credentials.
            os.chmod(backup_set.config_snapshot, 0o600)
        except Exception as error:  # pylint: disable=broad-except
            raise _stage_failure("config", error, backup_set) from error


def list_backup_sets(backup_dir: Path) -> list[BackupSetStatus]:
    if not backup_dir.is_dir():
        return []

    found: dict[str, set[ArtifactKind]] = defaultdict(set)
    for entry in backup_dir.iterdir():
        match = _ARTIFACT_NAME_PATTERN.match(entry.name)
        if match is None or not entry.is_file():
            continue
        kind = ArtifactKind(match.group(1))
        if (match.group(3) or "") != kind.suffix:
            continue
        found[match.group(2)].add(kind)

    statuses: list[BackupSetStatus] = []
    for timestamp in sorted(found):
        present = tuple(kind for kind in ArtifactKind if kind in found[timestamp])
        missing = tuple(kind for kind in ArtifactKind if kind not in found[timestamp])
        statuses.append(BackupSetStatus(timestamp=timestamp, present=present, missing=missing))
    return statuses


def restorable_timestamps(backup_dir: Path) -> tuple[str, ...]:
    return tuple(status.timestamp for status in list_backup_sets(backup_dir) if status.is_complete)


def resolve_backup_set(backup_dir: Path, timestamp: str) -> BackupSet:
    normalized = timestamp.strip()
    available = restorable_timestamps(backup_dir)
    if not TIMESTAMP_PATTERN.match(normalized):
        raise ValidationError(
            f"invalid backup timestamp {timestamp!r}; expected YYYYMMDD_HHMMSS",
            available=available,
        )

    backup_set = BackupSet.at(backup_dir, normalized)
    missing = [kind.value for kind, path in backup_set.artifacts.items() if not path.is_file()]
    if len(missing) == len(ArtifactKind):
        raise ValidationError(f"backup set {normalized} not found in {backup_dir}", available=available)
    if missing:
        raise ValidationError(
            f"backup set {normalized} is incomplete (missing: {', '.join(missing)})",
            available=available,
        )
    return backup_set


def _stage_failure(stage: str, error: Exception, backup_set: BackupSet) -> PartialArtifactFailure:
    return PartialArtifactFailure(
        stage=stage,
        reason=_error_message(error),
        existing_artifacts=backup_set.existing_artifacts(),
    )


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _error_message(error: BaseException) -> str:
    if isinstance(error, StackOperationError):
        return error.reason
    message = str(error).strip()
    return message or error.__class__.__name__
