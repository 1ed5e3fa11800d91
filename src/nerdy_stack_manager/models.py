from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class ArtifactKind(str, Enum):
    DATABASE = "database"
    FILES = "files"
    CONFIG = "env"

    @property
    def suffix(self) -> str:
        return _ARTIFACT_SUFFIXES[self]

    def filename(self, timestamp: str) -> str:
        return f"{self.value}_{timestamp}{self.suffix}"


_ARTIFACT_SUFFIXES = {
    ArtifactKind.DATABASE: ".sql.gz",
    ArtifactKind.FILES: ".tar.gz",
    ArtifactKind.CONFIG: "",
}


@dataclass(frozen=True)
class BackupSet:
    timestamp: str
    database_dump: Path
    file_archive: Path
    config_snapshot: Path

    @classmethod
    def at(cls, backup_dir: Path, timestamp: str) -> BackupSet:
        return cls(
            timestamp=timestamp,
            database_dump=backup_dir / ArtifactKind.DATABASE.filename(timestamp),
            file_archive=backup_dir / ArtifactKind.FILES.filename(timestamp),
            config_snapshot=backup_dir / ArtifactKind.CONFIG.filename(timestamp),
        )

    @property
    def artifacts(self) -> dict[ArtifactKind, Path]:
        return {
            ArtifactKind.DATABASE: self.database_dump,
            ArtifactKind.FILES: self.file_archive,
            ArtifactKind.CONFIG: self.config_snapshot,
        }

    def existing_artifacts(self) -> tuple[Path, ...]:
        return tuple(path for path in self.artifacts.values() if path.is_file())


@dataclass(frozen=True)
class BackupSetStatus:
    timestamp: str
    present: tuple[ArtifactKind, ...]
    missing: tuple[ArtifactKind, ...]

    @property
    def is_complete(self) -> bool:
        return not self.missing


@dataclass(frozen=True)
class BackupResult:
    timestamp: str
    status: str
    started_at: str
    finished_at: str
    artifacts: tuple[Path, ...] = ()
    failed_stage: str | None = None
    message: str = ""


class RestoreState(str, Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    CONFIRMING = "Confirming"
    STOPPED = "Stopped"
    DATABASE_RESTORING = "DatabaseRestoring"
    DATABASE_READY = "DatabaseReady"
    FILES_RESTORING = "FilesRestoring"
    RESTARTING = "Restarting"
    ABORTED = "Aborted"


@dataclass(frozen=True)
class RestoreResult:
    timestamp: str
    status: str
    state: RestoreState
    started_at: str
    finished_at: str
    transitions: tuple[RestoreState, ...] = ()
    failed_stage: str | None = None
    message: str = ""


class CheckName(str, Enum):
    PROCESS_UP = "ProcessUp"
    ENDPOINT_UP = "EndpointUp"
    DATABASE_READY = "DatabaseReady"
    DISK_OK = "DiskOK"


@dataclass(frozen=True)
class CheckResult:
    name: CheckName
    ok: bool
    detail: str


@dataclass(frozen=True)
class HealthReport:
    checks: tuple[CheckResult, ...]
    checked_at: str = ""

    @property
    def healthy(self) -> bool:
        return all(check.ok for check in self.checks)

    def get(self, name: CheckName) -> CheckResult:
        for check in self.checks:
            if check.name == name:
                return check
        raise KeyError(name.value)


@dataclass(frozen=True)
class OperationRecord:
    operation: str
    target: str
    status: str
    started_at: str
    finished_at: str
    stage: str | None = None
    message: str = ""
