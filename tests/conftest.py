from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from fakes import InMemoryStackGateway, SteppingClock
from nerdy_stack_manager.config import AppConfig


@pytest.fixture
def stack_config(tmp_path: Path) -> AppConfig:
    project_dir = tmp_path / "n8n"
    data_dir = project_dir / "data"
    data_dir.mkdir(parents=True)
    (data_dir / "config").write_text('{"encryptionKey": "k1"}', encoding="utf-8")
    (data_dir / "nodes").mkdir()
    (data_dir / "nodes" / "custom.js").write_text("module.exports = {};", encoding="utf-8")
    env_file = project_dir / ".env"
    env_file.write_text("POSTGRES_PASSWORD=secret\n", encoding="utf-8")

    return AppConfig(
        runtime="compose",
        project_dir=project_dir,
        data_dir=data_dir,
        env_file=env_file,
        backup_dir=tmp_path / "backups",
        metadata_db_path=tmp_path / "state" / "operations.db",
        database_ready_attempts=3,
        database_ready_interval_seconds=0.0,
        database_probe_timeout_seconds=1,
        disk_threshold_percent=80,
        disk_path=None,
    )


@pytest.fixture
def gateway() -> InMemoryStackGateway:
    return InMemoryStackGateway(rows=["workflow-1"])


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock(datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC))
