from pathlib import Path

from nerdy_stack_manager.metadata import OperationHistoryStore
from nerdy_stack_manager.models import BackupResult, RestoreResult, RestoreState


def _backup_result(*, timestamp: str, status: str, finished_at: str, message: str = "") -> BackupResult:
    return BackupResult(
        timestamp=timestamp,
        status=status,
        started_at="2026-02-23T10:00:00+00:00",
        finished_at=finished_at,
        failed_stage=None if status == "success" else "database",
        message=message,
    )


def test_get_last_success_tracks_latest_successful_backup(tmp_path: Path) -> None:
    store = OperationHistoryStore(tmp_path / "operations.db")
    store.initialize()

    store.record_backup(
        _backup_result(timestamp="20260223_100000", status="success", finished_at="2026-02-23T10:01:00+00:00")
    )
    store.record_backup(
        _backup_result(timestamp="20260223_110000", status="success", finished_at="2026-02-23T11:01:00+00:00")
    )
    store.record_backup(
        _backup_result(
            timestamp="20260223_120000",
            status="failed",
            finished_at="2026-02-23T12:01:00+00:00",
            message="database stage failed: pg_dump exited with status 1",
        )
    )

    last_success = store.get_last_success("backup")

    assert last_success == {"target": "20260223_110000", "finished_at": "2026-02-23T11:01:00+00:00"}
    assert store.get_last_success("restore") is None


def test_get_recent_results_returns_newest_first_with_stage(tmp_path: Path) -> None:
    store = OperationHistoryStore(tmp_path / "operations.db")
    store.initialize()

    store.record_backup(
        _backup_result(timestamp="20260223_100000", status="success", finished_at="2026-02-23T10:01:00+00:00")
    )
    store.record_restore(
        RestoreResult(
            timestamp="20260223_100000",
            status="aborted",
            state=RestoreState.ABORTED,
            started_at="2026-02-23T10:05:00+00:00",
            finished_at="2026-02-23T10:05:10+00:00",
            failed_stage="confirm",
            message="confirm stage failed: restore not confirmed (response: n)",
        )
    )

    rows = store.get_recent_results(limit=10)

    assert [row["operation"] for row in rows] == ["restore", "backup"]
    assert rows[0]["status"] == "aborted"
    assert rows[0]["stage"] == "confirm"
    assert rows[1]["stage"] is None
    assert len(rows) == 2


def test_get_recent_results_with_non_positive_limit_returns_empty(tmp_path: Path) -> None:
    store = OperationHistoryStore(tmp_path / "nested" / "operations.db")
    store.initialize()

    assert store.get_recent_results(limit=0) == []
    assert store.get_recent_results(limit=10) == []
