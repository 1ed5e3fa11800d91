from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

from .models import BackupResult, OperationRecord, RestoreResult


class OperationHistoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS operation_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation TEXT NOT NULL,
                    target TEXT NOT NULL,
                    status TEXT NOT NULL,
                    stage TEXT,
                    message TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_operation_history_lookup
                ON operation_history(operation, status, finished_at)
                """
            )
            connection.commit()

    def record(self, record: OperationRecord) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO operation_history (
                    operation,
                    target,
                    status,
                    stage,
                    message,
                    started_at,
                    finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.operation,
                    record.target,
                    record.status,
                    record.stage,
                    record.message,
                    record.started_at,
                    record.finished_at,
                ),
            )
            connection.commit()

    def record_backup(self, result: BackupResult) -> None:
        self.record(
            OperationRecord(
                operation="backup",
                target=result.timestamp,
                status=result.status,
                started_at=result.started_at,
                finished_at=result.finished_at,
                stage=result.failed_stage,
                message=result.message,
            )
        )

    def record_restore(self, result: RestoreResult) -> None:
        self.record(
            OperationRecord(
                operation="restore",
                target=result.timestamp,
                status=result.status,
                started_at=result.started_at,
                finished_at=result.finished_at,
                stage=result.failed_stage,
                message=result.message,
            )
        )

    def get_last_success(self, operation: str) -> dict[str, Any] | None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT target, finished_at
                FROM operation_history
                WHERE operation = ? AND status = 'success'
                ORDER BY finished_at DESC, id DESC
                LIMIT 1
                """,
                (operation,),
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return {"target": row[0], "finished_at": row[1]}

    def get_recent_results(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT operation, target, status, stage, message, started_at, finished_at
                FROM operation_history
                ORDER BY finished_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "operation": row[0],
                "target": row[1],
                "status": row[2],
                "stage": row[3],
                "message": row[4],
                "started_at": row[5],
                "finished_at": row[6],
            }
            for row in rows
        ]
