from __future__ import annotations

from typing import Any

import streamlit as st

from nerdy_stack_manager.backup import BackupEngine, list_backup_sets
from nerdy_stack_manager.config import AppConfig, ensure_directories, load_config
from nerdy_stack_manager.errors import ConfigurationError, next_step_hint
from nerdy_stack_manager.health import HealthAggregator
from nerdy_stack_manager.metadata import OperationHistoryStore
from nerdy_stack_manager.models import BackupResult, BackupSetStatus, HealthReport, RestoreResult
from nerdy_stack_manager.restore import ConfirmationCallback, RestoreEngine
from nerdy_stack_manager.runtime import RuntimeGateway, build_runtime_gateway

_RESTORE_CONFIRMATION_HELP = "Type 'yes' to confirm. Any other answer cancels the restore without side effects."


def _initialize_state() -> None:
    defaults = {
        "last_health_report": None,
        "last_backup_result": None,
        "last_restore_result": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_health_rows(report: HealthReport) -> list[dict[str, str]]:
    return [
        {
            "check": check.name.value,
            "status": "pass" if check.ok else "fail",
            "detail": check.detail,
        }
        for check in report.checks
    ]


def _build_inventory_rows(statuses: list[BackupSetStatus]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for status in reversed(statuses):
        rows.append(
            {
                "timestamp": status.timestamp,
                "status": "complete" if status.is_complete else "incomplete",
                "present": ",".join(kind.value for kind in status.present),
                "missing": ",".join(kind.value for kind in status.missing) or "none",
            }
        )
    return rows


def _build_backup_result_row(result: BackupResult) -> dict[str, str]:
    actionable_message = "Backup completed successfully."
    if result.status != "success":
        actionable_message = next_step_hint(result.message)
    return {
        "timestamp": result.timestamp,
        "status": result.status,
        "artifacts": ", ".join(str(path) for path in result.artifacts),
        "finished_at": result.finished_at,
        "actionable_message": actionable_message,
    }


def _build_restore_result_row(result: RestoreResult) -> dict[str, str]:
    if result.status == "success":
        actionable_message = "Restore completed successfully."
    elif result.failed_stage == "confirm":
        actionable_message = "Restore cancelled; nothing was changed."
    else:
        actionable_message = next_step_hint(result.message)
    return {
        "timestamp": result.timestamp,
        "status": result.status,
        "state": result.state.value,
        "path": " -> ".join(state.value for state in result.transitions),
        "finished_at": result.finished_at,
        "actionable_message": actionable_message,
    }


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        status = str(row.get("status", ""))
        message = str(row.get("message", "") or "")
        actionable_message = "Completed successfully."
        if status == "aborted" and row.get("stage") == "confirm":
            actionable_message = "Cancelled by operator."
        elif status != "success":
            actionable_message = next_step_hint(message)

        rendered_rows.append(
            {
                "operation": str(row.get("operation", "")),
                "target": str(row.get("target", "")),
                "status": status,
                "finished_at": str(row.get("finished_at", "")),
                "message": message,
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _build_settings_rows(config: AppConfig) -> list[dict[str, str]]:
    return [
        {"setting": "runtime", "value": config.runtime},
        {"setting": "backup_dir", "value": str(config.backup_dir)},
        {"setting": "data_dir", "value": str(config.data_dir)},
        {"setting": "env_file", "value": str(config.env_file)},
        {"setting": "health_url", "value": config.health_url},
        {"setting": "disk_threshold_percent", "value": str(config.disk_threshold_percent)},
    ]


def _typed_confirmation(answer: str) -> ConfirmationCallback:
    def _confirm(_prompt: str) -> str | None:
        return answer

    return _confirm


def _connect(config: AppConfig) -> RuntimeGateway | None:
    try:
        return build_runtime_gateway(config)
    except Exception as error:  # pylint: disable=broad-except
        st.error(f"Runtime connection failed: {error}")
        return None


def main() -> None:
    st.set_page_config(page_title="Nerdy Stack Manager", layout="wide")
    _initialize_state()

    try:
        config = load_config()
    except ConfigurationError as error:
        st.error(str(error))
        return
    ensure_directories(config)

    st.title("Nerdy Stack Manager")
    st.caption("Health checks, point-in-time backups and guarded restores for the application stack.")

    st.sidebar.header("Settings")
    st.sidebar.dataframe(_build_settings_rows(config), use_container_width=True, hide_index=True)
    st.sidebar.caption("Settings come from NSM_* environment variables or NSM_CONFIG_FILE.")

    gateway = _connect(config)
    if gateway is None:
        return

    history_store = OperationHistoryStore(config.metadata_db_path)
    history_store.initialize()

    st.subheader("Health")
    if st.button("Run health check", type="primary"):
        with st.spinner("Probing containers, endpoint, database and disk..."):
            st.session_state.last_health_report = HealthAggregator(gateway=gateway, config=config).check_health()

    report: HealthReport | None = st.session_state.last_health_report
    if report is not None:
        if report.healthy:
            st.success(f"All checks passed at {report.checked_at}.")
        else:
            st.error(f"Health check failed at {report.checked_at}.")
        st.dataframe(_build_health_rows(report), use_container_width=True, hide_index=True)

    st.subheader("Backups")
    last_backup = history_store.get_last_success("backup")
    st.caption(f"Last successful backup: {last_backup['target'] if last_backup else 'never'}")
    if st.button("Create backup"):
        with st.spinner("Dumping database and archiving data directory..."):
            result = BackupEngine(gateway=gateway, config=config).create_backup()
        history_store.record_backup(result)
        st.session_state.last_backup_result = result

    backup_result: BackupResult | None = st.session_state.last_backup_result
    if backup_result is not None:
        row = _build_backup_result_row(backup_result)
        if backup_result.status == "success":
            st.success(f"Backup {backup_result.timestamp} created.")
        else:
            st.error(row["actionable_message"])
        st.dataframe([row], use_container_width=True, hide_index=True)

    statuses = list_backup_sets(config.backup_dir)
    if statuses:
        st.dataframe(_build_inventory_rows(statuses), use_container_width=True, hide_index=True)
        incomplete = [status.timestamp for status in statuses if not status.is_complete]
        if incomplete:
            st.warning(f"Incomplete backup sets cannot be restored: {', '.join(incomplete)}")
    else:
        st.info("No backups yet. Create the first one above.")

    st.subheader("Restore")
    restorable = [status.timestamp for status in reversed(statuses) if status.is_complete]
    if restorable:
        selected_timestamp = st.selectbox("Backup set", options=restorable, index=0)
        st.warning(
            "Restoring stops the whole service, replaces the database and the data directory, "
            "then starts the service again. This cannot be undone."
        )
        answer = st.text_input("Confirm restore", value="", help=_RESTORE_CONFIRMATION_HELP)
        if st.button("Restore selected backup"):
            engine = RestoreEngine(gateway=gateway, config=config, confirm=_typed_confirmation(answer))
            with st.spinner(f"Restoring {selected_timestamp}..."):
                restore_result = engine.restore(selected_timestamp)
            history_store.record_restore(restore_result)
            st.session_state.last_restore_result = restore_result
    else:
        st.info("No complete backup set is available for restore.")

    restore_result_state: RestoreResult | None = st.session_state.last_restore_result
    if restore_result_state is not None:
        row = _build_restore_result_row(restore_result_state)
        if restore_result_state.status == "success":
            st.success(row["actionable_message"])
        elif restore_result_state.status == "aborted":
            st.info(row["actionable_message"])
        else:
            st.error(row["actionable_message"])
        st.dataframe([row], use_container_width=True, hide_index=True)

    st.subheader("Recent Operation History")
    history_rows = _build_history_rows(history_store.get_recent_results(limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No operations recorded yet.")


if __name__ == "__main__":
    main()
