from __future__ import annotations

from pathlib import Path


class ConfigurationError(ValueError):
    """Raised when controller settings are invalid."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RuntimeGatewayError(RuntimeError):
    """Raised when the container runtime rejects or fails a command."""


class StackOperationError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage
        self.reason = normalized_reason


class ValidationError(StackOperationError):
    """Requested backup set is malformed, missing or incomplete."""

    def __init__(self, reason: str, *, available: tuple[str, ...] = ()) -> None:
        super().__init__(stage="validate", reason=reason)
        self.available = available


class ConfirmationDeclined(StackOperationError):
    """The operator did not affirm a destructive action. Not a failure."""

    def __init__(self, response: str | None) -> None:
        shown = (response or "").strip() or "<empty>"
        super().__init__(stage="confirm", reason=f"restore not confirmed (response: {shown})")
        self.response = response


class DependencyTimeout(StackOperationError):
    def __init__(self, *, dependency: str, attempts: int, timeout_seconds: float) -> None:
        super().__init__(
            stage="database-ready",
            reason=(
                f"{dependency} did not become ready after {attempts} probe(s) "
                f"of {timeout_seconds:g}s each"
            ),
        )
        self.dependency = dependency


class PartialArtifactFailure(StackOperationError):
    def __init__(self, *, stage: str, reason: str, existing_artifacts: tuple[Path, ...]) -> None:
        super().__init__(stage=stage, reason=reason)
        self.existing_artifacts = existing_artifacts


class IrrecoverableRestoreFailure(StackOperationError):
    """Restore failed after data replay began; the service is left stopped."""


_STAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "prepare stage failed",
        "Check that the backup directory is writable and not already holding this timestamp.",
    ),
    (
        "database stage failed",
        "Confirm the database container is running and pg_dump works; partial artifacts were kept for inspection.",
    ),
    (
        "files stage failed",
        "Verify the data directory exists and is readable by the controller user.",
    ),
    (
        "config stage failed",
        "Verify the env file exists and is readable by the controller user.",
    ),
    (
        "validate stage failed",
        "Run 'list' to see complete backup sets and pass one of their timestamps.",
    ),
    (
        "stop stage failed",
        "Inspect the container runtime; no data was modified.",
    ),
    (
        "database-ready stage failed",
        "The service is stopped. Inspect database logs, then rerun restore or start the service manually.",
    ),
    (
        "database-restore stage failed",
        "The service is stopped and files were not touched. Rerun restore with another set or start manually.",
    ),
    (
        "files-restore stage failed",
        "The service is stopped with a partially restored data directory. Rerun restore before starting.",
    ),
    (
        "restart stage failed",
        "Data was restored but the service did not start. Inspect runtime logs and start it manually.",
    ),
    (
        "unexpected",
        "Inspect controller logs for the full traceback.",
    ),
)


def next_step_hint(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for stage, hint in _STAGE_HINTS:
        if stage in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect controller and container runtime logs for more detail."
