"""AppForge Error Hierarchy.

Structured exception types for the versioned deployment engine.
"""

from __future__ import annotations


class AppForgeError(Exception):
    """Base error for all AppForge exceptions."""

    code = "APPFORGE_ERROR"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(AppForgeError):
    """Input validation failed (unsafe name, path or content)."""

    code = "VALIDATION"


# Lookup Errors
class AppNotFoundError(AppForgeError):
    """No app with the given name exists in the ledger."""

    code = "APP_NOT_FOUND"

    def __init__(self, app_name: str):
        super().__init__(f"App {app_name} not found", {"app": app_name})
        self.app_name = app_name


class AppExistsError(AppForgeError):
    """An app with the given name already exists."""

    code = "APP_EXISTS"

    def __init__(self, app_name: str):
        super().__init__(f"App {app_name} already exists", {"app": app_name})
        self.app_name = app_name


class VersionNotFoundError(AppForgeError):
    """Requested version is not recorded for the app."""

    code = "VERSION_NOT_FOUND"

    def __init__(self, app_name: str, version: str, available: list[str] | None = None):
        available = available or []
        message = f"Version {version} not found for {app_name}"
        if available:
            message += f". Available: {', '.join(available)}"
        super().__init__(message, {"app": app_name, "version": version, "available": available})
        self.app_name = app_name
        self.version = version
        self.available = available


# Generation Errors
class GenerationError(AppForgeError):
    """The content-generation collaborator failed."""

    code = "GENERATION_ERROR"


class AnalysisFailure(GenerationError):
    """App analysis call failed or returned unparseable content."""

    code = "ANALYSIS_FAILURE"


class FileWriteFailure(AppForgeError):
    """A single generated file could not be written (unsafe path or I/O)."""

    code = "FILE_WRITE_FAILURE"

    def __init__(self, message: str, path: str = None):
        super().__init__(message, {"path": path})
        self.path = path


# Build / Deploy Errors
class BuildFailure(AppForgeError):
    """Container image build failed."""

    code = "BUILD_FAILURE"

    def __init__(self, message: str, diagnostics: str = "", attempts: int = 1):
        super().__init__(message, {"attempts": attempts})
        self.diagnostics = diagnostics
        self.attempts = attempts


class HealthCheckFailure(AppForgeError):
    """A deployed container did not become healthy within its budget."""

    code = "HEALTH_CHECK_FAILURE"

    def __init__(self, message: str, container: str = None, port: int = None):
        super().__init__(message, {"container": container, "port": port})
        self.container = container
        self.port = port


# State Errors
class BackupFailure(AppForgeError):
    """A snapshot could not be created."""

    code = "BACKUP_FAILURE"


class RestoreFailure(AppForgeError):
    """A snapshot could not be restored."""

    code = "RESTORE_FAILURE"

    def __init__(self, message: str, app_name: str = None, version: str = None):
        super().__init__(message, {"app": app_name, "version": version})
        self.app_name = app_name
        self.version = version


class LedgerWriteFailure(AppForgeError):
    """The version ledger could not be persisted."""

    code = "LEDGER_WRITE_FAILURE"


class LedgerReadFailure(AppForgeError):
    """The persisted ledger exists but could not be parsed."""

    code = "LEDGER_READ_FAILURE"
