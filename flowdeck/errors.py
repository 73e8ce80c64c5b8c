"""
Structured Error Taxonomy — Typed exceptions for the flowdeck runtime.

Design principles:
  - Every error carries `retryable` + `error_code` for automated decisions
  - Hierarchy mirrors the runtime layers: Load → Validate → Register → Publish
  - Each class carries a short recovery `hint` for operators
  - Structured logging friendly: all errors serialize cleanly to JSON
"""

from __future__ import annotations

__all__ = [
    # Base
    "FlowdeckError",
    "ConfigurationError",
    # Discovery / loading layer
    "DiscoveryError",
    "LoadError",
    "UnsupportedFormatError",
    "MissingExportError",
    "DefinitionParseError",
    # Validation layer
    "StructuralError",
    # Resilience layer
    "RetryExhaustedError",
    "CircuitOpenError",
    # Watch layer
    "WatchError",
    # Publish layer
    "PublishError",
    # Helpers
    "format_error",
]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Base
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class FlowdeckError(Exception):
    """Root exception for the flowdeck runtime.

    Attributes:
        retryable: If True, the caller should consider retrying the operation.
        error_code: Machine-readable code for dashboards and alerting.
        hint: Human-readable recovery suggestion.
    """

    retryable: bool = False
    error_code: str = "FLOWDECK_ERROR"
    hint: str = "Check the logs for more details."

    def __init__(self, message: str, *, detail: str | None = None):
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize for structured logging."""
        return {
            "error_code": self.error_code,
            "message": str(self),
            "detail": self.detail,
            "retryable": self.retryable,
            "hint": self.hint,
        }


class ConfigurationError(FlowdeckError):
    """Runtime configuration is unusable. Fatal at orchestrator construction."""

    error_code = "CONFIGURATION_ERROR"
    hint = "Check FLOWDECK_* environment variables and the .env file."

    def __init__(self, message: str, *, setting: str = "", **kwargs):
        self.setting = setting
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["setting"] = self.setting
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Discovery & Loading Layer
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class DiscoveryError(FlowdeckError):
    """Enumerating the workflows directory failed."""

    error_code = "DISCOVERY_ERROR"
    hint = "Check that the workflows directory exists and is readable."

    def __init__(self, message: str, *, root: str = "", retryable: bool = False, **kwargs):
        self.root = root
        self.retryable = retryable
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["root"] = self.root
        return d


class LoadError(FlowdeckError):
    """Base for all errors raised while loading a single definition file."""

    error_code = "LOAD_ERROR"
    hint = "Check the workflow file syntax and structure."

    def __init__(self, message: str, *, path: str = "", **kwargs):
        self.path = path
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["path"] = self.path
        return d


class UnsupportedFormatError(LoadError):
    """No registered loader handles the file extension."""

    error_code = "UNSUPPORTED_FORMAT"
    hint = "Use one of the supported extensions: .json, .py, .yaml, .yml."

    def __init__(self, message: str, *, extension: str = "", **kwargs):
        self.extension = extension
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["extension"] = self.extension
        return d


class MissingExportError(LoadError):
    """A scripted definition module does not export the expected name."""

    error_code = "MISSING_EXPORT"
    hint = "Export the definition under the camelCase form of the file name."

    def __init__(self, message: str, *, export_name: str = "", **kwargs):
        self.export_name = export_name
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["export_name"] = self.export_name
        return d


class DefinitionParseError(LoadError):
    """Definition content is malformed or does not fit the definition shape."""

    error_code = "DEFINITION_PARSE"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Validation Layer
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StructuralError(FlowdeckError):
    """A loaded definition failed structural validation.

    Always carries the complete list of violations, never a single cause.
    """

    error_code = "STRUCTURAL_ERROR"
    hint = "Fix every listed violation; connections must reference existing node names."

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs):
        self.errors = list(errors or [])
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["errors"] = self.errors
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Resilience Layer
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class RetryExhaustedError(FlowdeckError):
    """An operation kept failing until the retry budget ran out."""

    error_code = "RETRY_EXHAUSTED"
    hint = "The underlying failure persisted; inspect last_error."

    def __init__(
        self,
        message: str,
        *,
        last_error: BaseException | None = None,
        attempts: int = 0,
        **kwargs,
    ):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["attempts"] = self.attempts
        d["last_error"] = str(self.last_error) if self.last_error else None
        return d


class CircuitOpenError(FlowdeckError):
    """Call rejected because the circuit breaker is open."""

    retryable = True
    error_code = "CIRCUIT_OPEN"
    hint = "The guarded service is failing; calls resume after the reset timeout."

    def __init__(self, message: str, *, breaker_name: str = "", **kwargs):
        self.breaker_name = breaker_name
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["breaker_name"] = self.breaker_name
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Watch Layer
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class WatchError(FlowdeckError):
    """Filesystem observation failed (e.g. watch-descriptor limit reached)."""

    error_code = "WATCH_ERROR"
    hint = "Raise the OS watch limit (fs.inotify.max_user_watches) or disable watch mode."


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Publish Layer
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PublishError(FlowdeckError):
    """Pushing an accepted definition to the execution engine failed."""

    retryable = True
    error_code = "PUBLISH_ERROR"
    hint = "Check the execution engine URL, API key and service health."

    def __init__(
        self,
        message: str,
        *,
        definition_id: str = "",
        status_code: int | None = None,
        retryable: bool = True,
        **kwargs,
    ):
        self.definition_id = definition_id
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["definition_id"] = self.definition_id
        d["status_code"] = self.status_code
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def format_error(exc: BaseException) -> str:
    """Render any exception as a single ``CODE: message`` line for reports."""
    if isinstance(exc, FlowdeckError):
        return f"{exc.error_code}: {exc}"
    return f"{type(exc).__name__}: {exc}"
