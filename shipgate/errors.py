"""Error hierarchy for shipgate.

Every error raised by the engine carries an ``ErrorKind`` so the kind can be
recorded on a StageResult without keeping the exception object around.
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorKind(str, Enum):
    """Kinds of failure recorded on stage and run results."""
    TOOL_INVOCATION_ERROR = "tool_invocation_error"    # Process failed to start
    TOOL_TIMEOUT = "tool_timeout"                      # Process exceeded its timeout
    TOOL_NON_ZERO_EXIT = "tool_non_zero_exit"          # Process exited with non-zero status
    GATE_FAILURE = "gate_failure"                      # Gate policy violated
    CREDENTIAL_UNAVAILABLE = "credential_unavailable"  # Broker could not issue a lease
    ARTIFACT_STORE_UNAVAILABLE = "artifact_store_unavailable"
    DEFINITION_ERROR = "definition_error"              # Malformed pipeline or gate spec
    ABORTED = "aborted"                                # External abort request
    DEPENDENCY_NOT_MET = "dependency_not_met"          # Hard prerequisite did not pass
    MISSING_OUTPUT = "missing_output"                  # Required output not produced


class ShipgateError(Exception):
    """Base exception for all shipgate errors."""

    kind: ErrorKind = ErrorKind.TOOL_INVOCATION_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ToolInvocationError(ShipgateError):
    """External process could not be started (or was terminated by abort)."""
    kind = ErrorKind.TOOL_INVOCATION_ERROR


class ToolTimeout(ShipgateError):
    """External process was terminated after exceeding its timeout."""
    kind = ErrorKind.TOOL_TIMEOUT

    def __init__(self, message: str, timeout_seconds: float, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.stdout = stdout
        self.stderr = stderr


class ToolNonZeroExit(ShipgateError):
    """External process exited with a non-zero status."""
    kind = ErrorKind.TOOL_NON_ZERO_EXIT

    def __init__(self, message: str, exit_code: int):
        super().__init__(message)
        self.exit_code = exit_code


class GateFailure(ShipgateError):
    """One or more gate policies rejected a tool result."""
    kind = ErrorKind.GATE_FAILURE

    def __init__(self, message: str, failed: Optional[List[Any]] = None):
        super().__init__(message)
        self.failed = failed or []


class CredentialUnavailable(ShipgateError):
    """Credential broker could not issue a lease for a scope."""
    kind = ErrorKind.CREDENTIAL_UNAVAILABLE

    def __init__(self, scope: str, detail: Optional[str] = None):
        message = f"credential unavailable: {scope}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.scope = scope


class ArtifactStoreUnavailable(ShipgateError):
    """Artifact storage write or read failed. Fatal to the run."""
    kind = ErrorKind.ARTIFACT_STORE_UNAVAILABLE


class DefinitionError(ShipgateError):
    """Pipeline or gate definition is malformed. Detected before any stage runs."""
    kind = ErrorKind.DEFINITION_ERROR


class RetentionViolation(ShipgateError):
    """Deletion attempted before the retention period elapsed."""
    kind = ErrorKind.ARTIFACT_STORE_UNAVAILABLE


class ArtifactNotFound(ShipgateError, KeyError):
    """No blob stored under the requested hash."""
    kind = ErrorKind.ARTIFACT_STORE_UNAVAILABLE

    def __str__(self) -> str:
        return self.message
