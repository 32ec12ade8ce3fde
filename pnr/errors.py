from __future__ import annotations


class ReconcileError(Exception):
    """Base error. Names the subsystem and, when one exists, the manual fix."""

    fatal = True

    def __init__(self, message: str, subsystem: str = "core", remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.subsystem = subsystem
        self.remediation = remediation

    def __str__(self) -> str:
        text = f"[{self.subsystem}] {self.message}"
        if self.remediation:
            text += f" (fix: {self.remediation})"
        return text


class AllocationExhausted(ReconcileError):
    def __init__(self, message: str, remediation: str | None = None) -> None:
        super().__init__(message, subsystem="ports", remediation=remediation)


class ExternalToolUnavailable(ReconcileError):
    pass


class PermissionDenied(ReconcileError):
    pass


class ReconciliationTimeout(ReconcileError):
    pass


class BackendDegraded(ReconcileError):
    fatal = False


class BestEffortFailure(ReconcileError):
    fatal = False
