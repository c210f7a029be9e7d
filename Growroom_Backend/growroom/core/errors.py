from __future__ import annotations

from typing import Any, Optional


class AutomationError(Exception):
    """Base class for errors raised by the automation engine."""

    code = "AUTOMATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AutomationError):
    """Malformed schedule/condition/action parameters. Never persisted."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(AutomationError):
    code = "NOT_FOUND"
    status_code = 404


class OwnershipError(AutomationError):
    """A referenced section or device is not owned by the caller."""

    code = "OWNERSHIP_ERROR"
    status_code = 403


class SectionNotFound(OwnershipError):
    code = "SECTION_NOT_FOUND"
    status_code = 404


class DeviceNotInSection(OwnershipError):
    code = "DEVICE_NOT_IN_SECTION"
    status_code = 400


class ConflictError(AutomationError):
    code = "CONFLICT"
    status_code = 409


class ConcurrencyConflict(ConflictError):
    """A tick would fire while a prior execution is still RUNNING."""

    code = "EXECUTION_RUNNING"


class DataUnavailable(AutomationError):
    """The sensor has no current reading (offline, timeout, missing property)."""

    code = "DATA_UNAVAILABLE"
    status_code = 503


class DispatchError(AutomationError):
    """A device command failed at the device service."""

    code = "DISPATCH_FAILED"
    status_code = 502
