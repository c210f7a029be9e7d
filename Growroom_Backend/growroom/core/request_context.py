from __future__ import annotations

from contextvars import ContextVar


request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
path_var: ContextVar[str | None] = ContextVar("path", default=None)
method_var: ContextVar[str | None] = ContextVar("method", default=None)
automation_id_var: ContextVar[int | None] = ContextVar("automation_id", default=None)


def set_request_context(request_id: str | None, path: str | None, method: str | None) -> None:
    request_id_var.set(request_id)
    path_var.set(path)
    method_var.set(method)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_path() -> str | None:
    return path_var.get()


def get_method() -> str | None:
    return method_var.get()


def set_automation_context(automation_id: int | None) -> None:
    """Tags log records emitted while a scheduler tick runs for one automation."""
    automation_id_var.set(automation_id)


def get_automation_id() -> int | None:
    return automation_id_var.get()
