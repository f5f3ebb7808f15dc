"""JSON envelopes shared by the therapy tools.

Every tool answers with one of two shapes::

    {"status": "ok", "data": ...}
    {"status": "error", "error": {"kind": ..., "message_en": ..., "message_ar": ..., "details": {...}}}
"""

from __future__ import annotations

import json
from typing import Any, Callable, TypeVar

from tdi.core.errors import AnalyticsError, ServiceError, ServiceResult

T = TypeVar("T")


def ok(data: Any) -> str:
    return json.dumps({"status": "ok", "data": data}, ensure_ascii=False, default=str)


def error(err: ServiceError) -> str:
    return json.dumps({"status": "error", "error": err.to_dict()}, ensure_ascii=False, default=str)


def from_exception(exc: AnalyticsError) -> str:
    return error(exc.to_service_error())


def invalid_input(exc: Exception) -> str:
    """Malformed tool arguments (missing keys, bad dates, unknown enums)."""
    return error(ServiceError(
        kind="validation",
        message_en=f"Invalid input: {exc}",
        message_ar="مدخلات غير صالحة",
        details={"exception": type(exc).__name__},
    ))


def from_result(result: ServiceResult[T], render: Callable[[T], Any]) -> str:
    if result.error is not None:
        return error(result.error)
    return ok(render(result.data))  # type: ignore[arg-type]
