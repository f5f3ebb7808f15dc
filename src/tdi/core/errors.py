"""Error taxonomy and the structured result returned at module boundaries.

Algorithmic guards (division by zero, empty collections) never raise; they
substitute the neutral values defined here. Missing upstream data degrades to
an empty result. Only genuinely exceptional conditions reach the caller, and
then always with a machine-readable kind plus English and Arabic text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Neutral values substituted by local computation guards
NEUTRAL_SIMILARITY = 0.0
NEUTRAL_CALIBRATION = 0.5


class AnalyticsError(Exception):
    """Base class for errors surfaced by the analytics core."""

    kind = "unknown_error"

    def __init__(self, message_en: str, message_ar: str = "", **details: Any) -> None:
        super().__init__(message_en)
        self.message_en = message_en
        self.message_ar = message_ar or message_en
        self.details = details

    def to_service_error(self) -> ServiceError:
        return ServiceError(
            kind=self.kind,
            message_en=self.message_en,
            message_ar=self.message_ar,
            details=dict(self.details),
        )


class InsufficientDataError(AnalyticsError):
    """Below the minimum sample size for similarity, trend, or forecasting."""

    kind = "insufficient_data"


class NotFoundError(AnalyticsError):
    """A referenced record (e.g. a recommendation id) does not exist."""

    kind = "not_found"


class ValidationError(AnalyticsError):
    """Malformed input such as an empty or unordered time series."""

    kind = "validation"


@dataclass
class ServiceError:
    """Structured failure payload: one message per supported locale."""

    kind: str
    message_en: str
    message_ar: str
    details: dict[str, Any] = field(default_factory=dict)

    def message(self, locale: str = "en") -> str:
        return self.message_ar if locale == "ar" else self.message_en

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message_en": self.message_en,
            "message_ar": self.message_ar,
            "details": self.details,
        }


@dataclass
class ServiceResult(Generic[T]):
    """Either ``data`` or ``error`` is set, never both."""

    data: T | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(data=data)

    @classmethod
    def failure(
        cls,
        kind: str,
        message_en: str,
        message_ar: str,
        **details: Any,
    ) -> ServiceResult[T]:
        return cls(error=ServiceError(kind, message_en, message_ar, details))

    @classmethod
    def from_exception(cls, exc: AnalyticsError) -> ServiceResult[T]:
        return cls(error=exc.to_service_error())
