"""Base model and enum for provider payloads and canonical models.

Provider response models inherit from :class:`ProviderModel`, which

* maps camelCase provider keys to snake_case fields,
* drops sentinel values (``""``, ``"--"``, NaN) so the field default is used,
* stashes the original payload in ``raw``.

Canonical models use :class:`FleetModel`: frozen, strict about unknown keys.
"""

from __future__ import annotations

import enum
import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce epoch seconds/milliseconds or ISO-8601 strings to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text.lstrip("-").isdigit():
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
        value = int(text)
    ts = int(value)
    if ts >= _MS_THRESHOLD:
        ts = ts // 1000
    return datetime.fromtimestamp(ts, tz=UTC)


Timestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Annotated type accepting epoch ints (seconds or ms) or ISO strings."""


class FleetEnum(enum.StrEnum):
    """Base for string enums that tolerate unknown values.

    Every subclass **must** define ``UNKNOWN = "unknown"``.
    """

    @classmethod
    def _missing_(cls, value: object) -> FleetEnum:
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        unknown: FleetEnum = cls.UNKNOWN  # type: ignore[attr-defined]
        return unknown


class FleetModel(BaseModel):
    """Base for canonical (provider independent) models."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class ProviderModel(BaseModel):
    """Base for adapter-private provider payload models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    raw: dict[str, Any] = Field(default_factory=dict)
    """Original provider payload."""

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_provider_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        cleaned = ProviderModel._clean_dict(values)
        if "raw" not in values:
            cleaned["raw"] = dict(values)
        return cleaned
