"""Base model for decoded cloud payloads.

Responses use camelCase keys and a handful of "not available" sentinel
strings. :class:`DilinkBaseModel` maps the keys onto snake_case fields,
drops the sentinels so field defaults apply, and keeps the original
mapping in ``raw``.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

_SENTINELS = frozenset({"", "--", "NaN", "nan"})


class DilinkBaseModel(BaseModel):
    """Frozen response model with camelCase aliases and a ``raw`` copy."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    raw: dict[str, Any] = Field(default_factory=dict)
    """Original API payload."""

    @model_validator(mode="before")
    @classmethod
    def _drop_sentinels(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        if "raw" not in values:
            cleaned["raw"] = dict(values)
        return cleaned
