"""Decrypted push-message envelope."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PushMessage(BaseModel):
    """``{event, vin, data: {respondData, requestSerial?, uuid?}}``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    event: str = ""
    vin: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    topic: str = ""

    @field_validator("vin", mode="before")
    @classmethod
    def _blank_vin(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _data_mapping(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @property
    def respond_data(self) -> dict[str, Any]:
        """Inner payload; JSON-string payloads are decoded."""
        value = self.data.get("respondData")
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value if isinstance(value, dict) else {}

    @property
    def request_serial(self) -> str | None:
        """Correlation serial embedded in the message, if any.

        Looked up in ``respondData.requestSerial``, then
        ``data.requestSerial``, then ``data.uuid``.
        """
        for candidate in (
            self.respond_data.get("requestSerial"),
            self.data.get("requestSerial"),
            self.data.get("uuid"),
        ):
            if isinstance(candidate, (str, int)) and str(candidate).strip():
                return str(candidate).strip()
        return None
