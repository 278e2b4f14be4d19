"""Vehicle list entry."""

from __future__ import annotations

from pydantic import ConfigDict

from pydilink.models._base import DilinkBaseModel


class Vehicle(DilinkBaseModel):
    """One vehicle bound to the account (``getAllListByUserId``)."""

    model_config = ConfigDict(protected_namespaces=())

    vin: str
    auto_alias: str | None = None
    auto_plate: str | None = None
    brand_name: str | None = None
    model_name: str | None = None
    energy_type: str | None = None
    tbox_version: str | None = None
    total_mileage: float | None = None
    default_car: bool = False
    vehicle_time_zone: str | None = None

    @property
    def display_name(self) -> str:
        return self.auto_alias or self.model_name or self.vin
