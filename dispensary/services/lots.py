"""Locations, lots and lot capacity."""

from __future__ import annotations

import logging

from dispensary.errors import NotFound, ValidationError
from dispensary.models import Location, Lot
from dispensary.storage import InventoryStore


logger = logging.getLogger("dispensary.lots")


class LotCapacityTracker:
    def __init__(self, store: InventoryStore):
        self.store = store

    def current_capacity(self, lot_id: str) -> int:
        # Recomputed on every call; lots never cache their fill level.
        return self.store.sum_lot_total_quantity(lot_id)

    def capacity_summary(self, lot: Lot) -> dict[str, int | None]:
        current = self.current_capacity(lot.id)
        available = None
        if lot.max_capacity is not None:
            available = max(lot.max_capacity - current, 0)
        return {
            "max_capacity": lot.max_capacity,
            "current_capacity": current,
            "available_capacity": available,
        }

    # locations

    def create_location(self, name: str, temp: str, clinic_id: str) -> Location:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Location name is required.")
        temp = (temp or "").strip().lower().replace(" ", "_")
        if temp not in Location.TEMPERATURES:
            raise ValidationError(
                f"Location temperature must be one of: {', '.join(Location.TEMPERATURES)}."
            )
        location = self.store.insert_location(name=name, temp=temp, clinic_id=clinic_id)
        logger.info("Created location %s for clinic %s", location.id, clinic_id)
        return location

    def get_location(self, location_id: str, clinic_id: str) -> Location | None:
        return self.store.get_location(location_id, clinic_id)

    def list_locations(self, clinic_id: str) -> list[Location]:
        return self.store.list_locations(clinic_id)

    # lots

    def create_lot(
        self,
        source: str,
        location_id: str,
        clinic_id: str,
        *,
        note: str | None = None,
        max_capacity: int | None = None,
    ) -> Lot:
        source = (source or "").strip()
        if not source:
            raise ValidationError("Lot source is required.")
        if max_capacity is not None and max_capacity <= 0:
            raise ValidationError("Lot max capacity must be greater than 0.")
        if self.store.get_location(location_id, clinic_id) is None:
            raise NotFound("Location not found")

        lot = self.store.insert_lot(
            source=source,
            note=note,
            location_id=location_id,
            clinic_id=clinic_id,
            max_capacity=max_capacity,
        )
        logger.info(
            "Created lot %s in location %s (max capacity %s)",
            lot.id,
            location_id,
            max_capacity,
        )
        return lot

    def get_lot(self, lot_id: str, clinic_id: str) -> Lot | None:
        return self.store.get_lot(lot_id, clinic_id)

    def list_lots(self, clinic_id: str) -> list[tuple[Lot, dict[str, int | None]]]:
        return [(lot, self.capacity_summary(lot)) for lot in self.store.list_lots(clinic_id)]
