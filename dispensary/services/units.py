"""Unit check-in, lookup, search and advanced filtering."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Mapping

from dispensary.errors import (
    CapacityExceeded,
    NotFound,
    PersistenceError,
    ValidationError,
)
from dispensary.mappers import format_strength
from dispensary.models import InventoryTransaction, Lot, Unit
from dispensary.services.ledger import TransactionLedger
from dispensary.services.lots import LotCapacityTracker
from dispensary.storage import InventoryStore
from dispensary.utils.pagination import contains_text, page_window
from dispensary.utils.parsing import clean_text, parse_date, parse_float, parse_int


logger = logging.getLogger("dispensary.units")

EXPIRATION_WINDOWS = {
    "EXPIRED": None,
    "EXPIRING_7_DAYS": 7,
    "EXPIRING_30_DAYS": 30,
    "EXPIRING_60_DAYS": 60,
    "EXPIRING_90_DAYS": 90,
    "ALL": None,
}
SORT_FIELDS = ("EXPIRY_DATE", "MEDICATION_NAME", "QUANTITY", "CREATED_DATE", "STRENGTH")
SORT_ORDERS = ("ASC", "DESC")
MUTABLE_UNIT_FIELDS = ("total_quantity", "available_quantity", "expiry_date", "optional_notes")

SEARCH_MIN_LENGTH = 2
SEARCH_RESULT_LIMIT = 20
SEARCH_ID_FETCH_LIMIT = 50
SEARCH_RECENT_FETCH_LIMIT = 100

_UNIT_ID_PATTERN = re.compile(r"^[a-f0-9-]+$", re.IGNORECASE)
_NUMERIC_PATTERN = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)$")


@dataclass
class CreateUnitInput:
    total_quantity: int
    lot_id: str
    expiry_date: date
    drug_id: str
    available_quantity: int | None = None
    patient_reference_id: str | None = None
    optional_notes: str | None = None
    manufacturer_lot_number: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CreateUnitInput":
        total = parse_int(data.get("total_quantity"), "Total quantity")
        lot_id = clean_text(data.get("lot_id"))
        drug_id = clean_text(data.get("drug_id"))
        expiry = parse_date(data.get("expiry_date"), "Expiry date")
        if total is None:
            raise ValidationError("Total quantity is required.")
        if not lot_id:
            raise ValidationError("Lot is required.")
        if not drug_id:
            raise ValidationError("Drug is required.")
        if expiry is None:
            raise ValidationError("Expiry date is required.")
        return cls(
            total_quantity=total,
            lot_id=lot_id,
            expiry_date=expiry,
            drug_id=drug_id,
            available_quantity=parse_int(data.get("available_quantity"), "Available quantity"),
            patient_reference_id=clean_text(data.get("patient_reference_id")),
            optional_notes=clean_text(data.get("optional_notes")),
            manufacturer_lot_number=clean_text(data.get("manufacturer_lot_number")),
        )


@dataclass
class UnitFilters:
    expiration_window: str | None = None
    expiry_date_from: date | None = None
    expiry_date_to: date | None = None
    location_ids: list[str] = field(default_factory=list)
    min_strength: float | None = None
    max_strength: float | None = None
    strength_unit: str | None = None
    medication_name: str | None = None
    generic_name: str | None = None
    ndc_id: str | None = None
    sort_by: str = "EXPIRY_DATE"
    sort_order: str = "ASC"

    def __post_init__(self) -> None:
        if self.expiration_window:
            self.expiration_window = self.expiration_window.upper()
            if self.expiration_window not in EXPIRATION_WINDOWS:
                raise ValidationError(
                    f"Unknown expiration window: {self.expiration_window}"
                )
        self.sort_by = (self.sort_by or "EXPIRY_DATE").upper()
        self.sort_order = (self.sort_order or "ASC").upper()
        if self.sort_by not in SORT_FIELDS:
            raise ValidationError(f"Unknown sort field: {self.sort_by}")
        if self.sort_order not in SORT_ORDERS:
            raise ValidationError(f"Unknown sort order: {self.sort_order}")

    @property
    def has_date_range(self) -> bool:
        return self.expiry_date_from is not None or self.expiry_date_to is not None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UnitFilters":
        raw_locations = data.get("location_ids") or []
        if isinstance(raw_locations, str):
            raw_locations = raw_locations.split(",")
        return cls(
            expiration_window=clean_text(data.get("expiration_window")),
            expiry_date_from=parse_date(data.get("expiry_date_from"), "Expiry date from"),
            expiry_date_to=parse_date(data.get("expiry_date_to"), "Expiry date to"),
            location_ids=[loc.strip() for loc in raw_locations if loc and loc.strip()],
            min_strength=parse_float(data.get("min_strength"), "Minimum strength"),
            max_strength=parse_float(data.get("max_strength"), "Maximum strength"),
            strength_unit=clean_text(data.get("strength_unit")),
            medication_name=clean_text(data.get("medication_name")),
            generic_name=clean_text(data.get("generic_name")),
            ndc_id=clean_text(data.get("ndc_id")),
            sort_by=clean_text(data.get("sort_by")) or "EXPIRY_DATE",
            sort_order=clean_text(data.get("sort_order")) or "ASC",
        )


def _unit_matches(unit: Unit, needle: str) -> bool:
    drug = unit.drug
    lot = unit.lot
    candidates: list[object | None] = [
        unit.optional_notes,
        unit.id,
        unit.available_quantity,
        unit.total_quantity,
    ]
    if drug is not None:
        candidates.extend([drug.medication_name, drug.generic_name, drug.ndc_id, drug.form])
    if lot is not None:
        candidates.extend([lot.source, lot.note])
    return any(contains_text(value, needle) for value in candidates)


def _strength_matches(strength: float | None, needle: str, numeric: float | None) -> bool:
    if strength is None:
        return False
    strength_text = format_strength(strength)
    if numeric is not None:
        return strength == numeric or needle in strength_text
    return strength_text in needle or needle in strength_text


class UnitStore:
    def __init__(
        self,
        store: InventoryStore,
        capacity: LotCapacityTracker | None = None,
        ledger: TransactionLedger | None = None,
        *,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.capacity = capacity or LotCapacityTracker(store)
        self.ledger = ledger or TransactionLedger(store)
        self.today = today

    def create_unit(
        self, data: CreateUnitInput, acting_user_id: str, clinic_id: str
    ) -> Unit:
        total = data.total_quantity
        available = total if data.available_quantity is None else data.available_quantity
        if total <= 0:
            raise ValidationError("Total quantity must be greater than 0.")
        if available < 0 or available > total:
            raise ValidationError(
                "Available quantity must be between 0 and the total quantity."
            )

        logger.info(
            "Creating unit: total=%s available=%s lot=%s expiry=%s clinic=%s",
            total,
            available,
            data.lot_id,
            data.expiry_date,
            clinic_id,
        )

        if self.store.get_drug(data.drug_id) is None:
            raise NotFound("Drug not found")

        lot = self.store.get_lot(data.lot_id, clinic_id)
        if lot is None:
            raise NotFound("Lot not found")

        if lot.max_capacity is not None:
            current = self.capacity.current_capacity(lot.id)
            if current + total > lot.max_capacity:
                raise CapacityExceeded(
                    "Cannot add unit: Would exceed lot capacity. "
                    f"Current: {current}/{lot.max_capacity}, "
                    f"Attempting to add: {total}, "
                    f"Available: {lot.max_capacity - current}"
                )

        unit_id = str(uuid.uuid4())
        unit = self.store.insert_unit(
            id=unit_id,
            qr_code=unit_id,
            total_quantity=total,
            available_quantity=available,
            lot_id=lot.id,
            expiry_date=data.expiry_date,
            drug_id=data.drug_id,
            user_id=acting_user_id,
            patient_reference_id=data.patient_reference_id,
            optional_notes=data.optional_notes,
            manufacturer_lot_number=data.manufacturer_lot_number,
            clinic_id=clinic_id,
        )
        logger.info("Unit %s created (total=%s, available=%s)", unit.id, total, available)

        # The unit is the durable fact; its ledger entries are best-effort.
        self._record_best_effort(
            InventoryTransaction.CHECK_IN,
            total,
            unit.id,
            acting_user_id,
            clinic_id,
            notes="Initial check-in",
        )
        if available < total:
            self._record_best_effort(
                InventoryTransaction.ADJUST,
                total - available,
                unit.id,
                acting_user_id,
                clinic_id,
                notes="Partial check-in",
            )
        return unit

    def _record_best_effort(
        self,
        tx_type: str,
        quantity: int,
        unit_id: str,
        acting_user_id: str,
        clinic_id: str,
        *,
        notes: str,
    ) -> None:
        try:
            self.ledger.record_transaction(
                tx_type, quantity, unit_id, acting_user_id, clinic_id, notes=notes
            )
        except PersistenceError as exc:
            logger.error(
                "Unit %s kept without its %s transaction: %s", unit_id, tx_type, exc
            )

    def get_unit(self, unit_id: str, clinic_id: str) -> Unit | None:
        return self.store.get_unit(unit_id, clinic_id)

    def list_units(
        self,
        clinic_id: str,
        page: int = 1,
        page_size: int = 50,
        search: str | None = None,
    ) -> dict[str, Any]:
        offset, limit = page_window(page, page_size)
        units, count = self.store.select_units(
            clinic_id,
            order_by=[Unit.date_created.desc()],
            offset=offset,
            limit=limit,
            with_count=True,
        )

        # Search only narrows the fetched page, not the whole clinic.
        if search:
            needle = search.lower()
            units = [unit for unit in units if _unit_matches(unit, needle)]

        return {
            "units": units,
            "total": len(units) if search else (count or 0),
            "page": page,
            "page_size": page_size,
        }

    def search_units(self, query: str | None, clinic_id: str) -> list[Unit]:
        if not query or not isinstance(query, str):
            return []
        trimmed = query.strip()
        if len(trimmed) < SEARCH_MIN_LENGTH:
            return []

        needle = trimmed.lower()
        numeric = float(needle) if _NUMERIC_PATTERN.match(needle) else None
        looks_like_unit_id = len(trimmed) >= 8 and bool(_UNIT_ID_PATTERN.match(trimmed))

        filters = [Unit.available_quantity > 0]
        if looks_like_unit_id:
            filters.append(Unit.id.ilike(f"%{needle}%"))
            units, _ = self.store.select_units(
                clinic_id, filters, limit=SEARCH_ID_FETCH_LIMIT
            )
        else:
            units, _ = self.store.select_units(
                clinic_id,
                filters,
                order_by=[Unit.date_created.desc()],
                limit=SEARCH_RECENT_FETCH_LIMIT,
            )

        matches = []
        for unit in units:
            drug = unit.drug
            if drug is None:
                continue
            if (
                needle in unit.id.lower()
                or contains_text(drug.medication_name, needle)
                or contains_text(drug.generic_name, needle)
                or _strength_matches(drug.strength, needle, numeric)
            ):
                matches.append(unit)
        return matches[:SEARCH_RESULT_LIMIT]

    def update_unit(
        self,
        unit_id: str,
        clinic_id: str,
        updates: Mapping[str, Any],
        *,
        acting_user_id: str | None = None,
    ) -> Unit:
        unknown = set(updates) - set(MUTABLE_UNIT_FIELDS)
        if unknown:
            raise ValidationError(
                f"Cannot update unit fields: {', '.join(sorted(unknown))}"
            )

        unit = self.store.get_unit(unit_id, clinic_id)
        if unit is None:
            raise NotFound("Unit not found")

        parsed = {
            "total_quantity": parse_int(updates.get("total_quantity"), "Total quantity"),
            "available_quantity": parse_int(
                updates.get("available_quantity"), "Available quantity"
            ),
            "expiry_date": parse_date(updates.get("expiry_date"), "Expiry date"),
        }
        fields: dict[str, Any] = {
            name: value for name, value in parsed.items() if value is not None
        }
        if "optional_notes" in updates:
            fields["optional_notes"] = clean_text(updates["optional_notes"])
        if not fields:
            return unit

        new_total = fields.get("total_quantity", unit.total_quantity)
        new_available = fields.get("available_quantity", unit.available_quantity)
        if new_total <= 0:
            raise ValidationError("Total quantity must be greater than 0.")
        if new_available < 0 or new_available > new_total:
            raise ValidationError(
                "Available quantity must be between 0 and the total quantity."
            )

        consumed_before = unit.total_quantity - unit.available_quantity
        unit = self.store.update_unit_fields(unit, fields)
        consumed_delta = (new_total - new_available) - consumed_before
        if consumed_delta:
            self._record_best_effort(
                InventoryTransaction.ADJUST,
                consumed_delta,
                unit.id,
                acting_user_id or unit.user_id,
                clinic_id,
                notes="Manual quantity adjustment",
            )
        logger.info("Unit %s updated: %s", unit.id, ", ".join(sorted(fields)))
        return unit

    def get_units_advanced(
        self,
        clinic_id: str,
        filters: UnitFilters,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        offset, limit = page_window(page, page_size)
        today = self.today()
        criteria = []

        if filters.has_date_range:
            if filters.expiry_date_from is not None:
                criteria.append(Unit.expiry_date >= filters.expiry_date_from)
            if filters.expiry_date_to is not None:
                criteria.append(Unit.expiry_date <= filters.expiry_date_to)
        elif filters.expiration_window == "EXPIRED":
            criteria.append(Unit.expiry_date < today)
        elif filters.expiration_window:
            days = EXPIRATION_WINDOWS[filters.expiration_window]
            if days is not None:
                criteria.append(Unit.expiry_date >= today)
                criteria.append(Unit.expiry_date <= today + timedelta(days=days))

        ascending = filters.sort_order == "ASC"
        sort_column = {
            "CREATED_DATE": Unit.date_created,
            "QUANTITY": Unit.available_quantity,
        }.get(filters.sort_by, Unit.expiry_date)

        units, count = self.store.select_units(
            clinic_id,
            criteria,
            order_by=[sort_column.asc() if ascending else sort_column.desc()],
            offset=offset,
            limit=limit,
            with_count=True,
        )

        # Joined-entity criteria run on the fetched page, so a page can come
        # back shorter than page_size while total still counts the unfiltered rows.
        units = [unit for unit in units if self._passes_joined_filters(unit, filters)]

        if filters.sort_by == "MEDICATION_NAME":
            units.sort(
                key=lambda unit: (unit.drug.medication_name if unit.drug else "").lower(),
                reverse=not ascending,
            )
        elif filters.sort_by == "STRENGTH":
            units.sort(
                key=lambda unit: (unit.drug.strength if unit.drug else 0) or 0,
                reverse=not ascending,
            )

        return {
            "units": units,
            "total": count or 0,
            "page": page,
            "page_size": page_size,
        }

    @staticmethod
    def _passes_joined_filters(unit: Unit, filters: UnitFilters) -> bool:
        if filters.location_ids:
            if unit.lot is None or unit.lot.location_id not in filters.location_ids:
                return False

        drug = unit.drug
        if drug is None:
            return True
        if filters.min_strength is not None and drug.strength < filters.min_strength:
            return False
        if filters.max_strength is not None and drug.strength > filters.max_strength:
            return False
        if filters.strength_unit and drug.strength_unit != filters.strength_unit:
            return False
        if filters.medication_name and (
            filters.medication_name.lower() not in (drug.medication_name or "").lower()
        ):
            return False
        if filters.generic_name and (
            filters.generic_name.lower() not in (drug.generic_name or "").lower()
        ):
            return False
        if filters.ndc_id and drug.ndc_id != filters.ndc_id:
            return False
        return True

    def get_inventory_by_location(self, location_id: str, clinic_id: str) -> list[Unit]:
        units, _ = self.store.select_units(
            clinic_id,
            [
                Unit.available_quantity > 0,
                Unit.lot.has(Lot.location_id == location_id),
            ],
            order_by=[Unit.expiry_date.asc()],
        )
        return units
