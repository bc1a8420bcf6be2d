"""Shape stored records into the JSON-ready dictionaries the API returns.

Each entity has an explicit field list. A stored record with a column that is
missing from its list raises :class:`SchemaDriftError` rather than being
dropped silently.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from dispensary.errors import SchemaDriftError


DRUG_FIELDS = (
    "id",
    "medication_name",
    "generic_name",
    "strength",
    "strength_unit",
    "ndc_id",
    "form",
)
LOCATION_FIELDS = ("id", "name", "temp", "clinic_id", "created_at", "updated_at")
LOT_FIELDS = (
    "id",
    "source",
    "note",
    "date_created",
    "location_id",
    "clinic_id",
    "max_capacity",
)
UNIT_FIELDS = (
    "id",
    "total_quantity",
    "available_quantity",
    "patient_reference_id",
    "lot_id",
    "expiry_date",
    "date_created",
    "user_id",
    "drug_id",
    "qr_code",
    "optional_notes",
    "manufacturer_lot_number",
    "clinic_id",
)
TRANSACTION_FIELDS = (
    "id",
    "timestamp",
    "type",
    "quantity",
    "unit_id",
    "patient_name",
    "patient_reference_id",
    "user_id",
    "notes",
    "clinic_id",
)

# Older databases store the room temperature class with a space.
_LEGACY_TEMPS = {"room temp": "room_temp"}


def _ensure_mapped(record, fields: tuple[str, ...]) -> None:
    columns = set(record.__table__.columns.keys())
    unmapped = columns.difference(fields)
    if unmapped:
        raise SchemaDriftError(
            f"Unmapped columns on {record.__tablename__}: {', '.join(sorted(unmapped))}"
        )


def _iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def format_strength(value: float | None) -> str:
    if value is None:
        return ""
    return f"{value:g}"


def format_drug(drug) -> dict[str, Any] | None:
    if drug is None:
        return None
    _ensure_mapped(drug, DRUG_FIELDS)
    return {
        "drug_id": drug.id,
        "medication_name": drug.medication_name,
        "generic_name": drug.generic_name,
        "strength": drug.strength,
        "strength_unit": drug.strength_unit,
        "ndc_id": drug.ndc_id,
        "form": drug.form,
    }


def format_location(location) -> dict[str, Any] | None:
    if location is None:
        return None
    _ensure_mapped(location, LOCATION_FIELDS)
    return {
        "location_id": location.id,
        "name": location.name,
        "temp": _LEGACY_TEMPS.get(location.temp, location.temp),
        "clinic_id": location.clinic_id,
        "created_at": _iso(location.created_at),
        "updated_at": _iso(location.updated_at),
    }


def format_lot(
    lot,
    *,
    capacity: dict[str, int | None] | None = None,
    include_location: bool = False,
) -> dict[str, Any] | None:
    if lot is None:
        return None
    _ensure_mapped(lot, LOT_FIELDS)
    payload: dict[str, Any] = {
        "lot_id": lot.id,
        "source": lot.source,
        "note": lot.note,
        "date_created": _iso(lot.date_created),
        "location_id": lot.location_id,
        "clinic_id": lot.clinic_id,
        "max_capacity": lot.max_capacity,
    }
    if capacity is not None:
        payload["current_capacity"] = capacity["current_capacity"]
        payload["available_capacity"] = capacity["available_capacity"]
    if include_location:
        payload["location"] = format_location(lot.location)
    return payload


def format_unit(unit, *, include_relations: bool = True) -> dict[str, Any]:
    _ensure_mapped(unit, UNIT_FIELDS)
    payload: dict[str, Any] = {
        "unit_id": unit.id,
        "total_quantity": unit.total_quantity,
        "available_quantity": unit.available_quantity,
        "patient_reference_id": unit.patient_reference_id,
        "lot_id": unit.lot_id,
        "expiry_date": _iso(unit.expiry_date),
        "date_created": _iso(unit.date_created),
        "user_id": unit.user_id,
        "drug_id": unit.drug_id,
        "qr_code": unit.qr_code,
        "optional_notes": unit.optional_notes,
        "manufacturer_lot_number": unit.manufacturer_lot_number,
        "clinic_id": unit.clinic_id,
    }
    if include_relations:
        payload["drug"] = format_drug(unit.drug)
        payload["lot"] = format_lot(unit.lot)
    return payload


def format_transaction(transaction, *, include_unit: bool = True) -> dict[str, Any]:
    _ensure_mapped(transaction, TRANSACTION_FIELDS)
    payload: dict[str, Any] = {
        "transaction_id": transaction.id,
        "timestamp": _iso(transaction.timestamp),
        "type": transaction.type,
        "quantity": transaction.quantity,
        "unit_id": transaction.unit_id,
        "patient_name": transaction.patient_name,
        "patient_reference_id": transaction.patient_reference_id,
        "user_id": transaction.user_id,
        "notes": transaction.notes,
        "clinic_id": transaction.clinic_id,
    }
    if include_unit:
        unit = transaction.unit
        payload["unit"] = None
        if unit is not None:
            unit_payload = format_unit(unit, include_relations=False)
            unit_payload["drug"] = format_drug(unit.drug)
            unit_payload["lot"] = format_lot(unit.lot, include_location=True)
            payload["unit"] = unit_payload
    return payload


def format_page(key: str, page: dict[str, Any], formatter) -> dict[str, Any]:
    return {
        key: [formatter(record) for record in page[key]],
        "total": page["total"],
        "page": page["page"],
        "page_size": page["page_size"],
    }
