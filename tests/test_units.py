import os
import sys
from datetime import date

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from dispensary import create_app
from dispensary.errors import NotFound, PersistenceError, ValidationError
from dispensary.extensions import db
from dispensary.mappers import format_unit
from dispensary.models import Clinic, Drug, InventoryTransaction
from dispensary.services.container import build_services
from dispensary.services.units import CreateUnitInput, UnitFilters, UnitStore
from dispensary.storage import InventoryStore


TODAY = date(2026, 1, 1)


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "LOG_TO_FILE": False,
        }
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def services(app):
    return build_services(db.session)


@pytest.fixture
def inventory(services):
    clinic = Clinic(name="North Clinic")
    amoxicillin = Drug(
        medication_name="Amoxicillin",
        generic_name="amoxicillin",
        strength=500,
        strength_unit="mg",
        ndc_id="0093-4155",
        form="capsule",
    )
    ibuprofen = Drug(
        medication_name="Ibuprofen",
        generic_name="ibuprofen",
        strength=200,
        strength_unit="mg",
        ndc_id="0904-5853",
        form="tablet",
    )
    db.session.add_all([clinic, amoxicillin, ibuprofen])
    db.session.commit()

    fridge = services.lots.create_location("Fridge", "fridge", clinic.id)
    shelf = services.lots.create_location("Shelf", "room_temp", clinic.id)
    fridge_lot = services.lots.create_lot("Donation", fridge.id, clinic.id)
    shelf_lot = services.lots.create_lot("Purchase", shelf.id, clinic.id)
    return {
        "clinic_id": clinic.id,
        "amoxicillin": amoxicillin.id,
        "ibuprofen": ibuprofen.id,
        "fridge": fridge.id,
        "shelf": shelf.id,
        "fridge_lot": fridge_lot.id,
        "shelf_lot": shelf_lot.id,
    }


def _add_unit(services, inventory, drug, expiry, total=10, available=None, lot="fridge_lot"):
    return services.units.create_unit(
        CreateUnitInput(
            total_quantity=total,
            available_quantity=available,
            lot_id=inventory[lot],
            expiry_date=expiry,
            drug_id=inventory[drug],
        ),
        "user-1",
        inventory["clinic_id"],
    )


def _unit_store(services):
    return UnitStore(services.store, services.lots, services.ledger, today=lambda: TODAY)


def test_create_unit_records_initial_check_in(services, inventory):
    unit = _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1), total=30)

    assert unit.available_quantity == 30
    assert unit.qr_code == unit.id

    transactions = services.ledger.list_transactions(inventory["clinic_id"])["transactions"]
    assert [(tx.type, tx.quantity, tx.notes) for tx in transactions] == [
        (InventoryTransaction.CHECK_IN, 30, "Initial check-in")
    ]


def test_partial_check_in_keeps_ledger_balanced(services, inventory):
    _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1), total=30, available=25)

    transactions = services.ledger.list_transactions(inventory["clinic_id"])["transactions"]
    assert sorted((tx.type, tx.quantity) for tx in transactions) == [
        (InventoryTransaction.ADJUST, 5),
        (InventoryTransaction.CHECK_IN, 30),
    ]
    assert services.ledger.reconcile(inventory["clinic_id"]) == []


def test_create_unit_keeps_unit_when_ledger_write_fails(services, inventory, monkeypatch):
    def failing_insert(self, **fields):
        raise PersistenceError("Failed to create transaction: connection lost")

    monkeypatch.setattr(InventoryStore, "insert_transaction", failing_insert)

    unit = _add_unit(
        services, inventory, "amoxicillin", date(2027, 3, 1), total=30, available=25
    )

    monkeypatch.undo()
    stored = services.units.get_unit(unit.id, inventory["clinic_id"])
    assert stored is not None
    assert stored.total_quantity == 30
    assert stored.available_quantity == 25
    assert services.ledger.list_transactions(inventory["clinic_id"])["total"] == 0

    [drift] = services.ledger.reconcile(inventory["clinic_id"])
    assert drift.unit_id == unit.id
    assert drift.has_check_in is False


def test_create_unit_validation(services, inventory):
    with pytest.raises(ValidationError):
        _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1), total=0)
    with pytest.raises(ValidationError):
        _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1), total=5, available=6)

    with pytest.raises(NotFound) as excinfo:
        services.units.create_unit(
            CreateUnitInput(
                total_quantity=5,
                lot_id=inventory["fridge_lot"],
                expiry_date=date(2027, 3, 1),
                drug_id="missing-drug",
            ),
            "user-1",
            inventory["clinic_id"],
        )
    assert excinfo.value.message == "Drug not found"


def test_create_unit_input_from_mapping_requires_fields():
    with pytest.raises(ValidationError):
        CreateUnitInput.from_mapping({"lot_id": "lot", "drug_id": "drug"})
    with pytest.raises(ValidationError):
        CreateUnitInput.from_mapping(
            {"total_quantity": "3", "lot_id": "lot", "drug_id": "drug", "expiry_date": "soon"}
        )

    parsed = CreateUnitInput.from_mapping(
        {
            "total_quantity": "3",
            "lot_id": " lot ",
            "drug_id": "drug",
            "expiry_date": "2027-05-01",
        }
    )
    assert parsed.total_quantity == 3
    assert parsed.lot_id == "lot"
    assert parsed.expiry_date == date(2027, 5, 1)


def test_reads_are_scoped_to_clinic(services, inventory):
    unit = _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1))
    other = Clinic(name="South Clinic")
    db.session.add(other)
    db.session.commit()

    assert services.units.get_unit(unit.id, other.id) is None
    assert services.units.list_units(other.id)["total"] == 0
    assert services.units.search_units("Amoxicillin", other.id) == []

    with pytest.raises(NotFound):
        services.units.create_unit(
            CreateUnitInput(
                total_quantity=5,
                lot_id=inventory["fridge_lot"],
                expiry_date=date(2027, 3, 1),
                drug_id=inventory["amoxicillin"],
            ),
            "user-1",
            other.id,
        )


def test_reads_do_not_change_state(services, inventory):
    unit = _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1))
    clinic_id = inventory["clinic_id"]

    first = format_unit(services.units.get_unit(unit.id, clinic_id))
    services.units.list_units(clinic_id)
    services.units.search_units("amox", clinic_id)
    second = format_unit(services.units.get_unit(unit.id, clinic_id))
    assert first == second


def test_list_units_search_filters_fetched_page(services, inventory):
    _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1))
    _add_unit(services, inventory, "ibuprofen", date(2027, 3, 1))
    clinic_id = inventory["clinic_id"]

    everything = services.units.list_units(clinic_id)
    assert everything["total"] == 2

    searched = services.units.list_units(clinic_id, search="IBU")
    assert searched["total"] == 1
    assert searched["units"][0].drug.medication_name == "Ibuprofen"


def test_search_units_rules(services, inventory):
    amoxicillin = _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1))
    _add_unit(services, inventory, "ibuprofen", date(2027, 3, 1))
    _add_unit(services, inventory, "ibuprofen", date(2027, 4, 1), total=5, available=0)
    clinic_id = inventory["clinic_id"]

    assert services.units.search_units("a", clinic_id) == []
    assert services.units.search_units("   ", clinic_id) == []
    assert services.units.search_units(None, clinic_id) == []

    by_name = services.units.search_units("amox", clinic_id)
    assert [unit.id for unit in by_name] == [amoxicillin.id]

    by_strength = services.units.search_units("500.0", clinic_id)
    assert [unit.id for unit in by_strength] == [amoxicillin.id]

    by_id = services.units.search_units(amoxicillin.id[:8], clinic_id)
    assert [unit.id for unit in by_id] == [amoxicillin.id]

    # Empty units never show up in search results.
    by_generic = services.units.search_units("ibuprofen", clinic_id)
    assert len(by_generic) == 1
    assert by_generic[0].available_quantity > 0


def test_search_units_caps_results(services, inventory):
    for _ in range(25):
        _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1), total=1)

    assert len(services.units.search_units("amoxicillin", inventory["clinic_id"])) == 20


def test_update_unit_records_adjustment(services, inventory):
    unit = _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1), total=10)
    clinic_id = inventory["clinic_id"]

    updated = services.units.update_unit(
        unit.id,
        clinic_id,
        {"available_quantity": 7, "optional_notes": "  recount  "},
        acting_user_id="user-2",
    )
    assert updated.available_quantity == 7
    assert updated.optional_notes == "recount"

    adjustments = [
        tx
        for tx in services.ledger.list_transactions(clinic_id)["transactions"]
        if tx.type == InventoryTransaction.ADJUST
    ]
    assert [(tx.quantity, tx.user_id) for tx in adjustments] == [(3, "user-2")]
    assert services.ledger.reconcile(clinic_id) == []


def test_update_unit_rejects_bad_changes(services, inventory):
    unit = _add_unit(services, inventory, "amoxicillin", date(2027, 3, 1), total=10)
    clinic_id = inventory["clinic_id"]

    with pytest.raises(ValidationError):
        services.units.update_unit(unit.id, clinic_id, {"drug_id": "other"})
    with pytest.raises(ValidationError):
        services.units.update_unit(unit.id, clinic_id, {"available_quantity": 11})
    with pytest.raises(ValidationError):
        services.units.update_unit(unit.id, clinic_id, {"total_quantity": 0})
    with pytest.raises(NotFound):
        services.units.update_unit("missing", clinic_id, {"optional_notes": "x"})

    assert services.units.get_unit(unit.id, clinic_id).available_quantity == 10


def test_advanced_expiration_windows(services, inventory):
    expired = _add_unit(services, inventory, "amoxicillin", date(2025, 12, 1))
    week = _add_unit(services, inventory, "amoxicillin", date(2026, 1, 5))
    two_months = _add_unit(services, inventory, "amoxicillin", date(2026, 2, 15))
    later = _add_unit(services, inventory, "amoxicillin", date(2026, 6, 1))
    store = _unit_store(services)
    clinic_id = inventory["clinic_id"]

    def ids(**filters):
        result = store.get_units_advanced(clinic_id, UnitFilters(**filters))
        return [unit.id for unit in result["units"]]

    assert ids(expiration_window="EXPIRED") == [expired.id]
    assert ids(expiration_window="expiring_7_days") == [week.id]
    assert ids(expiration_window="EXPIRING_60_DAYS") == [week.id, two_months.id]
    assert ids(expiration_window="ALL") == [expired.id, week.id, two_months.id, later.id]


def test_advanced_date_range_overrides_window(services, inventory):
    _add_unit(services, inventory, "amoxicillin", date(2025, 12, 1))
    later = _add_unit(services, inventory, "amoxicillin", date(2026, 6, 1))
    store = _unit_store(services)

    result = store.get_units_advanced(
        inventory["clinic_id"],
        UnitFilters(expiration_window="EXPIRED", expiry_date_from=date(2026, 5, 1)),
    )
    assert [unit.id for unit in result["units"]] == [later.id]
    assert result["total"] == 1


def test_advanced_joined_filters_apply_after_paging(services, inventory):
    _add_unit(services, inventory, "amoxicillin", date(2026, 1, 10))
    _add_unit(services, inventory, "amoxicillin", date(2026, 1, 20))
    ibuprofen = _add_unit(services, inventory, "ibuprofen", date(2026, 3, 1))
    store = _unit_store(services)
    clinic_id = inventory["clinic_id"]
    filters = UnitFilters(medication_name="ibu")

    first_page = store.get_units_advanced(clinic_id, filters, page=1, page_size=2)
    assert first_page["units"] == []
    assert first_page["total"] == 3

    second_page = store.get_units_advanced(clinic_id, filters, page=2, page_size=2)
    assert [unit.id for unit in second_page["units"]] == [ibuprofen.id]


def test_advanced_location_and_strength_filters(services, inventory):
    fridge_unit = _add_unit(services, inventory, "amoxicillin", date(2026, 4, 1))
    shelf_unit = _add_unit(
        services, inventory, "ibuprofen", date(2026, 4, 1), lot="shelf_lot"
    )
    store = _unit_store(services)
    clinic_id = inventory["clinic_id"]

    by_location = store.get_units_advanced(
        clinic_id, UnitFilters.from_mapping({"location_ids": inventory["shelf"]})
    )
    assert [unit.id for unit in by_location["units"]] == [shelf_unit.id]

    by_strength = store.get_units_advanced(
        clinic_id, UnitFilters(min_strength=300, strength_unit="mg")
    )
    assert [unit.id for unit in by_strength["units"]] == [fridge_unit.id]

    by_ndc = store.get_units_advanced(clinic_id, UnitFilters(ndc_id="0904-5853"))
    assert [unit.id for unit in by_ndc["units"]] == [shelf_unit.id]


def test_advanced_sorting(services, inventory):
    amoxicillin = _add_unit(services, inventory, "amoxicillin", date(2026, 5, 1), total=3)
    ibuprofen = _add_unit(services, inventory, "ibuprofen", date(2026, 4, 1), total=9)
    store = _unit_store(services)
    clinic_id = inventory["clinic_id"]

    by_name = store.get_units_advanced(
        clinic_id, UnitFilters(sort_by="MEDICATION_NAME", sort_order="DESC")
    )
    assert [unit.id for unit in by_name["units"]] == [ibuprofen.id, amoxicillin.id]

    by_quantity = store.get_units_advanced(clinic_id, UnitFilters(sort_by="QUANTITY"))
    assert [unit.id for unit in by_quantity["units"]] == [amoxicillin.id, ibuprofen.id]

    by_strength = store.get_units_advanced(
        clinic_id, UnitFilters(sort_by="STRENGTH", sort_order="desc")
    )
    assert [unit.id for unit in by_strength["units"]] == [amoxicillin.id, ibuprofen.id]


def test_unit_filters_reject_unknown_values():
    with pytest.raises(ValidationError):
        UnitFilters(expiration_window="NEXT_WEEK")
    with pytest.raises(ValidationError):
        UnitFilters(sort_by="PRICE")
    with pytest.raises(ValidationError):
        UnitFilters(sort_order="SIDEWAYS")


def test_inventory_by_location(services, inventory):
    first = _add_unit(services, inventory, "amoxicillin", date(2026, 9, 1))
    second = _add_unit(services, inventory, "ibuprofen", date(2026, 7, 1))
    _add_unit(services, inventory, "ibuprofen", date(2026, 6, 1), total=4, available=0)
    _add_unit(services, inventory, "ibuprofen", date(2026, 6, 1), lot="shelf_lot")

    units = services.units.get_inventory_by_location(
        inventory["fridge"], inventory["clinic_id"]
    )
    assert [unit.id for unit in units] == [second.id, first.id]
