import os
import sys
from datetime import date

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from dispensary import create_app
from dispensary.errors import (
    AllocationFailed,
    InsufficientQuantity,
    NotFound,
    PersistenceError,
    ValidationError,
)
from dispensary.extensions import db
from dispensary.models import Clinic, Drug, InventoryTransaction, Unit
from dispensary.services.checkout import (
    FefoCheckoutRequest,
    UnitCheckoutRequest,
    restore_quantity,
)
from dispensary.services.container import build_services
from dispensary.services.units import CreateUnitInput
from dispensary.storage import InventoryStore


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
def stocked(services):
    """Two amoxicillin units of 30 each; A expires before B."""

    clinic = Clinic(name="North Clinic")
    drug = Drug(
        medication_name="Amoxicillin",
        generic_name="amoxicillin",
        strength=500,
        strength_unit="mg",
        ndc_id="0093-4155",
        form="capsule",
    )
    db.session.add_all([clinic, drug])
    db.session.commit()

    location = services.lots.create_location("Fridge", "fridge", clinic.id)
    lot = services.lots.create_lot("Donation", location.id, clinic.id)

    def add(expiry, total=30):
        return services.units.create_unit(
            CreateUnitInput(
                total_quantity=total,
                lot_id=lot.id,
                expiry_date=expiry,
                drug_id=drug.id,
            ),
            "user-1",
            clinic.id,
        ).id

    unit_b = add(date(2025, 6, 1))
    unit_a = add(date(2025, 1, 1))
    return {"clinic_id": clinic.id, "drug_id": drug.id, "a": unit_a, "b": unit_b}


def _available(unit_id):
    db.session.expire_all()
    return db.session.get(Unit, unit_id).available_quantity


def _ledger(clinic_id):
    db.session.expire_all()
    rows = InventoryTransaction.query.filter_by(clinic_id=clinic_id).all()
    return sorted((tx.unit_id, tx.type, tx.quantity) for tx in rows)


def test_fefo_takes_earliest_expiry_first(services, stocked):
    result = services.fefo.check_out(
        FefoCheckoutRequest(quantity=40, ndc_id="0093-4155", patient_name="Pat"),
        "user-2",
        stocked["clinic_id"],
    )

    assert result.total_quantity_dispensed == 40
    assert [(used.unit_id, used.quantity_taken) for used in result.units_used] == [
        (stocked["a"], 30),
        (stocked["b"], 10),
    ]
    assert [tx.notes for tx in result.transactions] == [
        "FEFO checkout - Unit 1 of batch",
        "FEFO checkout - Unit 2 of batch",
    ]
    assert all(tx.type == InventoryTransaction.CHECK_OUT for tx in result.transactions)
    assert all(tx.patient_name == "Pat" for tx in result.transactions)

    assert _available(stocked["a"]) == 0
    assert _available(stocked["b"]) == 20
    assert services.ledger.reconcile(stocked["clinic_id"]) == []


def test_fefo_matches_by_name_and_strength(services, stocked):
    result = services.fefo.check_out(
        FefoCheckoutRequest(
            quantity=5,
            medication_name="amoxicillin",
            strength=500,
            strength_unit="mg",
            notes="Clinic visit",
        ),
        "user-2",
        stocked["clinic_id"],
    )
    assert [used.unit_id for used in result.units_used] == [stocked["a"]]
    assert result.transactions[0].notes == "Clinic visit"
    assert result.units_used[0].to_dict()["expiry_date"] == "2025-01-01"


def test_fefo_insufficient_stock_changes_nothing(services, stocked):
    before = _ledger(stocked["clinic_id"])

    with pytest.raises(InsufficientQuantity) as excinfo:
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=100, ndc_id="0093-4155"),
            "user-2",
            stocked["clinic_id"],
        )
    assert excinfo.value.available == 60
    assert excinfo.value.requested == 100
    assert excinfo.value.message == "Insufficient quantity. Available: 60, Requested: 100"

    assert _available(stocked["a"]) == 30
    assert _available(stocked["b"]) == 30
    assert _ledger(stocked["clinic_id"]) == before


def test_fefo_rejects_bad_requests(services, stocked):
    clinic_id = stocked["clinic_id"]
    with pytest.raises(ValidationError) as excinfo:
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=5, medication_name="Amoxicillin"), "u", clinic_id
        )
    assert excinfo.value.message == (
        "Must provide either NDC or medication name with strength and unit"
    )

    with pytest.raises(ValidationError):
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=0, ndc_id="0093-4155"), "u", clinic_id
        )

    with pytest.raises(NotFound) as excinfo:
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=1, ndc_id="0000-0000"), "u", clinic_id
        )
    assert excinfo.value.message == "No medication found with NDC: 0000-0000"

    with pytest.raises(NotFound) as excinfo:
        services.fefo.check_out(
            FefoCheckoutRequest(
                quantity=1, medication_name="Ibuprofen", strength=200, strength_unit="mg"
            ),
            "u",
            clinic_id,
        )
    assert excinfo.value.message == "No medication found matching: Ibuprofen 200mg"


def test_fefo_failure_rolls_back_completed_steps(services, stocked, monkeypatch):
    clinic_id = stocked["clinic_id"]
    ledger_before = _ledger(clinic_id)

    original_insert = InventoryStore.insert_transaction
    calls = {"count": 0}

    def flaky_insert(self, **fields):
        calls["count"] += 1
        if calls["count"] == 2:
            raise PersistenceError("Failed to create transaction: disk full")
        return original_insert(self, **fields)

    monkeypatch.setattr(InventoryStore, "insert_transaction", flaky_insert)

    with pytest.raises(AllocationFailed) as excinfo:
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=40, ndc_id="0093-4155"), "user-2", clinic_id
        )
    assert "rolled back" in excinfo.value.message
    assert isinstance(excinfo.value.cause, PersistenceError)

    assert _available(stocked["a"]) == 30
    assert _available(stocked["b"]) == 30
    assert _ledger(clinic_id) == ledger_before
    assert services.ledger.reconcile(clinic_id) == []


def test_fefo_concurrent_change_aborts_before_any_write(services, stocked, monkeypatch):
    monkeypatch.setattr(
        services.store, "compare_and_set_available", lambda *args, **kwargs: False
    )

    with pytest.raises(AllocationFailed):
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=10, ndc_id="0093-4155"),
            "user-2",
            stocked["clinic_id"],
        )

    monkeypatch.undo()
    assert _available(stocked["a"]) == 30
    assert _available(stocked["b"]) == 30


def test_fefo_lost_race_on_later_unit_undoes_earlier_steps(
    services, stocked, monkeypatch
):
    clinic_id = stocked["clinic_id"]
    ledger_before = _ledger(clinic_id)

    original_cas = services.store.compare_and_set_available
    calls = {"count": 0}

    def racing_cas(unit_id, clinic, expected, new_value):
        calls["count"] += 1
        if calls["count"] == 2:
            return False
        return original_cas(unit_id, clinic, expected, new_value)

    monkeypatch.setattr(services.store, "compare_and_set_available", racing_cas)

    with pytest.raises(AllocationFailed) as excinfo:
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=40, ndc_id="0093-4155"), "user-2", clinic_id
        )
    assert "was rolled back" in excinfo.value.message

    monkeypatch.undo()
    assert _available(stocked["a"]) == 30
    assert _available(stocked["b"]) == 30
    assert _ledger(clinic_id) == ledger_before


def test_fefo_reports_incomplete_rollback(services, stocked, monkeypatch):
    clinic_id = stocked["clinic_id"]
    original_insert = InventoryStore.insert_transaction
    calls = {"count": 0}

    def flaky_insert(self, **fields):
        calls["count"] += 1
        if calls["count"] == 2:
            raise PersistenceError("Failed to create transaction: disk full")
        return original_insert(self, **fields)

    def failing_delete(self, transaction_id, clinic):
        raise PersistenceError("Failed to delete transaction: locked")

    monkeypatch.setattr(InventoryStore, "insert_transaction", flaky_insert)
    monkeypatch.setattr(InventoryStore, "delete_transaction", failing_delete)

    with pytest.raises(AllocationFailed) as excinfo:
        services.fefo.check_out(
            FefoCheckoutRequest(quantity=40, ndc_id="0093-4155"), "user-2", clinic_id
        )
    assert "rollback incomplete" in excinfo.value.message

    monkeypatch.undo()
    assert _available(stocked["a"]) == 30
    assert _available(stocked["b"]) == 30
    drift = services.ledger.reconcile(clinic_id)
    assert [entry.unit_id for entry in drift] == [stocked["a"]]


def test_restore_quantity_adds_onto_current_value(services, stocked):
    clinic_id = stocked["clinic_id"]
    services.store.compare_and_set_available(stocked["a"], clinic_id, 30, 12)

    assert restore_quantity(services.store, stocked["a"], clinic_id, 5) is True
    assert _available(stocked["a"]) == 17

    assert restore_quantity(services.store, "missing", clinic_id, 5) is False


def test_unit_checkout_decrements_and_records(services, stocked):
    unit_id = stocked["a"]
    services.units.update_unit(unit_id, stocked["clinic_id"], {"available_quantity": 10})

    transaction = services.unit_checkout.check_out(
        UnitCheckoutRequest(unit_id=unit_id, quantity=4, patient_reference_id="P-7"),
        "user-2",
        stocked["clinic_id"],
    )

    assert transaction.type == InventoryTransaction.CHECK_OUT
    assert transaction.quantity == 4
    assert transaction.patient_reference_id == "P-7"
    assert _available(unit_id) == 6
    assert services.ledger.reconcile(stocked["clinic_id"]) == []


def test_unit_checkout_rejects_overdraw(services, stocked):
    with pytest.raises(InsufficientQuantity) as excinfo:
        services.unit_checkout.check_out(
            UnitCheckoutRequest(unit_id=stocked["a"], quantity=50),
            "user-2",
            stocked["clinic_id"],
        )
    assert excinfo.value.available == 30
    assert _available(stocked["a"]) == 30

    with pytest.raises(ValidationError):
        services.unit_checkout.check_out(
            UnitCheckoutRequest(unit_id=stocked["a"], quantity=0),
            "user-2",
            stocked["clinic_id"],
        )

    with pytest.raises(NotFound):
        services.unit_checkout.check_out(
            UnitCheckoutRequest(unit_id="missing", quantity=1),
            "user-2",
            stocked["clinic_id"],
        )


def test_unit_checkout_restores_quantity_when_ledger_write_fails(
    services, stocked, monkeypatch
):
    def failing_insert(self, **fields):
        raise PersistenceError("Failed to create transaction: connection lost")

    monkeypatch.setattr(InventoryStore, "insert_transaction", failing_insert)

    with pytest.raises(PersistenceError) as excinfo:
        services.unit_checkout.check_out(
            UnitCheckoutRequest(unit_id=stocked["a"], quantity=4),
            "user-2",
            stocked["clinic_id"],
        )
    assert excinfo.value.message.startswith("Failed to create transaction:")
    assert _available(stocked["a"]) == 30


def test_unit_checkout_request_from_mapping():
    with pytest.raises(ValidationError):
        UnitCheckoutRequest.from_mapping({"quantity": 1})

    request = UnitCheckoutRequest.from_mapping(
        {"unit_id": "abc", "quantity": "3", "notes": " walk-in "}
    )
    assert request.quantity == 3
    assert request.notes == "walk-in"
