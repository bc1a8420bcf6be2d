"""Dispensing stock: FEFO allocation across units and single-unit checkout.

The store commits each write on its own, so a multi-unit checkout is a
sequence of independent writes. When a step fails part way through, the
steps already applied are undone one by one (their ledger entries deleted,
their quantities added back onto whatever the unit holds now). That undo is
best-effort: a process that dies mid-walk leaves decremented units without
ledger entries, which :meth:`TransactionLedger.reconcile` reports.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Mapping

from dispensary.errors import (
    AllocationFailed,
    InsufficientQuantity,
    NotFound,
    PersistenceError,
    ValidationError,
)
from dispensary.mappers import format_strength
from dispensary.models import InventoryTransaction, Unit
from dispensary.services.ledger import TransactionLedger
from dispensary.storage import InventoryStore
from dispensary.utils.parsing import clean_text, parse_float, parse_int


logger = logging.getLogger("dispensary.checkout")

RESTORE_ATTEMPTS = 3


@dataclass
class FefoCheckoutRequest:
    quantity: int
    ndc_id: str | None = None
    medication_name: str | None = None
    strength: float | None = None
    strength_unit: str | None = None
    patient_name: str | None = None
    patient_reference_id: str | None = None
    notes: str | None = None

    def validate(self) -> None:
        has_name_and_strength = (
            bool(self.medication_name)
            and self.strength is not None
            and bool(self.strength_unit)
        )
        if not self.ndc_id and not has_name_and_strength:
            raise ValidationError(
                "Must provide either NDC or medication name with strength and unit"
            )
        if self.quantity is None or self.quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FefoCheckoutRequest":
        return cls(
            quantity=parse_int(data.get("quantity"), "Quantity"),
            ndc_id=clean_text(data.get("ndc_id")),
            medication_name=clean_text(data.get("medication_name")),
            strength=parse_float(data.get("strength"), "Strength"),
            strength_unit=clean_text(data.get("strength_unit")),
            patient_name=clean_text(data.get("patient_name")),
            patient_reference_id=clean_text(data.get("patient_reference_id")),
            notes=clean_text(data.get("notes")),
        )


@dataclass
class UnitCheckoutRequest:
    unit_id: str
    quantity: int
    patient_name: str | None = None
    patient_reference_id: str | None = None
    notes: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UnitCheckoutRequest":
        unit_id = clean_text(data.get("unit_id"))
        if not unit_id:
            raise ValidationError("Unit is required.")
        return cls(
            unit_id=unit_id,
            quantity=parse_int(data.get("quantity"), "Quantity"),
            patient_name=clean_text(data.get("patient_name")),
            patient_reference_id=clean_text(data.get("patient_reference_id")),
            notes=clean_text(data.get("notes")),
        )


@dataclass(frozen=True)
class UnitAllocation:
    unit_id: str
    quantity_taken: int
    expiry_date: date
    medication_name: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["expiry_date"] = self.expiry_date.isoformat()
        return payload


@dataclass
class FefoCheckoutResult:
    transactions: list[InventoryTransaction]
    total_quantity_dispensed: int
    units_used: list[UnitAllocation]


@dataclass(frozen=True)
class _Candidate:
    """Unit state as read before the walk starts."""

    unit_id: str
    available: int
    expiry_date: date
    medication_name: str


@dataclass(frozen=True)
class _CompletedStep:
    candidate: _Candidate
    quantity_taken: int
    transaction_id: str


def restore_quantity(
    store: InventoryStore, unit_id: str, clinic_id: str, amount: int
) -> bool:
    """Add ``amount`` back onto the unit's current available quantity.

    Re-reads before each attempt so stock dispensed by someone else in the
    meantime is not overwritten. Failures are logged, never raised.
    """

    for _ in range(RESTORE_ATTEMPTS):
        try:
            current = store.read_available(unit_id, clinic_id)
            if current is None:
                logger.error("Cannot restore %s to unit %s: unit not found", amount, unit_id)
                return False
            if store.compare_and_set_available(unit_id, clinic_id, current, current + amount):
                return True
        except PersistenceError as exc:
            logger.error("Failed to restore %s to unit %s: %s", amount, unit_id, exc)
            return False
        logger.warning("Unit %s changed while restoring stock; retrying", unit_id)

    logger.error(
        "Gave up restoring %s to unit %s after %s attempts",
        amount,
        unit_id,
        RESTORE_ATTEMPTS,
    )
    return False


class FEFOAllocator:
    """First-expired-first-out checkout across every matching unit."""

    def __init__(self, store: InventoryStore, ledger: TransactionLedger | None = None):
        self.store = store
        self.ledger = ledger or TransactionLedger(store)

    def check_out(
        self, request: FefoCheckoutRequest, acting_user_id: str, clinic_id: str
    ) -> FefoCheckoutResult:
        request.validate()
        drug_ids = self._resolve_drug_ids(request)

        units, _ = self.store.select_units(
            clinic_id,
            [Unit.drug_id.in_(drug_ids), Unit.available_quantity > 0],
            order_by=[Unit.expiry_date.asc()],
        )
        candidates = [
            _Candidate(
                unit_id=unit.id,
                available=unit.available_quantity,
                expiry_date=unit.expiry_date,
                medication_name=unit.drug.medication_name if unit.drug else "",
            )
            for unit in units
        ]

        total_available = sum(candidate.available for candidate in candidates)
        if total_available < request.quantity:
            raise InsufficientQuantity(total_available, request.quantity)

        remaining = request.quantity
        completed: list[_CompletedStep] = []
        transactions: list[InventoryTransaction] = []
        pending: tuple[_Candidate, int] | None = None

        try:
            for candidate in candidates:
                if remaining <= 0:
                    break

                take = min(remaining, candidate.available)
                applied = self.store.compare_and_set_available(
                    candidate.unit_id,
                    clinic_id,
                    candidate.available,
                    candidate.available - take,
                )
                if not applied:
                    raise PersistenceError(
                        f"Failed to update unit: unit {candidate.unit_id} was modified "
                        "by another checkout"
                    )

                pending = (candidate, take)
                transaction = self.ledger.record_transaction(
                    InventoryTransaction.CHECK_OUT,
                    take,
                    candidate.unit_id,
                    acting_user_id,
                    clinic_id,
                    patient_name=request.patient_name,
                    patient_reference_id=request.patient_reference_id,
                    notes=request.notes
                    or f"FEFO checkout - Unit {len(completed) + 1} of batch",
                )
                pending = None

                completed.append(_CompletedStep(candidate, take, transaction.id))
                transactions.append(transaction)
                remaining -= take
        except PersistenceError as exc:
            failed_unit = pending[0].unit_id if pending else "-"
            logger.error(
                "FEFO checkout failed after %s unit(s) (failing unit %s, clinic %s): %s",
                len(completed),
                failed_unit,
                clinic_id,
                exc,
            )
            if self._compensate(completed, pending, clinic_id):
                outcome = "was rolled back"
            else:
                outcome = "rollback incomplete"
            raise AllocationFailed(
                f"FEFO checkout failed and {outcome}: {exc.message}", cause=exc
            ) from exc

        logger.info(
            "FEFO checkout dispensed %s across %s unit(s) for clinic %s",
            request.quantity,
            len(completed),
            clinic_id,
        )
        return FefoCheckoutResult(
            transactions=transactions,
            total_quantity_dispensed=request.quantity,
            units_used=[
                UnitAllocation(
                    unit_id=step.candidate.unit_id,
                    quantity_taken=step.quantity_taken,
                    expiry_date=step.candidate.expiry_date,
                    medication_name=step.candidate.medication_name,
                )
                for step in completed
            ],
        )

    def _resolve_drug_ids(self, request: FefoCheckoutRequest) -> list[str]:
        if request.ndc_id:
            drugs = self.store.find_drugs_by_ndc(request.ndc_id)
            if not drugs:
                raise NotFound(f"No medication found with NDC: {request.ndc_id}")
            return [drugs[0].id]

        drugs = self.store.find_drugs_by_name_and_strength(
            request.medication_name, request.strength, request.strength_unit
        )
        if not drugs:
            raise NotFound(
                "No medication found matching: "
                f"{request.medication_name} "
                f"{format_strength(request.strength)}{request.strength_unit}"
            )
        return [drug.id for drug in drugs]

    def _compensate(
        self,
        completed: list[_CompletedStep],
        pending: tuple[_Candidate, int] | None,
        clinic_id: str,
    ) -> bool:
        """Undo every applied step; return False if any undo failed."""

        complete = True
        for step in completed:
            try:
                if not self.store.delete_transaction(step.transaction_id, clinic_id):
                    logger.error(
                        "Transaction %s was already gone during rollback",
                        step.transaction_id,
                    )
                    complete = False
            except PersistenceError as exc:
                logger.error(
                    "Could not remove transaction %s during rollback: %s",
                    step.transaction_id,
                    exc,
                )
                complete = False
            if not restore_quantity(
                self.store, step.candidate.unit_id, clinic_id, step.quantity_taken
            ):
                complete = False

        if pending is not None:
            candidate, take = pending
            if not restore_quantity(self.store, candidate.unit_id, clinic_id, take):
                complete = False
        return complete


class UnitCheckout:
    """Dispense from one unit chosen by the caller."""

    def __init__(self, store: InventoryStore, ledger: TransactionLedger | None = None):
        self.store = store
        self.ledger = ledger or TransactionLedger(store)

    def check_out(
        self, request: UnitCheckoutRequest, acting_user_id: str, clinic_id: str
    ) -> InventoryTransaction:
        if request.quantity is None or request.quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        unit = self.store.get_unit(request.unit_id, clinic_id)
        if unit is None:
            raise NotFound("Unit not found")

        unit_id = unit.id
        before = unit.available_quantity
        if before < request.quantity:
            raise InsufficientQuantity(before, request.quantity)

        after = before - request.quantity
        if not self.store.compare_and_set_available(unit_id, clinic_id, before, after):
            raise PersistenceError(
                "Failed to update unit: it was modified by another checkout"
            )

        try:
            transaction = self.ledger.record_transaction(
                InventoryTransaction.CHECK_OUT,
                request.quantity,
                unit_id,
                acting_user_id,
                clinic_id,
                patient_name=request.patient_name,
                patient_reference_id=request.patient_reference_id,
                notes=request.notes,
            )
        except PersistenceError as exc:
            logger.error(
                "Checkout transaction for unit %s failed; restoring quantity: %s",
                unit_id,
                exc,
            )
            self._restore(unit_id, clinic_id, before, after)
            raise PersistenceError(f"Failed to create transaction: {exc.message}") from exc

        logger.info("Checked out %s from unit %s", request.quantity, unit_id)
        return transaction

    def _restore(self, unit_id: str, clinic_id: str, before: int, after: int) -> None:
        try:
            if self.store.compare_and_set_available(unit_id, clinic_id, after, before):
                return
        except PersistenceError as exc:
            logger.error("Failed to reset unit %s to %s: %s", unit_id, before, exc)
            return
        # Someone else moved the unit in between; add back rather than overwrite.
        restore_quantity(self.store, unit_id, clinic_id, before - after)
