"""Append-only ledger of quantity events against units."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from dispensary.errors import NotFound, ValidationError
from dispensary.models import InventoryTransaction, Unit
from dispensary.storage import InventoryStore
from dispensary.utils.pagination import contains_text, page_window
from dispensary.utils.parsing import parse_int


logger = logging.getLogger("dispensary.ledger")


@dataclass(frozen=True)
class LedgerDrift:
    unit_id: str
    expected_outflow: int
    recorded_outflow: int
    has_check_in: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _transaction_matches(transaction: InventoryTransaction, needle: str) -> bool:
    drug = transaction.unit.drug if transaction.unit is not None else None
    candidates = [
        transaction.notes,
        transaction.patient_reference_id,
        transaction.type,
        transaction.quantity,
        transaction.user_id,
    ]
    if drug is not None:
        candidates.extend([drug.medication_name, drug.generic_name])
    return any(contains_text(value, needle) for value in candidates)


class TransactionLedger:
    def __init__(self, store: InventoryStore):
        self.store = store

    def record_transaction(
        self,
        tx_type: str,
        quantity: int,
        unit_id: str,
        acting_user_id: str,
        clinic_id: str,
        *,
        patient_name: str | None = None,
        patient_reference_id: str | None = None,
        notes: str | None = None,
    ) -> InventoryTransaction:
        if tx_type not in InventoryTransaction.TYPES:
            raise ValidationError(f"Unknown transaction type: {tx_type}")
        return self.store.insert_transaction(
            type=tx_type,
            quantity=quantity,
            unit_id=unit_id,
            user_id=acting_user_id,
            clinic_id=clinic_id,
            patient_name=patient_name,
            patient_reference_id=patient_reference_id,
            notes=notes,
        )

    def get_transaction(
        self, transaction_id: str, clinic_id: str
    ) -> InventoryTransaction | None:
        return self.store.get_transaction(transaction_id, clinic_id)

    def list_transactions(
        self,
        clinic_id: str,
        page: int = 1,
        page_size: int = 50,
        *,
        unit_id: str | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        offset, limit = page_window(page, page_size)
        filters = []
        if unit_id:
            filters.append(InventoryTransaction.unit_id == unit_id)

        transactions, count = self.store.select_transactions(
            clinic_id,
            filters,
            order_by=[InventoryTransaction.timestamp.desc()],
            offset=offset,
            limit=limit,
            with_count=True,
        )

        # Search only narrows the fetched page.
        if search:
            needle = search.lower()
            transactions = [tx for tx in transactions if _transaction_matches(tx, needle)]

        return {
            "transactions": transactions,
            "total": len(transactions) if search else (count or 0),
            "page": page,
            "page_size": page_size,
        }

    def update_transaction(
        self, transaction_id: str, clinic_id: str, updates: dict[str, Any]
    ) -> InventoryTransaction:
        """Correct a ledger entry's quantity or notes.

        This never touches the referenced unit: a quantity correction leaves
        the unit's balances as they are, so the unit will show up in
        :meth:`reconcile` until its quantities are adjusted separately.
        """

        transaction = self.store.get_transaction(transaction_id, clinic_id)
        if transaction is None:
            raise NotFound("Transaction not found")

        fields: dict[str, Any] = {}
        quantity = parse_int(updates.get("quantity"), "Transaction quantity")
        if quantity is not None:
            fields["quantity"] = quantity
        if "notes" in updates and updates["notes"] is not None:
            fields["notes"] = updates["notes"]
        if not fields:
            return transaction

        previous_quantity = transaction.quantity
        transaction = self.store.update_transaction_fields(transaction, fields)
        if "quantity" in fields and fields["quantity"] != previous_quantity:
            logger.warning(
                "Transaction %s quantity corrected from %s to %s; unit %s balances "
                "were not adjusted",
                transaction.id,
                previous_quantity,
                fields["quantity"],
                transaction.unit_id,
            )
        return transaction

    def reconcile(self, clinic_id: str) -> list[LedgerDrift]:
        """List units whose consumed stock does not match their ledger."""

        totals = self.store.transaction_totals_by_unit(clinic_id)
        units, _ = self.store.select_units(clinic_id, order_by=[Unit.date_created.asc()])

        drift: list[LedgerDrift] = []
        for unit in units:
            unit_totals = totals.get(unit.id, {})
            expected = unit.total_quantity - unit.available_quantity
            recorded = unit_totals.get(InventoryTransaction.CHECK_OUT, 0) + unit_totals.get(
                InventoryTransaction.ADJUST, 0
            )
            has_check_in = InventoryTransaction.CHECK_IN in unit_totals
            if expected != recorded or not has_check_in:
                drift.append(
                    LedgerDrift(
                        unit_id=unit.id,
                        expected_outflow=expected,
                        recorded_outflow=recorded,
                        has_check_in=has_check_in,
                    )
                )

        if drift:
            logger.warning(
                "Ledger reconciliation found %s unit(s) out of balance for clinic %s",
                len(drift),
                clinic_id,
            )
        return drift
