"""Record-level storage primitives for the inventory services.

Every write commits on its own. Nothing here spans several statements in one
database transaction, so callers that need multi-step consistency compensate
explicitly (see :mod:`dispensary.services.checkout`).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from dispensary.errors import PersistenceError
from dispensary.models import Drug, InventoryTransaction, Location, Lot, Unit


logger = logging.getLogger("dispensary.storage")


class InventoryStore:
    def __init__(self, session):
        self.session = session

    @contextmanager
    def _storage_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self.session.rollback()
            root_cause = getattr(exc, "orig", None) or exc
            logger.error("Storage failure during %s: %s", operation, root_cause)
            raise PersistenceError(f"Failed to {operation}: {root_cause}") from exc

    def _insert(self, record, operation: str):
        with self._storage_call(operation):
            self.session.add(record)
            self.session.commit()
        return record

    def _select(
        self,
        model,
        filters: Iterable[Any],
        *,
        order_by: Sequence[Any] = (),
        offset: int | None = None,
        limit: int | None = None,
        with_count: bool = False,
        operation: str,
    ) -> tuple[list[Any], int | None]:
        with self._storage_call(operation):
            query = self.session.query(model).filter(*filters)
            total = query.order_by(None).count() if with_count else None
            if order_by:
                query = query.order_by(*order_by)
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return query.all(), total

    # drugs

    def get_drug(self, drug_id: str) -> Drug | None:
        with self._storage_call("get drug"):
            return self.session.get(Drug, drug_id)

    def find_drugs_by_ndc(self, ndc_id: str) -> list[Drug]:
        rows, _ = self._select(Drug, [Drug.ndc_id == ndc_id], operation="find drug")
        return rows

    def find_drugs_by_name_and_strength(
        self, medication_name: str, strength: float, strength_unit: str
    ) -> list[Drug]:
        rows, _ = self._select(
            Drug,
            [
                func.lower(Drug.medication_name) == medication_name.strip().lower(),
                Drug.strength == strength,
                Drug.strength_unit == strength_unit,
            ],
            operation="find drug",
        )
        return rows

    # locations and lots

    def insert_location(self, **fields) -> Location:
        return self._insert(Location(**fields), "create location")

    def get_location(self, location_id: str, clinic_id: str) -> Location | None:
        rows, _ = self._select(
            Location,
            [Location.id == location_id, Location.clinic_id == clinic_id],
            operation="get location",
        )
        return rows[0] if rows else None

    def list_locations(self, clinic_id: str) -> list[Location]:
        rows, _ = self._select(
            Location,
            [Location.clinic_id == clinic_id],
            order_by=[Location.name.asc()],
            operation="list locations",
        )
        return rows

    def insert_lot(self, **fields) -> Lot:
        return self._insert(Lot(**fields), "create lot")

    def get_lot(self, lot_id: str, clinic_id: str) -> Lot | None:
        rows, _ = self._select(
            Lot, [Lot.id == lot_id, Lot.clinic_id == clinic_id], operation="get lot"
        )
        return rows[0] if rows else None

    def list_lots(self, clinic_id: str) -> list[Lot]:
        rows, _ = self._select(
            Lot,
            [Lot.clinic_id == clinic_id],
            order_by=[Lot.date_created.desc()],
            operation="list lots",
        )
        return rows

    def sum_lot_total_quantity(self, lot_id: str) -> int:
        with self._storage_call("compute lot capacity"):
            total = (
                self.session.query(func.coalesce(func.sum(Unit.total_quantity), 0))
                .filter(Unit.lot_id == lot_id)
                .scalar()
            )
        return int(total or 0)

    # units

    def insert_unit(self, **fields) -> Unit:
        return self._insert(Unit(**fields), "create unit")

    def get_unit(self, unit_id: str, clinic_id: str) -> Unit | None:
        rows, _ = self._select(
            Unit, [Unit.id == unit_id, Unit.clinic_id == clinic_id], operation="get unit"
        )
        return rows[0] if rows else None

    def select_units(
        self,
        clinic_id: str,
        filters: Iterable[Any] = (),
        *,
        order_by: Sequence[Any] = (),
        offset: int | None = None,
        limit: int | None = None,
        with_count: bool = False,
    ) -> tuple[list[Unit], int | None]:
        return self._select(
            Unit,
            [Unit.clinic_id == clinic_id, *filters],
            order_by=order_by,
            offset=offset,
            limit=limit,
            with_count=with_count,
            operation="get units",
        )

    def count_units(self, clinic_id: str, filters: Iterable[Any] = ()) -> int:
        with self._storage_call("count units"):
            return (
                self.session.query(Unit)
                .filter(Unit.clinic_id == clinic_id, *filters)
                .count()
            )

    def update_unit_fields(self, unit: Unit, fields: dict[str, Any]) -> Unit:
        with self._storage_call("update unit"):
            for name, value in fields.items():
                setattr(unit, name, value)
            self.session.commit()
        return unit

    def compare_and_set_available(
        self, unit_id: str, clinic_id: str, expected: int, new_value: int
    ) -> bool:
        """Set ``available_quantity`` only if it still equals ``expected``."""

        with self._storage_call("update unit quantity"):
            updated = (
                self.session.query(Unit)
                .filter(
                    Unit.id == unit_id,
                    Unit.clinic_id == clinic_id,
                    Unit.available_quantity == expected,
                )
                .update(
                    {Unit.available_quantity: new_value}, synchronize_session=False
                )
            )
            self.session.commit()
        return updated == 1

    def read_available(self, unit_id: str, clinic_id: str) -> int | None:
        with self._storage_call("read unit quantity"):
            value = (
                self.session.query(Unit.available_quantity)
                .filter(Unit.id == unit_id, Unit.clinic_id == clinic_id)
                .scalar()
            )
        return None if value is None else int(value)

    # transactions

    def insert_transaction(self, **fields) -> InventoryTransaction:
        return self._insert(InventoryTransaction(**fields), "create transaction")

    def get_transaction(
        self, transaction_id: str, clinic_id: str
    ) -> InventoryTransaction | None:
        rows, _ = self._select(
            InventoryTransaction,
            [
                InventoryTransaction.id == transaction_id,
                InventoryTransaction.clinic_id == clinic_id,
            ],
            operation="get transaction",
        )
        return rows[0] if rows else None

    def select_transactions(
        self,
        clinic_id: str,
        filters: Iterable[Any] = (),
        *,
        order_by: Sequence[Any] = (),
        offset: int | None = None,
        limit: int | None = None,
        with_count: bool = False,
    ) -> tuple[list[InventoryTransaction], int | None]:
        return self._select(
            InventoryTransaction,
            [InventoryTransaction.clinic_id == clinic_id, *filters],
            order_by=order_by,
            offset=offset,
            limit=limit,
            with_count=with_count,
            operation="get transactions",
        )

    def count_transactions(self, clinic_id: str, filters: Iterable[Any] = ()) -> int:
        with self._storage_call("count transactions"):
            return (
                self.session.query(InventoryTransaction)
                .filter(InventoryTransaction.clinic_id == clinic_id, *filters)
                .count()
            )

    def update_transaction_fields(
        self, transaction: InventoryTransaction, fields: dict[str, Any]
    ) -> InventoryTransaction:
        with self._storage_call("update transaction"):
            for name, value in fields.items():
                setattr(transaction, name, value)
            self.session.commit()
        return transaction

    def delete_transaction(self, transaction_id: str, clinic_id: str) -> bool:
        with self._storage_call("delete transaction"):
            deleted = (
                self.session.query(InventoryTransaction)
                .filter(
                    InventoryTransaction.id == transaction_id,
                    InventoryTransaction.clinic_id == clinic_id,
                )
                .delete(synchronize_session=False)
            )
            self.session.commit()
        return deleted == 1

    def transaction_totals_by_unit(self, clinic_id: str) -> dict[str, dict[str, int]]:
        """Return ``{unit_id: {type: summed quantity}}`` for the clinic."""

        with self._storage_call("summarize transactions"):
            rows = (
                self.session.query(
                    InventoryTransaction.unit_id,
                    InventoryTransaction.type,
                    func.coalesce(func.sum(InventoryTransaction.quantity), 0),
                )
                .filter(InventoryTransaction.clinic_id == clinic_id)
                .group_by(InventoryTransaction.unit_id, InventoryTransaction.type)
                .all()
            )

        totals: dict[str, dict[str, int]] = {}
        for unit_id, tx_type, quantity in rows:
            totals.setdefault(unit_id, {})[tx_type] = int(quantity or 0)
        return totals
