"""Dashboard counts and expiry summaries."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Callable

from dispensary.errors import ValidationError
from dispensary.mappers import format_unit
from dispensary.models import InventoryTransaction, Unit
from dispensary.storage import InventoryStore


EXPIRY_BUCKETS = (
    ("expiring_7_days", 7),
    ("expiring_30_days", 30),
    ("expiring_60_days", 60),
    ("expiring_90_days", 90),
)


class InventoryReports:
    def __init__(
        self,
        store: InventoryStore,
        *,
        expiring_soon_days: int = 30,
        recent_activity_days: int = 7,
        low_stock_ratio: float = 0.1,
        today: Callable[[], date] = date.today,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.expiring_soon_days = expiring_soon_days
        self.recent_activity_days = recent_activity_days
        self.low_stock_ratio = low_stock_ratio
        self.today = today
        self.now = now

    def get_dashboard_stats(self, clinic_id: str) -> dict[str, int]:
        today = self.today()
        soon = today + timedelta(days=self.expiring_soon_days)
        since = self.now() - timedelta(days=self.recent_activity_days)
        in_stock = Unit.available_quantity > 0

        units_with_stock, _ = self.store.select_units(clinic_id, [in_stock])
        low_stock_alerts = sum(
            1
            for unit in units_with_stock
            if unit.available_quantity < unit.total_quantity * self.low_stock_ratio
        )

        return {
            "total_units": len(units_with_stock),
            "units_expiring_soon": self.store.count_units(
                clinic_id,
                [in_stock, Unit.expiry_date >= today, Unit.expiry_date <= soon],
            ),
            "recent_check_ins": self.store.count_transactions(
                clinic_id,
                [
                    InventoryTransaction.type == InventoryTransaction.CHECK_IN,
                    InventoryTransaction.timestamp >= since,
                ],
            ),
            "recent_check_outs": self.store.count_transactions(
                clinic_id,
                [
                    InventoryTransaction.type == InventoryTransaction.CHECK_OUT,
                    InventoryTransaction.timestamp >= since,
                ],
            ),
            "low_stock_alerts": low_stock_alerts,
        }

    def get_medications_expiring(self, days: int, clinic_id: str) -> list[dict[str, Any]]:
        if days < 0:
            raise ValidationError("Days must be 0 or greater.")
        today = self.today()
        units, _ = self.store.select_units(
            clinic_id,
            [
                Unit.available_quantity > 0,
                Unit.expiry_date >= today,
                Unit.expiry_date <= today + timedelta(days=days),
            ],
            order_by=[Unit.expiry_date.asc()],
        )
        return self._group_by_drug_and_expiry(units, today)

    def get_expiry_report(self, clinic_id: str) -> dict[str, Any]:
        today = self.today()
        units, _ = self.store.select_units(
            clinic_id,
            [Unit.available_quantity > 0],
            order_by=[Unit.expiry_date.asc()],
        )

        summary = {"expired": 0}
        summary.update({name: 0 for name, _ in EXPIRY_BUCKETS})
        for unit in units:
            if unit.expiry_date < today:
                summary["expired"] += 1
                continue
            for name, days in EXPIRY_BUCKETS:
                if unit.expiry_date <= today + timedelta(days=days):
                    summary[name] += 1
                    break
        summary["total"] = len(units)

        return {
            "summary": summary,
            "medications": self._group_by_drug_and_expiry(units, today),
        }

    @staticmethod
    def _group_by_drug_and_expiry(units: list[Unit], today: date) -> list[dict[str, Any]]:
        groups: dict[tuple[str, date], dict[str, Any]] = {}
        for unit in units:
            key = (unit.drug_id, unit.expiry_date)
            group = groups.get(key)
            if group is None:
                drug = unit.drug
                group = {
                    "drug_id": unit.drug_id,
                    "medication_name": drug.medication_name if drug else None,
                    "generic_name": drug.generic_name if drug else None,
                    "strength": drug.strength if drug else None,
                    "strength_unit": drug.strength_unit if drug else None,
                    "ndc_id": drug.ndc_id if drug else None,
                    "total_units": 0,
                    "total_quantity": 0,
                    "expiry_date": unit.expiry_date.isoformat(),
                    "days_until_expiry": (unit.expiry_date - today).days,
                    "units": [],
                }
                groups[key] = group

            group["total_units"] += 1
            group["total_quantity"] += unit.available_quantity
            group["units"].append(format_unit(unit))
        return list(groups.values())
