"""Wire the inventory services around one storage handle."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from dispensary.services.checkout import FEFOAllocator, UnitCheckout
from dispensary.services.ledger import TransactionLedger
from dispensary.services.lots import LotCapacityTracker
from dispensary.services.reports import InventoryReports
from dispensary.services.units import UnitStore
from dispensary.storage import InventoryStore


@dataclass
class InventoryServices:
    store: InventoryStore
    lots: LotCapacityTracker
    ledger: TransactionLedger
    units: UnitStore
    fefo: FEFOAllocator
    unit_checkout: UnitCheckout
    reports: InventoryReports


def build_services(session, settings: Mapping[str, Any] | None = None) -> InventoryServices:
    settings = settings or {}
    store = InventoryStore(session)
    lots = LotCapacityTracker(store)
    ledger = TransactionLedger(store)
    return InventoryServices(
        store=store,
        lots=lots,
        ledger=ledger,
        units=UnitStore(store, lots, ledger),
        fefo=FEFOAllocator(store, ledger),
        unit_checkout=UnitCheckout(store, ledger),
        reports=InventoryReports(
            store,
            expiring_soon_days=int(settings.get("EXPIRING_SOON_DAYS", 30)),
            recent_activity_days=int(settings.get("RECENT_ACTIVITY_DAYS", 7)),
            low_stock_ratio=float(settings.get("LOW_STOCK_RATIO", 0.1)),
        ),
    )
