from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from dispensary.errors import InventoryError, NotFound, ValidationError
from dispensary.extensions import db
from dispensary.mappers import (
    format_location,
    format_lot,
    format_page,
    format_transaction,
    format_unit,
)
from dispensary.services.checkout import FefoCheckoutRequest, UnitCheckoutRequest
from dispensary.services.container import InventoryServices, build_services
from dispensary.services.units import CreateUnitInput, UnitFilters
from dispensary.utils.parsing import clean_text, parse_int

bp = Blueprint("api", __name__, url_prefix="/api/clinics/<clinic_id>")


def _services() -> InventoryServices:
    services = getattr(g, "_inventory_services", None)
    if services is None:
        services = build_services(db.session, current_app.config)
        g._inventory_services = services
    return services


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _acting_user(payload: dict[str, Any]) -> str:
    user_id = clean_text(payload.get("user_id"))
    if not user_id:
        raise ValidationError("user_id is required.")
    return user_id


def _pagination() -> tuple[int, int]:
    page = parse_int(request.args.get("page"), "Page", default=1)
    page_size = parse_int(
        request.args.get("page_size"),
        "Page size",
        default=current_app.config.get("DEFAULT_PAGE_SIZE", 50),
    )
    max_page_size = current_app.config.get("MAX_PAGE_SIZE", 200)
    return page, min(page_size, max_page_size)


@bp.errorhandler(InventoryError)
def handle_inventory_error(exc: InventoryError):
    if exc.status_code >= 500:
        current_app.logger.error("%s: %s", type(exc).__name__, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


############################
# LOCATIONS & LOTS
############################
@bp.route("/locations", methods=["GET"])
def list_locations(clinic_id):
    locations = _services().lots.list_locations(clinic_id)
    return jsonify([format_location(location) for location in locations])


@bp.route("/locations", methods=["POST"])
def create_location(clinic_id):
    payload = _payload()
    location = _services().lots.create_location(
        payload.get("name"), payload.get("temp"), clinic_id
    )
    return jsonify(format_location(location)), 201


@bp.route("/locations/<location_id>/units", methods=["GET"])
def location_inventory(clinic_id, location_id):
    services = _services()
    if services.lots.get_location(location_id, clinic_id) is None:
        raise NotFound("Location not found")
    units = services.units.get_inventory_by_location(location_id, clinic_id)
    return jsonify([format_unit(unit) for unit in units])


@bp.route("/lots", methods=["GET"])
def list_lots(clinic_id):
    lots = _services().lots.list_lots(clinic_id)
    return jsonify(
        [format_lot(lot, capacity=capacity, include_location=True) for lot, capacity in lots]
    )


@bp.route("/lots", methods=["POST"])
def create_lot(clinic_id):
    payload = _payload()
    tracker = _services().lots
    lot = tracker.create_lot(
        payload.get("source"),
        clean_text(payload.get("location_id")) or "",
        clinic_id,
        note=clean_text(payload.get("note")),
        max_capacity=parse_int(payload.get("max_capacity"), "Max capacity"),
    )
    return (
        jsonify(
            format_lot(lot, capacity=tracker.capacity_summary(lot), include_location=True)
        ),
        201,
    )


############################
# UNITS
############################
@bp.route("/units", methods=["POST"])
def create_unit(clinic_id):
    payload = _payload()
    user_id = _acting_user(payload)
    unit = _services().units.create_unit(
        CreateUnitInput.from_mapping(payload), user_id, clinic_id
    )
    return jsonify(format_unit(unit)), 201


@bp.route("/units", methods=["GET"])
def list_units(clinic_id):
    page, page_size = _pagination()
    result = _services().units.list_units(
        clinic_id, page, page_size, search=clean_text(request.args.get("search"))
    )
    return jsonify(format_page("units", result, format_unit))


@bp.route("/units/search", methods=["GET"])
def search_units(clinic_id):
    units = _services().units.search_units(request.args.get("q", ""), clinic_id)
    return jsonify([format_unit(unit) for unit in units])


@bp.route("/units/advanced", methods=["GET"])
def advanced_units(clinic_id):
    page, page_size = _pagination()
    args = request.args.to_dict()
    location_ids = request.args.getlist("location_id")
    if location_ids:
        args["location_ids"] = location_ids
    result = _services().units.get_units_advanced(
        clinic_id, UnitFilters.from_mapping(args), page, page_size
    )
    return jsonify(format_page("units", result, format_unit))


@bp.route("/units/<unit_id>", methods=["GET"])
def get_unit(clinic_id, unit_id):
    unit = _services().units.get_unit(unit_id, clinic_id)
    if unit is None:
        raise NotFound("Unit not found")
    return jsonify(format_unit(unit))


@bp.route("/units/<unit_id>", methods=["PATCH"])
def update_unit(clinic_id, unit_id):
    payload = _payload()
    user_id = clean_text(payload.pop("user_id", None))
    unit = _services().units.update_unit(
        unit_id, clinic_id, payload, acting_user_id=user_id
    )
    return jsonify(format_unit(unit))


############################
# CHECKOUT
############################
@bp.route("/checkout/fefo", methods=["POST"])
def checkout_fefo(clinic_id):
    payload = _payload()
    user_id = _acting_user(payload)
    result = _services().fefo.check_out(
        FefoCheckoutRequest.from_mapping(payload), user_id, clinic_id
    )
    return jsonify(
        {
            "transactions": [format_transaction(tx) for tx in result.transactions],
            "total_quantity_dispensed": result.total_quantity_dispensed,
            "units_used": [allocation.to_dict() for allocation in result.units_used],
        }
    )


@bp.route("/checkout/unit", methods=["POST"])
def checkout_unit(clinic_id):
    payload = _payload()
    user_id = _acting_user(payload)
    transaction = _services().unit_checkout.check_out(
        UnitCheckoutRequest.from_mapping(payload), user_id, clinic_id
    )
    return jsonify(format_transaction(transaction))


############################
# TRANSACTIONS
############################
@bp.route("/transactions", methods=["GET"])
def list_transactions(clinic_id):
    page, page_size = _pagination()
    result = _services().ledger.list_transactions(
        clinic_id,
        page,
        page_size,
        unit_id=clean_text(request.args.get("unit_id")),
        search=clean_text(request.args.get("search")),
    )
    return jsonify(format_page("transactions", result, format_transaction))


@bp.route("/transactions/<transaction_id>", methods=["GET"])
def get_transaction(clinic_id, transaction_id):
    transaction = _services().ledger.get_transaction(transaction_id, clinic_id)
    if transaction is None:
        raise NotFound("Transaction not found")
    return jsonify(format_transaction(transaction))


@bp.route("/transactions/<transaction_id>", methods=["PATCH"])
def update_transaction(clinic_id, transaction_id):
    transaction = _services().ledger.update_transaction(
        transaction_id, clinic_id, _payload()
    )
    return jsonify(format_transaction(transaction))


############################
# REPORTS
############################
@bp.route("/dashboard", methods=["GET"])
def dashboard(clinic_id):
    return jsonify(_services().reports.get_dashboard_stats(clinic_id))


@bp.route("/reports/expiring", methods=["GET"])
def medications_expiring(clinic_id):
    days = parse_int(request.args.get("days"), "Days", default=30)
    return jsonify(_services().reports.get_medications_expiring(days, clinic_id))


@bp.route("/reports/expiry", methods=["GET"])
def expiry_report(clinic_id):
    return jsonify(_services().reports.get_expiry_report(clinic_id))
