import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint

from dispensary.extensions import db


def _new_id() -> str:
    return str(uuid.uuid4())


class Clinic(db.Model):
    __tablename__ = "clinics"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class Drug(db.Model):
    __tablename__ = "drugs"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    medication_name = db.Column(db.String(255), nullable=False)
    generic_name = db.Column(db.String(255), nullable=False, default="")
    strength = db.Column(db.Float, nullable=False)
    strength_unit = db.Column(db.String(32), nullable=False)
    ndc_id = db.Column(db.String(32), unique=True, nullable=False)
    form = db.Column(db.String(64), nullable=False, default="")


class Location(db.Model):
    __tablename__ = "locations"

    TEMP_FRIDGE = "fridge"
    TEMP_ROOM = "room_temp"
    TEMPERATURES = (TEMP_FRIDGE, TEMP_ROOM)

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    temp = db.Column(db.String(32), nullable=False, default=TEMP_ROOM)
    clinic_id = db.Column(
        db.String(36), db.ForeignKey("clinics.id"), nullable=False, index=True
    )
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class Lot(db.Model):
    __tablename__ = "lots"
    __table_args__ = (
        CheckConstraint(
            "max_capacity IS NULL OR max_capacity > 0", name="ck_lots_max_capacity"
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    source = db.Column(db.String(255), nullable=False)
    note = db.Column(db.Text, nullable=True)
    date_created = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    location_id = db.Column(db.String(36), db.ForeignKey("locations.id"), nullable=False)
    clinic_id = db.Column(
        db.String(36), db.ForeignKey("clinics.id"), nullable=False, index=True
    )
    max_capacity = db.Column(db.Integer, nullable=True)

    location = db.relationship("Location", backref="lots")


class Unit(db.Model):
    __tablename__ = "units"
    __table_args__ = (
        CheckConstraint("total_quantity > 0", name="ck_units_total_positive"),
        CheckConstraint("available_quantity >= 0", name="ck_units_available_nonneg"),
        CheckConstraint(
            "available_quantity <= total_quantity", name="ck_units_available_le_total"
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    total_quantity = db.Column(db.Integer, nullable=False)
    available_quantity = db.Column(db.Integer, nullable=False)
    patient_reference_id = db.Column(db.String(255), nullable=True)
    lot_id = db.Column(db.String(36), db.ForeignKey("lots.id"), nullable=False, index=True)
    expiry_date = db.Column(db.Date, nullable=False, index=True)
    date_created = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    user_id = db.Column(db.String(36), nullable=False)  # acting user at check-in
    drug_id = db.Column(db.String(36), db.ForeignKey("drugs.id"), nullable=False, index=True)
    qr_code = db.Column(db.String(64), nullable=True)
    optional_notes = db.Column(db.Text, nullable=True)
    manufacturer_lot_number = db.Column(db.String(128), nullable=True)
    clinic_id = db.Column(
        db.String(36), db.ForeignKey("clinics.id"), nullable=False, index=True
    )

    drug = db.relationship("Drug", lazy="joined")
    lot = db.relationship("Lot", backref="units", lazy="joined")


class InventoryTransaction(db.Model):
    __tablename__ = "transactions"

    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    ADJUST = "adjust"
    TYPES = (CHECK_IN, CHECK_OUT, ADJUST)

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_id = db.Column(db.String(36), db.ForeignKey("units.id"), nullable=False, index=True)
    patient_name = db.Column(db.String(255), nullable=True)
    patient_reference_id = db.Column(db.String(255), nullable=True)
    user_id = db.Column(db.String(36), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    clinic_id = db.Column(
        db.String(36), db.ForeignKey("clinics.id"), nullable=False, index=True
    )

    unit = db.relationship("Unit", backref="transactions")
