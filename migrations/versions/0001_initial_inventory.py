"""create clinic inventory tables

Revision ID: 0001_initial_inventory
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_inventory"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "clinics",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "drugs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("medication_name", sa.String(255), nullable=False),
        sa.Column("generic_name", sa.String(255), nullable=False),
        sa.Column("strength", sa.Float(), nullable=False),
        sa.Column("strength_unit", sa.String(32), nullable=False),
        sa.Column("ndc_id", sa.String(32), nullable=False, unique=True),
        sa.Column("form", sa.String(64), nullable=False),
    )
    op.create_table(
        "locations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("temp", sa.String(32), nullable=False),
        sa.Column("clinic_id", sa.String(36), sa.ForeignKey("clinics.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_locations_clinic_id", "locations", ["clinic_id"])
    op.create_table(
        "lots",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("source", sa.String(255), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("date_created", sa.DateTime(), nullable=False),
        sa.Column("location_id", sa.String(36), sa.ForeignKey("locations.id"), nullable=False),
        sa.Column("clinic_id", sa.String(36), sa.ForeignKey("clinics.id"), nullable=False),
        sa.Column("max_capacity", sa.Integer(), nullable=True),
        sa.CheckConstraint(
            "max_capacity IS NULL OR max_capacity > 0", name="ck_lots_max_capacity"
        ),
    )
    op.create_index("ix_lots_clinic_id", "lots", ["clinic_id"])
    op.create_table(
        "units",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("total_quantity", sa.Integer(), nullable=False),
        sa.Column("available_quantity", sa.Integer(), nullable=False),
        sa.Column("patient_reference_id", sa.String(255), nullable=True),
        sa.Column("lot_id", sa.String(36), sa.ForeignKey("lots.id"), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("date_created", sa.DateTime(), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("drug_id", sa.String(36), sa.ForeignKey("drugs.id"), nullable=False),
        sa.Column("qr_code", sa.String(64), nullable=True),
        sa.Column("optional_notes", sa.Text(), nullable=True),
        sa.Column("manufacturer_lot_number", sa.String(128), nullable=True),
        sa.Column("clinic_id", sa.String(36), sa.ForeignKey("clinics.id"), nullable=False),
        sa.CheckConstraint("total_quantity > 0", name="ck_units_total_positive"),
        sa.CheckConstraint("available_quantity >= 0", name="ck_units_available_nonneg"),
        sa.CheckConstraint(
            "available_quantity <= total_quantity", name="ck_units_available_le_total"
        ),
    )
    op.create_index("ix_units_lot_id", "units", ["lot_id"])
    op.create_index("ix_units_drug_id", "units", ["drug_id"])
    op.create_index("ix_units_expiry_date", "units", ["expiry_date"])
    op.create_index("ix_units_clinic_id", "units", ["clinic_id"])
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_id", sa.String(36), sa.ForeignKey("units.id"), nullable=False),
        sa.Column("patient_name", sa.String(255), nullable=True),
        sa.Column("patient_reference_id", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("clinic_id", sa.String(36), sa.ForeignKey("clinics.id"), nullable=False),
    )
    op.create_index("ix_transactions_timestamp", "transactions", ["timestamp"])
    op.create_index("ix_transactions_unit_id", "transactions", ["unit_id"])
    op.create_index("ix_transactions_clinic_id", "transactions", ["clinic_id"])


def downgrade():
    op.drop_table("transactions")
    op.drop_table("units")
    op.drop_table("lots")
    op.drop_table("locations")
    op.drop_table("drugs")
    op.drop_table("clinics")
