from __future__ import annotations

from ..extensions import db


# Regulated attributes tracked for every cannabis item. The same column set
# lives on the live Product, on the SaleLine (frozen at sale time) and on the
# ReturnLine (frozen again at return creation).
COMPLIANCE_STRING_FIELDS = (
    "batch_number",
    "state_tracking_id",
    "category",
    "strain_type",
    "strain_name",
    "unit",
    "licensed_producer",
    "producer_license",
    "lab_test_result",
)
COMPLIANCE_NUMERIC_FIELDS = (
    "thc_content",
    "cbd_content",
    "thc_mg",
    "cbd_mg",
    "weight_grams",
)
COMPLIANCE_DATE_FIELDS = (
    "packaged_date",
    "harvest_date",
    "lab_test_date",
)
COMPLIANCE_FLAG_FIELDS = (
    "lab_tested",
)
COMPLIANCE_FIELDS = (
    COMPLIANCE_STRING_FIELDS
    + COMPLIANCE_NUMERIC_FIELDS
    + COMPLIANCE_DATE_FIELDS
    + COMPLIANCE_FLAG_FIELDS
)

UNKNOWN = "UNKNOWN"


class ComplianceColumnsMixin:
    """Columns for the regulated attribute set (see COMPLIANCE_FIELDS)."""

    batch_number = db.Column(db.String(64), nullable=True)
    state_tracking_id = db.Column(db.String(64), nullable=True, index=True)  # METRC package UID
    category = db.Column(db.String(32), nullable=True)  # flower, edible, concentrate, ...
    strain_type = db.Column(db.String(32), nullable=True)  # indica, sativa, hybrid, cbd, ...
    strain_name = db.Column(db.String(128), nullable=True)

    # Cannabinoid profile: percentages plus per-unit milligram totals
    thc_content = db.Column(db.Float, nullable=True)
    cbd_content = db.Column(db.Float, nullable=True)
    thc_mg = db.Column(db.Float, nullable=True)
    cbd_mg = db.Column(db.Float, nullable=True)

    # Unit of sale and weight in grams per unit
    unit = db.Column(db.String(16), nullable=True)
    weight_grams = db.Column(db.Float, nullable=True)

    licensed_producer = db.Column(db.String(255), nullable=True)
    producer_license = db.Column(db.String(64), nullable=True)

    packaged_date = db.Column(db.Date, nullable=True)
    harvest_date = db.Column(db.Date, nullable=True)
    lab_test_date = db.Column(db.Date, nullable=True)
    lab_tested = db.Column(db.Boolean, nullable=True)
    lab_test_result = db.Column(db.String(32), nullable=True)

    def compliance_dict(self) -> dict:
        data = {}
        for field in COMPLIANCE_FIELDS:
            value = getattr(self, field)
            if field in COMPLIANCE_DATE_FIELDS and value is not None:
                value = value.isoformat()
            data[field] = value
        return data
