from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Organization(db.Model):
    """
    Licensed retailer; the tenant boundary.

    DESIGN:
    - Return requests, credit entries, sequences and source records carry org_id
    - RMA and credit memo numbers are unique within an organization, not globally
    - All reads go through TenantScope so the org filter cannot be forgotten
    - license_number is printed on waste destruction manifests
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)
    license_number = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def __repr__(self) -> str:
        return f"<Organization id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "license_number": self.license_number,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
