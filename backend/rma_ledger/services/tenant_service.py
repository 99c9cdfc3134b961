"""
Multi-Tenant Service: Tenant-Scoped Reads

WHY: Every entity in this service belongs to exactly one organization and
its identifiers (RMA numbers, credit memo numbers) are only unique within
it. Filtering by org_id by hand at every call site is how cross-tenant
leaks happen, so all lookups go through a TenantScope.

SECURITY INVARIANTS:
1. Every service call receives an org_id and builds a TenantScope from it
2. Lookups of entities owned by another org fail exactly like missing ones
3. Cross-tenant attempts are logged as warnings with both org ids

USAGE:
    from .tenant_service import TenantScope

    scope = TenantScope(org_id)
    sale = scope.get(Sale, sale_id)              # NotFoundError if absent/foreign
    open_rmas = scope.query(ReturnRequest).filter_by(status="approved").all()
"""

from __future__ import annotations

from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Organization
from .concurrency import lock_for_update


def _label(model) -> str:
    return getattr(model, "__name__", str(model))


def _log_cross_tenant_attempt(message: str, *, org_id: int, owner_org_id: int | None = None) -> None:
    current_app.logger.warning(
        "Cross-tenant access denied: %s (org_id=%s, owner_org_id=%s)",
        message,
        org_id,
        owner_org_id,
    )


class TenantScope:
    """Query helper bound to a single organization."""

    def __init__(self, org_id: int):
        if not org_id:
            raise ValidationError("org_id is required")
        self.org_id = org_id

    def __repr__(self) -> str:
        return f"<TenantScope org_id={self.org_id}>"

    def query(self, model):
        """Base query for an org-owned model, already filtered by org_id."""
        return db.session.query(model).filter(model.org_id == self.org_id)

    def get(self, model, entity_id: int, *, lock: bool = False):
        """
        Load an org-owned entity by primary key.

        Raises NotFoundError when the row is absent or owned by another org.
        The message is the same in both cases so ids cannot be probed.
        """
        if entity_id is None:
            raise NotFoundError(f"{_label(model)} not found")

        query = db.session.query(model).filter(model.id == entity_id)
        if lock:
            query = lock_for_update(query)
        entity = query.first()

        if entity is None:
            raise NotFoundError(f"{_label(model)} not found")

        if entity.org_id != self.org_id:
            _log_cross_tenant_attempt(
                f"{_label(model)} {entity_id}",
                org_id=self.org_id,
                owner_org_id=entity.org_id,
            )
            raise NotFoundError(f"{_label(model)} not found")

        return entity

    def get_by(self, model, **filters):
        """Load one org-owned entity by column filters (e.g. rma_number=...)."""
        entity = self.query(model).filter_by(**filters).first()
        if entity is None:
            raise NotFoundError(f"{_label(model)} not found")
        return entity

    def organization(self) -> Organization:
        """The scope's organization; inactive organizations are rejected."""
        org = db.session.query(Organization).filter_by(id=self.org_id).first()
        if not org:
            raise NotFoundError("Organization not found")
        if not org.is_active:
            raise ValidationError("Organization is not active")
        return org
