# Overview: Return request statistics: status counts, reason breakdown and top returned products.

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func

from ..errors import ValidationError
from ..extensions import db
from ..models import ReturnLine, ReturnRequest
from ..time_utils import parse_iso_datetime, utcnow
from .return_workflow import STATUS_CLOSED, STATUS_RESOLVED, VALID_STATUSES
from .tenant_service import TenantScope


RECENT_WINDOW_DAYS = 30


def _parse_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_iso_datetime(start) if start else None
        end_dt = parse_iso_datetime(end) if end else None
    except ValueError as e:
        raise ValidationError(f"Invalid date filter: {e}") from e
    return start_dt, end_dt


def status_counts(org_id: int) -> dict:
    """Count of requests per status; every status is present, zero or not."""
    scope = TenantScope(org_id)
    rows = (
        db.session.query(ReturnRequest.status, func.count(ReturnRequest.id))
        .filter(ReturnRequest.org_id == scope.org_id)
        .group_by(ReturnRequest.status)
        .all()
    )
    counts = {status: 0 for status in sorted(VALID_STATUSES)}
    for status, count in rows:
        counts[status] = count
    return counts


def reason_breakdown(org_id: int, *, start: str | None = None, end: str | None = None) -> list[dict]:
    """Requests and value per return reason, largest first."""
    scope = TenantScope(org_id)
    start_dt, end_dt = _parse_range(start, end)

    query = db.session.query(
        ReturnRequest.return_reason.label("reason"),
        func.count(ReturnRequest.id).label("count"),
        func.coalesce(func.sum(ReturnRequest.total_value_cents), 0).label("total_value_cents"),
    ).filter(ReturnRequest.org_id == scope.org_id)
    if start_dt:
        query = query.filter(ReturnRequest.created_at >= start_dt)
    if end_dt:
        query = query.filter(ReturnRequest.created_at <= end_dt)

    rows = query.group_by(ReturnRequest.return_reason).order_by(func.count(ReturnRequest.id).desc()).all()
    return [
        {"reason": row.reason, "count": row.count, "total_value_cents": int(row.total_value_cents)}
        for row in rows
    ]


def top_returned_products(org_id: int, *, limit: int = 10) -> list[dict]:
    """Products by total quantity returned."""
    scope = TenantScope(org_id)
    rows = (
        db.session.query(
            ReturnLine.product_id,
            func.max(ReturnLine.product_name).label("product_name"),
            func.coalesce(func.sum(ReturnLine.quantity), 0).label("quantity"),
            func.count(func.distinct(ReturnLine.return_request_id)).label("return_count"),
            func.coalesce(func.sum(ReturnLine.line_value_cents), 0).label("total_value_cents"),
        )
        .join(ReturnRequest, ReturnRequest.id == ReturnLine.return_request_id)
        .filter(ReturnRequest.org_id == scope.org_id, ReturnLine.product_id.is_not(None))
        .group_by(ReturnLine.product_id)
        .order_by(func.sum(ReturnLine.quantity).desc(), ReturnLine.product_id)
        .limit(limit)
        .all()
    )
    return [
        {
            "product_id": row.product_id,
            "product_name": row.product_name,
            "quantity": int(row.quantity),
            "return_count": row.return_count,
            "total_value_cents": int(row.total_value_cents),
        }
        for row in rows
    ]


def return_stats(org_id: int, *, now: datetime | None = None) -> dict:
    """
    Dashboard summary.

    last_30_days counts only requests RESOLVED in the window (by resolution
    time, not creation time), so open requests never inflate returned value.
    """
    scope = TenantScope(org_id)
    since = (now or utcnow()) - timedelta(days=RECENT_WINDOW_DAYS)
    count, total_value = (
        db.session.query(
            func.count(ReturnRequest.id),
            func.coalesce(func.sum(ReturnRequest.total_value_cents), 0),
        )
        .filter(
            ReturnRequest.org_id == scope.org_id,
            ReturnRequest.status.in_((STATUS_RESOLVED, STATUS_CLOSED)),
            ReturnRequest.resolved_at >= since,
        )
        .one()
    )
    return {
        "status_counts": status_counts(org_id),
        "last_30_days": {"count": count, "total_value_cents": int(total_value)},
    }
