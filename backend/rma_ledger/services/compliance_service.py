# Overview: Builds return lines and freezes their regulatory compliance snapshot.

"""
Compliance Snapshot Extractor

WHY: Regulators ask about a returned item as it was sold: its batch, its
tracking UID, its potency. The live catalog record may have been edited
since (new batch, re-tested potency), so a return copies the frozen values
from the original sale line whenever it can, and only falls back to the
live product when there is no sale line to copy from.

SOURCE PRECEDENCE (per item):
1. Matching line of the referenced sale (by sale_line_id, then product_id)
2. Live Product record
3. Placeholders ("UNKNOWN" strings, 0 numerics, no dates, not lab tested)

UNIT PRICE PRECEDENCE:
matched sale line price > price supplied with the item > product price

FAILURE POLICY:
- Bad input (quantity, condition, unresolvable price, unknown sale)
  raises before anything is written
- An unknown product is logged and treated as "no product": placeholders
- An unexpected failure while copying one item's snapshot is logged and
  that item gets a placeholder snapshot; the return is still created
"""

from __future__ import annotations

from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..models import Product, ReturnLine, Sale, SaleLine
from ..models.compliance import (
    COMPLIANCE_DATE_FIELDS,
    COMPLIANCE_FLAG_FIELDS,
    COMPLIANCE_NUMERIC_FIELDS,
    COMPLIANCE_STRING_FIELDS,
    UNKNOWN,
)
from .tenant_service import TenantScope


ITEM_CONDITIONS = {"defective", "damaged", "unopened", "expired", "wrong_product"}
DEFAULT_CONDITION = "unopened"

SOURCE_SALE = "sale"
SOURCE_PRODUCT = "product"
SOURCE_PLACEHOLDER = "placeholder"


# =============================================================================
# SNAPSHOT HELPERS
# =============================================================================

def placeholder_snapshot() -> dict:
    """Compliance values used when no source record is available."""
    snapshot = {}
    for field in COMPLIANCE_STRING_FIELDS:
        snapshot[field] = UNKNOWN
    for field in COMPLIANCE_NUMERIC_FIELDS:
        snapshot[field] = 0.0
    for field in COMPLIANCE_DATE_FIELDS:
        snapshot[field] = None
    for field in COMPLIANCE_FLAG_FIELDS:
        snapshot[field] = False
    return snapshot


def snapshot_from(source) -> dict:
    """
    Copy the compliance columns of a SaleLine or Product.

    Values are copied verbatim; only fields the source leaves empty are
    filled with placeholders.
    """
    snapshot = placeholder_snapshot()
    for field in COMPLIANCE_STRING_FIELDS:
        value = getattr(source, field)
        if value not in (None, ""):
            snapshot[field] = value
    for field in COMPLIANCE_NUMERIC_FIELDS:
        value = getattr(source, field)
        if value is not None:
            snapshot[field] = float(value)
    for field in COMPLIANCE_DATE_FIELDS:
        snapshot[field] = getattr(source, field)
    for field in COMPLIANCE_FLAG_FIELDS:
        snapshot[field] = bool(getattr(source, field))
    return snapshot


def match_sale_line(sale: Sale, item: dict) -> SaleLine | None:
    """Find the sale line an item refers to (explicit line id wins over product id)."""
    sale_line_id = item.get("sale_line_id")
    if sale_line_id is not None:
        for line in sale.lines:
            if line.id == sale_line_id:
                return line
        raise ValidationError(f"Sale line {sale_line_id} is not part of invoice {sale.invoice_number}")

    product_id = item.get("product_id")
    if product_id is None:
        return None
    for line in sale.lines:
        if line.product_id == product_id:
            return line
    return None


# =============================================================================
# INPUT VALIDATION
# =============================================================================

def _validate_quantity(index: int, quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"Item {index + 1}: quantity must be a whole number")
    if quantity < 1:
        raise ValidationError(f"Item {index + 1}: quantity must be at least 1")
    return quantity


def _validate_condition(index: int, condition) -> str:
    condition = condition or DEFAULT_CONDITION
    if condition not in ITEM_CONDITIONS:
        raise ValidationError(
            f"Item {index + 1}: condition must be one of {', '.join(sorted(ITEM_CONDITIONS))}"
        )
    return condition


def _validate_price(index: int, price) -> int | None:
    if price is None:
        return None
    if isinstance(price, bool) or not isinstance(price, int):
        raise ValidationError(f"Item {index + 1}: unit_price_cents must be an integer number of cents")
    if price < 0:
        raise ValidationError(f"Item {index + 1}: unit_price_cents cannot be negative")
    return price


def validate_items(items) -> None:
    """Shape checks that need no database access."""
    if not items:
        raise ValidationError("At least one item is required")
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"Item {index + 1}: expected an object")
        _validate_quantity(index, item.get("quantity"))
        _validate_condition(index, item.get("condition"))
        _validate_price(index, item.get("unit_price_cents"))


# =============================================================================
# EXTRACTION
# =============================================================================

def build_return_lines(org_id: int, items: list[dict], related_sale_id: int | None = None) -> list[ReturnLine]:
    """
    Build unsaved ReturnLine objects with frozen compliance snapshots.

    Args:
        org_id: Tenant that owns the return
        items: [{product_id?, sale_line_id?, product_name?, sku?, quantity,
                 unit_price_cents?, condition?, reason?}, ...]
        related_sale_id: Optional sale to copy compliance data from

    Returns:
        ReturnLine objects in item order (position 0..n-1), not yet added
        to the session

    Raises:
        ValidationError: Invalid item input or no resolvable unit price
        NotFoundError: Referenced sale is absent or foreign

    A product that cannot be resolved (deleted, foreign) does not fail the
    request: the line keeps the caller's name and price with placeholders.
    """
    validate_items(items)

    scope = TenantScope(org_id)
    sale = scope.get(Sale, related_sale_id) if related_sale_id is not None else None

    lines = []
    for index, item in enumerate(items):
        sale_line = match_sale_line(sale, item) if sale is not None else None
        product = _find_product(scope, index, item.get("product_id"), org_id)
        if product is None and sale_line is not None:
            product = _find_product(scope, index, sale_line.product_id, org_id)

        try:
            if sale_line is not None:
                snapshot, source = snapshot_from(sale_line), SOURCE_SALE
            elif product is not None:
                snapshot, source = snapshot_from(product), SOURCE_PRODUCT
            else:
                snapshot, source = placeholder_snapshot(), SOURCE_PLACEHOLDER
        except Exception:
            current_app.logger.exception(
                "Failed to copy compliance snapshot for item %s (org_id=%s, sale_id=%s)",
                index + 1,
                org_id,
                related_sale_id,
            )
            snapshot, source = placeholder_snapshot(), SOURCE_PLACEHOLDER

        unit_price_cents = _resolve_unit_price(index, item, sale_line, product)
        product_name = (
            item.get("product_name")
            or (sale_line.name if sale_line is not None else None)
            or (product.name if product is not None else None)
        )
        if not product_name:
            raise ValidationError(f"Item {index + 1}: product_name is required when no product is referenced")

        line = ReturnLine(
            position=index,
            product_id=product.id if product is not None else None,
            sale_line_id=sale_line.id if sale_line is not None else None,
            product_name=product_name,
            sku=(sale_line.sku if sale_line is not None else None) or item.get("sku") or (product.sku if product is not None else None),
            quantity=item["quantity"],
            unit_price_cents=unit_price_cents,
            condition=_validate_condition(index, item.get("condition")),
            reason=item.get("reason"),
            compliance_source=source,
            disposition_method="pending",
            **snapshot,
        )
        line.line_value_cents = line.calculate_value_cents()
        lines.append(line)

    return lines


def _resolve_unit_price(index: int, item: dict, sale_line: SaleLine | None, product: Product | None) -> int:
    if sale_line is not None:
        return sale_line.unit_price_cents
    price = _validate_price(index, item.get("unit_price_cents"))
    if price is not None:
        return price
    if product is not None and product.price_cents is not None:
        return product.price_cents
    raise ValidationError(f"Item {index + 1}: unit price could not be determined")


def _find_product(scope: TenantScope, index: int, product_id, org_id: int) -> Product | None:
    if product_id is None:
        return None
    try:
        return scope.get(Product, product_id)
    except NotFoundError:
        current_app.logger.warning(
            "Item %s references unknown product %s (org_id=%s); using placeholder compliance data",
            index + 1,
            product_id,
            org_id,
        )
        return None
