# Overview: Read-side sale lookups (single sale and filtered, paginated listing).

from __future__ import annotations

from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import selectinload

from ..errors import NotFoundError, ValidationError
from ..identity import Actor
from ..models import Sale
from ..models.sales import (
    SALE_COMPLETED,
    SALE_FAILED,
    SALE_PENDING_PAYMENT,
    SALE_REFUNDED,
    SALE_VOID,
    VALID_PAYMENT_METHODS,
)
from tillpoint.time_utils import parse_iso_datetime, parse_range_end

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100

SALE_STATUSES = [SALE_COMPLETED, SALE_PENDING_PAYMENT, SALE_FAILED, SALE_VOID, SALE_REFUNDED]


def get_sale(session, sale_id: int, actor: Actor) -> Sale:
    """
    Fetch one sale with items, payments and refunds.

    Cashiers can only see their own sales; anything else reads as not found.
    """
    sale = (
        session.query(Sale)
        .options(selectinload(Sale.items), selectinload(Sale.payments), selectinload(Sale.refunds))
        .filter(Sale.id == sale_id)
        .first()
    )
    if sale is None or (not actor.is_supervisor and sale.actor_id != actor.id):
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale


def _parse_date(value: Optional[str], field: str, parse=parse_iso_datetime):
    if not value:
        return None
    try:
        return parse(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO-8601 date", details={"field": field}) from exc


def list_sales(
    session,
    actor: Actor,
    filters: Optional[dict] = None,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
) -> dict:
    """
    Filtered sale listing.

    Filters (all optional): start_date, end_date, actor_id, payment_method,
    status, search (sale number, customer name or phone).

    Returns:
        Dict with 'items', 'count', 'pagination' and a 'summary' of the
        whole filtered set (count and cent totals).
    """
    filters = filters or {}

    query = session.query(Sale)
    start = _parse_date(filters.get("start_date"), "start_date")
    end = _parse_date(filters.get("end_date"), "end_date", parse_range_end)
    if start is not None:
        query = query.filter(Sale.created_at >= start)
    if end is not None:
        query = query.filter(Sale.created_at < end)

    # Cashiers are always scoped to their own sales.
    actor_filter = filters.get("actor_id")
    if not actor.is_supervisor:
        actor_filter = actor.id
    if actor_filter:
        query = query.filter(Sale.actor_id == str(actor_filter))

    payment_method = filters.get("payment_method")
    if payment_method:
        if payment_method not in VALID_PAYMENT_METHODS:
            raise ValidationError(f"Invalid payment method: {payment_method}", details={"field": "payment_method"})
        query = query.filter(Sale.payment_method == payment_method)

    status = filters.get("status")
    if status:
        if status not in SALE_STATUSES:
            raise ValidationError(f"Invalid status: {status}", details={"field": "status"})
        query = query.filter(Sale.status == status)

    search = (filters.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Sale.sale_number.ilike(pattern),
            Sale.customer_name.ilike(pattern),
            Sale.customer_phone.ilike(pattern),
        ))

    count, revenue, discount, tax = query.with_entities(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
        func.coalesce(func.sum(Sale.discount_cents), 0),
        func.coalesce(func.sum(Sale.tax_cents), 0),
    ).one()

    per_page = min(per_page or DEFAULT_PER_PAGE, MAX_PER_PAGE)
    page = max(page or 1, 1)
    total_pages = (count + per_page - 1) // per_page if count > 0 else 1

    sales = (
        query.options(selectinload(Sale.items), selectinload(Sale.payments))
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    return {
        "items": [s.to_dict() for s in sales],
        "count": len(sales),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": count,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
        "summary": {
            "count": count,
            "total_cents": int(revenue),
            "discount_cents": int(discount),
            "tax_cents": int(tax),
        },
    }
