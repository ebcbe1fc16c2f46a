# Overview: Drain handlers that replay offline mutations through the same services as online requests.

from __future__ import annotations

from typing import Optional

from ..errors import NotFoundError, ValidationError
from ..identity import Actor
from ..models import Sale
from ..models.sales import ASYNC_METHODS
from ..models.sync import SYNC_CATALOG_PATCH, SYNC_REFUND, SYNC_SALE, SYNC_STOCK_ENTRY
from .catalog_service import CatalogPatchService, StockEntryService
from .refund_service import RefundService
from .sale_orchestrator import SaleOrchestrator, parse_sale_payload
from .sync_queue import SyncHandler


def _pick(payload: dict, *keys: str):
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _require_int(payload: dict, *keys: str) -> int:
    value = _pick(payload, *keys)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{keys[0]} must be an integer", details={"field": keys[0]})
    return value


def build_sync_handlers(
    orchestrator: SaleOrchestrator,
    stock_entries: StockEntryService,
    refunds: RefundService,
    catalog: CatalogPatchService,
) -> dict[str, SyncHandler]:
    session = orchestrator.session

    def replay_sale(payload: dict, actor: Actor, key: str):
        kwargs = parse_sale_payload(payload)
        if kwargs["payment_method"] in ASYNC_METHODS:
            # Offline carts settle synchronously (cash, card, split).
            raise ValidationError("Offline sales cannot use asynchronous payment methods")
        kwargs["idempotency_key"] = key
        outcome = orchestrator.submit(actor=actor, **kwargs)
        if not outcome.ok:
            raise outcome.error
        return outcome

    def replay_stock_entry(payload: dict, actor: Actor, key: str):
        return stock_entries.record(
            _require_int(payload, "product_id", "productId"),
            _require_int(payload, "quantity"),
            actor,
            cost_price_cents=_pick(payload, "cost_price_cents", "costPriceCents"),
            reference_number=_pick(payload, "reference_number", "referenceNumber"),
            notes=_pick(payload, "notes"),
            idempotency_key=key,
        )

    def replay_refund(payload: dict, actor: Actor, key: str):
        return refunds.refund(
            _resolve_sale_id(session, payload),
            actor,
            _pick(payload, "reason"),
            amount_cents=_pick(payload, "amount_cents", "amountCents"),
            idempotency_key=key,
        )

    def replay_catalog_patch(payload: dict, actor: Actor, key: str):
        fields = _pick(payload, "fields", "changes")
        return catalog.apply(_require_int(payload, "product_id", "productId"), fields, actor)

    return {
        SYNC_SALE: replay_sale,
        SYNC_STOCK_ENTRY: replay_stock_entry,
        SYNC_REFUND: replay_refund,
        SYNC_CATALOG_PATCH: replay_catalog_patch,
    }


def _resolve_sale_id(session, payload: dict) -> int:
    """
    A refund recorded offline may target a sale that was itself created
    offline, so it can reference the sale by its idempotency key or number
    instead of the server id.
    """
    sale_id = _pick(payload, "sale_id", "saleId")
    if sale_id is not None:
        if not isinstance(sale_id, int) or isinstance(sale_id, bool):
            raise ValidationError("sale_id must be an integer", details={"field": "sale_id"})
        return sale_id

    sale: Optional[Sale] = None
    sale_key = _pick(payload, "sale_idempotency_key", "saleIdempotencyKey", "sale_offline_id")
    if sale_key:
        sale = session.query(Sale).filter_by(idempotency_key=str(sale_key)).first()
    sale_number = _pick(payload, "sale_number", "saleNumber")
    if sale is None and sale_number:
        sale = session.query(Sale).filter_by(sale_number=str(sale_number)).first()

    if sale is None:
        raise NotFoundError("Refund target sale not found", details={"payload_keys": sorted(payload)})
    return sale.id
