# Overview: Builds engine components for the current Flask app from its config and request session.

"""
The only place that reaches for the request-scoped db.session. Every engine
component receives its session and collaborators explicitly; routes, CLI
commands and the drain worker call build_components() to get a consistent set.

App-scoped state lives in app.extensions["tillpoint"]:
- drain_lock:    threading.Lock shared by every drain pass in the process
- mpesa_client:  MpesaClient (one httpx pool and token cache per app)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from ..extensions import db
from .catalog_service import CatalogPatchService, StockEntryService
from .inventory_guard import InventoryGuard
from .mpesa_client import MpesaClient, MpesaSettings
from .payment_gateway import PaymentGatewayAdapter
from .pricing import PricingResolver
from .refund_service import RefundService
from .sale_orchestrator import SaleOrchestrator
from .sync_handlers import build_sync_handlers
from .sync_queue import SyncQueue

EXTENSION_KEY = "tillpoint"


def init_app(app) -> None:
    app.extensions[EXTENSION_KEY] = {
        "drain_lock": threading.Lock(),
        "mpesa_client": None,
    }


def _state(app) -> dict:
    return app.extensions[EXTENSION_KEY]


def get_mpesa_client(app=None):
    app = app or current_app._get_current_object()
    state = _state(app)
    if state["mpesa_client"] is None:
        state["mpesa_client"] = MpesaClient(MpesaSettings.from_config(app.config))
    return state["mpesa_client"]


def set_mpesa_client(client, app=None) -> None:
    """Swap the gateway client (tests, alternative transports)."""
    app = app or current_app._get_current_object()
    _state(app)["mpesa_client"] = client


@dataclass
class Components:
    session: object
    pricing: PricingResolver
    guard: InventoryGuard
    gateway: PaymentGatewayAdapter
    orchestrator: SaleOrchestrator
    refunds: RefundService
    stock_entries: StockEntryService
    catalog: CatalogPatchService
    sync_queue: SyncQueue


def build_components(app=None, session=None) -> Components:
    app = app or current_app._get_current_object()
    session = session or db.session
    config = app.config

    pricing = PricingResolver(config["VAT_RATE_BPS"])
    guard = InventoryGuard(session)
    gateway = PaymentGatewayAdapter(
        session,
        get_mpesa_client(app),
        description=config.get("MPESA_TRANSACTION_DESC"),
    )
    orchestrator = SaleOrchestrator(
        session,
        pricing=pricing,
        guard=guard,
        gateway=gateway,
        void_window_hours=config["VOID_WINDOW_HOURS"],
        pending_timeout_seconds=config["PAYMENT_PENDING_TIMEOUT_SECONDS"],
    )
    refunds = RefundService(session, guard)
    stock_entries = StockEntryService(session, guard)
    catalog = CatalogPatchService(session)
    sync_queue = SyncQueue(
        session,
        build_sync_handlers(orchestrator, stock_entries, refunds, catalog),
        max_retries=config["SYNC_MAX_RETRIES"],
        retention_days=config["SYNC_RETENTION_DAYS"],
        batch_size=config["SYNC_DRAIN_BATCH_SIZE"],
        stale_claim_seconds=config["SYNC_STALE_CLAIM_SECONDS"],
        drain_lock=_state(app)["drain_lock"],
    )
    return Components(
        session=session,
        pricing=pricing,
        guard=guard,
        gateway=gateway,
        orchestrator=orchestrator,
        refunds=refunds,
        stock_entries=stock_entries,
        catalog=catalog,
        sync_queue=sync_queue,
    )


def close_mpesa_client(app) -> None:
    client: Optional[MpesaClient] = _state(app).get("mpesa_client")
    if client is not None and hasattr(client, "close"):
        client.close()
    _state(app)["mpesa_client"] = None
