from datetime import timedelta

import pytest
from sqlalchemy import update

from tillpoint.errors import ConflictError, RetryExhausted, ValidationError
from tillpoint.models import Product, Refund, Sale, StockEntry, SyncQueueItem
from tillpoint.models.sales import SALE_REFUNDED
from tillpoint.models.sync import SYNC_COMPLETED, SYNC_FAILED, SYNC_PENDING, SYNC_PROCESSING
from tillpoint.services.pricing import CartLine
from tillpoint.time_utils import utcnow


def sale_payload(product, qty=1, method="CASH"):
    return {"items": [{"product_id": product.id, "quantity": qty}], "payment_method": method}


def item_status(session, item_id):
    session.expire_all()
    return session.get(SyncQueueItem, item_id)


class TestEnqueue:
    def test_enqueue_assigns_key(self, db_session, components, make_product, cashier):
        p = make_product()
        item, created = components.sync_queue.enqueue("sale", sale_payload(p), cashier)
        assert created
        assert item.status == SYNC_PENDING
        assert len(item.idempotency_key) == 32
        assert item.max_retries == 3

    def test_known_key_returns_existing_item(self, db_session, components, make_product, cashier):
        p = make_product()
        first, _ = components.sync_queue.enqueue("sale", sale_payload(p), cashier, idempotency_key="till-1-7")
        again, created = components.sync_queue.enqueue("sale", sale_payload(p), cashier, idempotency_key="till-1-7")
        assert not created
        assert again.id == first.id
        assert db_session.query(SyncQueueItem).count() == 1

    @pytest.mark.parametrize("item_type, payload, kwargs", [
        ("teleport", {}, {}),
        ("sale", "not-an-object", {}),
        ("sale", {"when": object()}, {}),
        ("sale", {}, {"max_retries": 0}),
    ])
    def test_invalid_items(self, db_session, components, cashier, item_type, payload, kwargs):
        with pytest.raises(ValidationError):
            components.sync_queue.enqueue(item_type, payload, cashier, **kwargs)


class TestDrain:
    def test_drain_applies_offline_sale(self, db_session, components, make_product, cashier):
        p = make_product(stock=5)
        item, _ = components.sync_queue.enqueue("sale", sale_payload(p, qty=2), cashier, idempotency_key="till-1-1")

        report = components.sync_queue.drain()

        assert (report.claimed, report.completed) == (1, 1)
        assert item_status(db_session, item.id).status == SYNC_COMPLETED
        sale = db_session.query(Sale).one()
        assert sale.idempotency_key == "till-1-1"
        assert sale.actor_id == cashier.id
        assert db_session.get(Product, p.id).stock_quantity == 3

    def test_items_are_applied_oldest_first(self, db_session, components, make_product, cashier):
        p = make_product(stock=5)
        keys = [f"till-1-{n}" for n in range(3)]
        for key in keys:
            components.sync_queue.enqueue("sale", sale_payload(p), cashier, idempotency_key=key)

        components.sync_queue.drain()

        sales = db_session.query(Sale).order_by(Sale.id).all()
        assert [s.idempotency_key for s in sales] == keys

    def test_already_applied_item_has_no_second_effect(self, db_session, components, make_product, cashier):
        # Handler committed, but the item was never marked completed (crash)
        p = make_product(stock=5)
        components.orchestrator.submit([CartLine(p.id, 1)], "CASH", cashier, idempotency_key="till-1-9")
        components.sync_queue.enqueue("sale", sale_payload(p), cashier, idempotency_key="till-1-9")

        report = components.sync_queue.drain()

        assert report.completed == 1
        assert db_session.query(Sale).count() == 1
        assert db_session.get(Product, p.id).stock_quantity == 4

    def test_failing_item_retries_then_dead_letters(self, db_session, components, make_product, cashier):
        p = make_product(stock=1)
        item, _ = components.sync_queue.enqueue("sale", sale_payload(p, qty=5), cashier, max_retries=2)

        first = components.sync_queue.drain()
        assert first.retried == 1
        after_first = item_status(db_session, item.id)
        assert (after_first.status, after_first.retry_count) == (SYNC_PENDING, 1)
        assert "Insufficient stock" in after_first.last_error

        second = components.sync_queue.drain()
        assert len(second.dead_lettered) == 1
        dead = second.dead_lettered[0]
        assert isinstance(dead, RetryExhausted)
        assert dead.details["attempts"] == 2
        assert item_status(db_session, item.id).status == SYNC_FAILED

        third = components.sync_queue.drain()
        assert third.claimed == 0
        assert db_session.query(Sale).count() == 0

    def test_one_failure_does_not_block_others(self, db_session, components, make_product, cashier):
        p = make_product(stock=1)
        bad, _ = components.sync_queue.enqueue("sale", {"items": [{"product_id": 999999, "quantity": 1}],
                                                        "payment_method": "CASH"}, cashier)
        good, _ = components.sync_queue.enqueue("sale", sale_payload(p), cashier)

        report = components.sync_queue.drain()

        assert (report.completed, report.retried) == (1, 1)
        assert item_status(db_session, good.id).status == SYNC_COMPLETED
        assert item_status(db_session, bad.id).status == SYNC_PENDING

    def test_offline_mpesa_sale_is_refused(self, db_session, components, make_product, cashier, fake_mpesa):
        p = make_product(stock=1)
        item, _ = components.sync_queue.enqueue("sale", {**sale_payload(p), "payment_method": "MPESA",
                                                         "customer_phone": "0712345678"}, cashier, max_retries=1)

        report = components.sync_queue.drain()

        assert len(report.dead_lettered) == 1
        assert "asynchronous" in item_status(db_session, item.id).last_error
        assert fake_mpesa.pushes == []

    def test_overlapping_drain_is_skipped(self, db_session, components, make_product, cashier):
        p = make_product()
        components.sync_queue.enqueue("sale", sale_payload(p), cashier)

        with components.sync_queue.drain_lock:
            assert components.sync_queue.drain() is None
        assert components.sync_queue.drain().completed == 1

    def test_stale_claims_are_released(self, db_session, components, make_product, cashier):
        p = make_product()
        item, _ = components.sync_queue.enqueue("sale", sale_payload(p), cashier)
        db_session.execute(
            update(SyncQueueItem)
            .where(SyncQueueItem.id == item.id)
            .values(status=SYNC_PROCESSING, claimed_at=utcnow() - timedelta(minutes=10))
        )
        db_session.commit()

        report = components.sync_queue.drain()

        assert report.released == 1
        assert report.completed == 1


class TestOtherItemTypes:
    def test_stock_entry(self, db_session, components, make_product, manager):
        p = make_product(stock=2)
        components.sync_queue.enqueue("stock_entry", {"product_id": p.id, "quantity": 10,
                                                      "reference_number": "GRN-88"}, manager,
                                      idempotency_key="grn-88")
        components.sync_queue.drain()

        entry = db_session.query(StockEntry).one()
        assert (entry.previous_stock, entry.new_stock, entry.reference_number) == (2, 12, "GRN-88")
        assert entry.idempotency_key == "grn-88"

    def test_refund_can_target_an_offline_sale_by_key(self, db_session, components, make_product, cashier,
                                                      manager):
        p = make_product(stock=5, retail_price_cents=1000)
        components.sync_queue.enqueue("sale", sale_payload(p, qty=2), cashier, idempotency_key="till-1-20")
        components.sync_queue.enqueue("refund", {"sale_idempotency_key": "till-1-20", "reason": "Damaged"},
                                      manager, idempotency_key="refund-1")

        report = components.sync_queue.drain()

        assert report.completed == 2
        refund = db_session.query(Refund).one()
        assert refund.amount_cents == 2000
        assert db_session.get(Sale, refund.sale_id).status == SALE_REFUNDED
        assert db_session.get(Product, p.id).stock_quantity == 5

    def test_catalog_patch(self, db_session, components, make_product, manager):
        p = make_product(retail_price_cents=1000)
        components.sync_queue.enqueue("catalog_patch", {"product_id": p.id, "fields": {"retail_price_cents": 1200}},
                                      manager)
        components.sync_queue.drain()
        db_session.expire_all()
        assert db_session.get(Product, p.id).retail_price_cents == 1200


class TestMaintenance:
    def test_purge_keeps_recent_and_pending_items(self, db_session, components, make_product, cashier):
        p = make_product()
        old, _ = components.sync_queue.enqueue("sale", sale_payload(p), cashier)
        components.sync_queue.drain()
        recent_pending, _ = components.sync_queue.enqueue("sale", sale_payload(p), cashier)
        db_session.execute(
            update(SyncQueueItem)
            .where(SyncQueueItem.id.in_([old.id, recent_pending.id]))
            .values(updated_at=utcnow() - timedelta(days=8))
        )
        db_session.commit()

        assert components.sync_queue.purge() == 1
        assert db_session.get(SyncQueueItem, recent_pending.id) is not None

    def test_requeue_dead_letter(self, db_session, components, make_product, cashier):
        item, _ = components.sync_queue.enqueue("sale", {"items": [], "payment_method": "CASH"}, cashier,
                                                max_retries=1)
        components.sync_queue.drain()

        requeued = components.sync_queue.requeue(item.id)

        assert (requeued.status, requeued.retry_count) == (SYNC_PENDING, 0)
        with pytest.raises(ConflictError):
            components.sync_queue.requeue(item.id)

    def test_status_counts_and_dead_letters(self, db_session, components, make_product, cashier):
        p = make_product(stock=5)
        components.sync_queue.enqueue("sale", sale_payload(p), cashier)
        bad, _ = components.sync_queue.enqueue("sale", {"items": [], "payment_method": "CASH"}, cashier,
                                               max_retries=1)
        components.sync_queue.drain()
        components.sync_queue.enqueue("sale", sale_payload(p), cashier)

        counts = components.sync_queue.status_counts()

        assert counts == {"pending": 1, "processing": 0, "completed": 1, "failed": 1, "total": 3}
        assert [i.id for i in components.sync_queue.dead_letters()] == [bad.id]
