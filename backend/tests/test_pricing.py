import pytest

from tillpoint.errors import NotFoundError, ValidationError
from tillpoint.models.catalog import TAX_EXCLUSIVE, TAX_EXEMPT, TAX_INCLUSIVE
from tillpoint.services.pricing import (
    CartLine,
    PricingResolver,
    ProductSnapshot,
    TierSnapshot,
    compute_tax,
    select_tier,
)


TIERS = (
    TierSnapshot(id=1, min_quantity=10, price_cents=900),
    TierSnapshot(id=2, min_quantity=50, price_cents=800),
)


def product(tax_mode=TAX_EXEMPT, retail=1000, tiers=TIERS, pid=1):
    return ProductSnapshot(id=pid, retail_price_cents=retail, tax_mode=tax_mode, tiers=tiers)


class TestTierSelection:
    def test_below_every_tier_uses_retail(self):
        line = PricingResolver().resolve(product(), 5)
        assert line.unit_price_cents == 1000
        assert line.tier_id is None
        assert line.line_total_cents == 5000

    def test_highest_applicable_tier_wins(self):
        resolver = PricingResolver()
        assert resolver.resolve(product(), 10).unit_price_cents == 900
        assert resolver.resolve(product(), 49).tier_id == 1
        assert resolver.resolve(product(), 60).unit_price_cents == 800

    def test_explicit_tier_is_honoured_when_quantity_qualifies(self):
        line = PricingResolver().resolve(product(), 60, tier_id=1)
        assert line.tier_id == 1
        assert line.unit_price_cents == 900

    def test_explicit_tier_below_minimum_falls_back_to_automatic(self):
        line = PricingResolver().resolve(product(), 12, tier_id=2)
        assert line.tier_id == 1

    def test_inactive_and_bounded_tiers_are_skipped(self):
        tiers = (
            TierSnapshot(id=1, min_quantity=10, price_cents=900, max_quantity=20),
            TierSnapshot(id=2, min_quantity=15, price_cents=700, is_active=False),
        )
        assert select_tier(tiers, 16).id == 1
        assert select_tier(tiers, 21) is None

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            PricingResolver().resolve(product(), 0)


class TestTax:
    def test_exclusive_tax_is_added_on_top(self):
        line = PricingResolver(1600).resolve(product(TAX_EXCLUSIVE, tiers=()), 1)
        assert line.tax_cents == 160
        assert line.amount_due_cents == 1160

    def test_inclusive_tax_is_not_collected_twice(self):
        line = PricingResolver(1600).resolve(product(TAX_INCLUSIVE, tiers=()), 1)
        assert line.tax_cents == 0
        assert line.embedded_tax_cents == 138
        assert line.amount_due_cents == 1000

    def test_exempt_has_no_tax(self):
        assert compute_tax(1000, TAX_EXEMPT) == (0, 0)

    def test_rounding_is_half_up(self):
        # 10 cents at 5% is exactly half a cent
        assert compute_tax(10, TAX_EXCLUSIVE, 500) == (1, 0)
        assert compute_tax(9, TAX_EXCLUSIVE, 500) == (0, 0)

    def test_unknown_tax_mode(self):
        with pytest.raises(ValidationError):
            compute_tax(1000, "ZERO_RATED")

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            PricingResolver(-1)


class TestCart:
    def test_cart_totals(self):
        resolver = PricingResolver(1600)
        products = {
            1: product(TAX_EXCLUSIVE, tiers=(), pid=1),
            2: product(TAX_EXEMPT, retail=250, tiers=(), pid=2),
        }
        priced = resolver.price_cart([CartLine(1, 2), CartLine(2, 4), CartLine(2, 1)], products)

        assert priced.subtotal_cents == 2000 + 1000 + 250
        assert priced.tax_cents == 320
        assert priced.total_cents(discount_cents=70) == 3500
        assert priced.quantities_by_product() == {1: 2, 2: 5}

    def test_unknown_product(self):
        with pytest.raises(NotFoundError):
            PricingResolver().price_cart([CartLine(99, 1)], {})

    def test_cart_line_accepts_camel_case(self):
        line = CartLine.from_dict({"productId": 3, "quantity": 2, "wholesaleTierId": 7})
        assert line == CartLine(product_id=3, quantity=2, tier_id=7)

    @pytest.mark.parametrize("data", [
        {"product_id": "3", "quantity": 1},
        {"product_id": 3, "quantity": True},
        {"product_id": 3, "quantity": 1.5},
        "not-a-dict",
    ])
    def test_cart_line_rejects_bad_input(self, data):
        with pytest.raises(ValidationError):
            CartLine.from_dict(data)
