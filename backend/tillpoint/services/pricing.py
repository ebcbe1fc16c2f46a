# Overview: Pure cart pricing (wholesale tier selection and VAT); no I/O, no session.

"""
Pricing Resolver

One implementation shared by the server sale path and the offline/client
preview path, so the two can never disagree on tier selection or tax.

RULES:
- Tier selection: an explicit tier is honoured when it is active, belongs to
  the product and quantity >= its min_quantity. Otherwise the active tier
  with the highest min_quantity <= quantity (and quantity <= max_quantity
  when set) wins. No match falls back to the retail price.
- Tax:
    EXCLUSIVE -> tax = line_total * rate, collected on top
    INCLUSIVE -> tax = 0 (already embedded; embedded_tax_cents is informational)
    EXEMPT    -> tax = 0
- Rounding is half-up to the cent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from ..errors import NotFoundError, ValidationError
from ..models.catalog import TAX_EXCLUSIVE, TAX_INCLUSIVE, VALID_TAX_MODES

DEFAULT_VAT_RATE_BPS = 1600
BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class TierSnapshot:
    id: int
    min_quantity: int
    price_cents: int
    max_quantity: Optional[int] = None
    is_active: bool = True

    def matches(self, quantity: int) -> bool:
        if not self.is_active or quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity


@dataclass(frozen=True)
class ProductSnapshot:
    id: int
    retail_price_cents: int
    tax_mode: str
    tiers: tuple[TierSnapshot, ...] = ()
    name: str = ""

    @classmethod
    def from_model(cls, product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            retail_price_cents=product.retail_price_cents,
            tax_mode=product.tax_mode,
            name=product.name,
            tiers=tuple(
                TierSnapshot(
                    id=t.id,
                    min_quantity=t.min_quantity,
                    max_quantity=t.max_quantity,
                    price_cents=t.price_cents,
                    is_active=t.is_active,
                )
                for t in product.tiers
            ),
        )


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    tier_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        """Parse one cart line; accepts camelCase keys from clients."""
        if not isinstance(data, dict):
            raise ValidationError("Invalid cart item data")
        product_id = data.get("product_id", data.get("productId"))
        quantity = data.get("quantity")
        tier_id = data.get("tier_id", data.get("tierId", data.get("wholesaleTierId")))

        if not _is_int(product_id):
            raise ValidationError("product_id must be an integer", details={"field": "product_id"})
        if not _is_int(quantity):
            raise ValidationError("quantity must be an integer", details={"field": "quantity"})
        if tier_id is not None and not _is_int(tier_id):
            raise ValidationError("tier_id must be an integer", details={"field": "tier_id"})
        return cls(product_id=product_id, quantity=quantity, tier_id=tier_id)


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    tax_cents: int
    tax_mode: str
    tier_id: Optional[int] = None
    embedded_tax_cents: int = 0

    @property
    def amount_due_cents(self) -> int:
        return self.line_total_cents + self.tax_cents


@dataclass(frozen=True)
class CartPricing:
    lines: tuple[PricedLine, ...] = field(default_factory=tuple)

    @property
    def subtotal_cents(self) -> int:
        return sum(line.line_total_cents for line in self.lines)

    @property
    def tax_cents(self) -> int:
        return sum(line.tax_cents for line in self.lines)

    def total_cents(self, discount_cents: int = 0) -> int:
        return self.subtotal_cents + self.tax_cents - discount_cents

    def quantities_by_product(self) -> dict[int, int]:
        totals: dict[int, int] = {}
        for line in self.lines:
            totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
        return totals


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def select_tier(
    tiers: Iterable[TierSnapshot],
    quantity: int,
    tier_id: Optional[int] = None,
) -> Optional[TierSnapshot]:
    """Pick the tier that applies to quantity, or None for retail pricing."""
    tiers = [t for t in tiers if t.is_active]

    if tier_id is not None:
        explicit = next((t for t in tiers if t.id == tier_id), None)
        if explicit is not None and quantity >= explicit.min_quantity:
            return explicit

    applicable = [t for t in tiers if t.matches(quantity)]
    if not applicable:
        return None
    return max(applicable, key=lambda t: t.min_quantity)


def compute_tax(line_total_cents: int, tax_mode: str, rate_bps: int = DEFAULT_VAT_RATE_BPS) -> tuple[int, int]:
    """Return (tax_to_collect, embedded_tax) for a line total."""
    if tax_mode not in VALID_TAX_MODES:
        raise ValidationError(f"Unknown tax mode: {tax_mode}")
    if tax_mode == TAX_EXCLUSIVE:
        return _round_half_up(line_total_cents * rate_bps, BPS_DENOMINATOR), 0
    if tax_mode == TAX_INCLUSIVE:
        return 0, _round_half_up(line_total_cents * rate_bps, BPS_DENOMINATOR + rate_bps)
    return 0, 0


def resolve_line(
    product: ProductSnapshot,
    quantity: int,
    *,
    tier_id: Optional[int] = None,
    rate_bps: int = DEFAULT_VAT_RATE_BPS,
) -> PricedLine:
    if not _is_int(quantity) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", details={"product_id": product.id})

    tier = select_tier(product.tiers, quantity, tier_id)
    unit_price = tier.price_cents if tier else product.retail_price_cents
    line_total = unit_price * quantity
    tax, embedded = compute_tax(line_total, product.tax_mode, rate_bps)

    return PricedLine(
        product_id=product.id,
        quantity=quantity,
        unit_price_cents=unit_price,
        line_total_cents=line_total,
        tax_cents=tax,
        tax_mode=product.tax_mode,
        tier_id=tier.id if tier else None,
        embedded_tax_cents=embedded,
    )


class PricingResolver:
    """Stateless pricer bound to one VAT rate."""

    def __init__(self, rate_bps: int = DEFAULT_VAT_RATE_BPS):
        if rate_bps < 0:
            raise ValueError("rate_bps must be >= 0")
        self.rate_bps = rate_bps

    def resolve(self, product: ProductSnapshot, quantity: int, tier_id: Optional[int] = None) -> PricedLine:
        return resolve_line(product, quantity, tier_id=tier_id, rate_bps=self.rate_bps)

    def price_cart(self, lines: Iterable[CartLine], products: Mapping[int, ProductSnapshot]) -> CartPricing:
        priced = []
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise NotFoundError(
                    f"Product not found: {line.product_id}",
                    details={"product_id": line.product_id},
                )
            priced.append(self.resolve(product, line.quantity, line.tier_id))
        return CartPricing(lines=tuple(priced))
