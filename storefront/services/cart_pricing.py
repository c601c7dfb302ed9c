# storefront/services/cart_pricing.py
from collections.abc import Iterable
from decimal import Decimal, ROUND_HALF_UP

from storefront.schemas.cart import CartLine, CheckoutSummary

# Smallest currency unit used for cart totals
MONEY_STEP = Decimal("0.01")


def to_money(value: Decimal | float | int) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


def calculate_totals(lines: Iterable[CartLine]) -> tuple[int, Decimal]:
    """
    Recompute (total_items, total_price) from scratch.

    total_items = sum of quantities
    total_price = sum of quantity * unit_price, quantized to MONEY_STEP
    """
    total_items = 0
    total_price = Decimal("0")
    for line in lines:
        total_items += line.quantity
        total_price += line.unit_price * line.quantity
    return total_items, to_money(total_price)


def build_checkout_summary(
    total_items: int,
    total_price: Decimal,
    tax_rate: float,
    shipping: float = 0.0,
) -> CheckoutSummary:
    """
    Checkout order summary shown before payment.

    Rules:
      - subtotal is the cart total_price
      - tax is subtotal * tax_rate, rounded to whole currency units
      - shipping is flat; 0 means free shipping
    """
    subtotal = to_money(total_price)
    tax = (subtotal * Decimal(str(tax_rate))).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    shipping_amount = to_money(shipping)
    return CheckoutSummary(
        total_items=total_items,
        subtotal=subtotal,
        shipping=shipping_amount,
        tax=to_money(tax),
        total=to_money(subtotal + shipping_amount + tax),
    )
