import statistics
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from photolister.models import Money, SearchResult, SoldItem

ZERO_PRICE = "0.00"
_CENTS = Decimal("0.01")


def to_money_str(value) -> str:
    """Format a numeric value as a non-negative 2-decimal string."""
    amount = Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    if amount < 0:
        raise ValueError(f"Negative price: {value}")
    return f"{amount:.2f}"


def parse_money(money: Money | None) -> Decimal | None:
    if money is None or money.value in (None, ""):
        return None
    try:
        amount = Decimal(str(money.value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def numeric_sold_prices(sold_items: list[SoldItem]) -> list[Decimal]:
    prices = []
    for item in sold_items:
        amount = parse_money(item.sold_price)
        if amount is not None:
            prices.append(amount)
    return prices


def summarize_sold_prices(sold_items: list[SoldItem]) -> dict | None:
    """Mean / low / high of the sold prices that parse as numbers."""
    prices = numeric_sold_prices(sold_items)
    if not prices:
        return None
    return {
        "average": statistics.mean(prices),
        "low": min(prices),
        "high": max(prices),
        "count": len(prices),
    }


def _listed_price(item: SearchResult) -> str | None:
    amount = parse_money(item.price)
    return to_money_str(amount) if amount is not None else None


def suggest_price(sold_items: list[SoldItem], search_results: list[SearchResult]) -> str:
    """
    Suggested listing price as a decimal string.

    Preference order: mean of numeric sold prices, the first sold item's listed
    price, the top search result's price, then ``"0.00"``.
    """
    summary = summarize_sold_prices(sold_items)
    if summary:
        return to_money_str(summary["average"])

    if sold_items:
        price = _listed_price(sold_items[0])
        if price is not None:
            return price

    if search_results:
        price = _listed_price(search_results[0])
        if price is not None:
            return price

    return ZERO_PRICE
