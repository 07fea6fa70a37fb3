"""
Listing copy: product-detail text from search evidence, then title /
description / condition description from that text.

Generation is a two-link fallback chain: OpenAI structured JSON first, a
deterministic template second. The template never fails, so neither does
:func:`generate_listing_content`.
"""

import json
import logging
import re

from photolister.errors import ContentGenerationError
from photolister.models import ListingContent, SearchResult, SoldItem
from photolister.services import outcome, settings
from photolister.services.image_analyzer import _get_client
from photolister.services.pricing import summarize_sold_prices

logger = logging.getLogger("photolister.generator")

MAX_TITLE_LENGTH = 80
MAX_COMPARABLES = 3
GENERIC_TITLE = "Product Listing"

CONDITION_SENTENCES = {
    1: "Item shows significant wear and may have functional issues.",
    2: "Item shows moderate wear but remains functional.",
    3: "Item shows some signs of use but remains in good condition.",
    4: "Item is in very good condition with minimal signs of use.",
    5: "Item is like new with no visible signs of wear.",
}

SYSTEM_PROMPT = (
    "You are an expert eBay seller who writes compelling, accurate listings "
    "that follow eBay best practices."
)

LISTING_PROMPT = """Create content for an eBay listing based on the following product details:

Product Details: {details}
Condition: {condition} ({level}/5)

Generate:
1. A concise, attention-grabbing title (max 80 characters) that includes key product details
2. A detailed 3-4 paragraph description highlighting features, condition, and any notable details
3. A brief condition description that honestly describes the item's physical state

Return ONLY a JSON object with the fields "title", "description" and "conditionDescription"."""

_TITLE_LINE = re.compile(r"^Title: (.*)$", re.MULTILINE)


def truncate_title(title: str) -> str:
    return title.strip()[:MAX_TITLE_LENGTH].rstrip()


def build_product_details(
    search_results: list[SearchResult],
    sold_items: list[SoldItem],
) -> str:
    """Deterministic text block summarizing the marketplace evidence."""
    lines = ["Product Details:", ""]

    if search_results:
        top = search_results[0]
        categories = ", ".join(c.category_name for c in top.categories if c.category_name)
        price = top.price.value if top.price and top.price.value else "Unknown"
        currency = top.price.currency if top.price else "USD"
        lines.append(f"Title: {top.title or 'Unknown'}")
        lines.append(f"Category: {categories or 'Uncategorized'}")
        lines.append(f"Current Market Price: {price} {currency}")
        lines.append("")
    else:
        lines.append("No similar items found in image search.")
        lines.append("")

    if sold_items:
        lines.append("Recent Sold Items:")
        summary = summarize_sold_prices(sold_items)
        if summary:
            lines.append(f"Average Selling Price: ${summary['average']:.2f}")
            lines.append(f"Price Range: ${summary['low']:.2f} - ${summary['high']:.2f}")
            lines.append("")
        for i, item in enumerate(sold_items[:MAX_COMPARABLES], start=1):
            lines.append(f"Similar Item {i}: {item.title}")
            if item.sold_price and item.sold_price.value:
                lines.append(f"Sold for: {item.sold_price.value} {item.sold_price.currency}")
            if item.sold_date:
                lines.append(f"Date sold: {item.sold_date}")
            lines.append("")
    else:
        lines.append("No recent sold items found.")

    return "\n".join(lines).strip() + "\n"


def condition_sentence(condition: str, level) -> str:
    try:
        level = int(level)
    except (TypeError, ValueError):
        level = None
    return CONDITION_SENTENCES.get(level, f"Item is in {condition.lower()} condition.")


def template_listing_content(details: str, condition: str, level) -> ListingContent:
    match = _TITLE_LINE.search(details)
    title = truncate_title(match.group(1)) if match and match.group(1).strip() else GENERIC_TITLE
    description = f"{details.strip()}\n\nThis item is being sold in {condition.lower()} condition."
    return ListingContent(
        title=title,
        description=description,
        condition_description=condition_sentence(condition, level),
    )


def _parse_json_object(raw: str) -> dict:
    raw = raw.strip()
    raw = raw.removeprefix("```json").removeprefix("```").removesuffix("```").strip()
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ContentGenerationError("AI response was not a JSON object")
    return data


async def _ai_listing_content(details: str, condition: str, level) -> ListingContent:
    if not settings.openai_configured():
        raise ContentGenerationError("OpenAI is not configured")

    response = await _get_client().chat.completions.create(
        model=settings.OPENAI_MODEL,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": LISTING_PROMPT.format(details=details, condition=condition, level=level),
            },
        ],
        response_format={"type": "json_object"},
        max_tokens=1200,
        temperature=0.3,
    )
    data = _parse_json_object(response.choices[0].message.content or "{}")

    title = str(data.get("title") or "").strip()
    description = str(data.get("description") or "").strip()
    if not title or not description:
        raise ContentGenerationError("AI response is missing title or description")
    return ListingContent(
        title=truncate_title(title),
        description=description,
        condition_description=str(data.get("conditionDescription") or "").strip()
        or condition_sentence(condition, level),
    )


async def _template(details: str, condition: str, level) -> ListingContent:
    return template_listing_content(details, condition, level)


async def generate_listing_content(details: str, condition: str, level) -> ListingContent:
    """Title, description and condition description; AI first, template on any failure."""
    generated = await outcome.attempt(
        "OpenAI listing generation", _ai_listing_content, details, condition, level
    )
    if not generated.ok:
        logger.info("Using template listing content")
    chosen = outcome.first_ok(
        generated,
        await outcome.attempt("Template listing content", _template, details, condition, level),
    )
    content = chosen.value
    content.title = truncate_title(content.title) or GENERIC_TITLE
    return content
