import logging
import re

from photolister.models import ListingContent, ListingDraft, SearchResult, SoldItem
from photolister.services import store
from photolister.services.listing_generator import truncate_title

logger = logging.getLogger("photolister.assembler")

FILLER_SPECIFIC = ("MPN", "Does Not Apply")

# (pattern, aspect name, aspect value); first match per aspect name wins.
KEYWORD_SPECIFICS = [
    (r"\bnintendo\b|\bswitch\b|\bgamecube\b|\bwii\b", "Platform", "Nintendo"),
    (r"\bplaystation\b|\bps[1-5]\b", "Platform", "Sony PlayStation"),
    (r"\bxbox\b", "Platform", "Microsoft Xbox"),
    (r"\bsega\b", "Platform", "Sega"),
    (r"\bapple\b|\biphone\b|\bipad\b|\bmacbook\b", "Brand", "Apple"),
    (r"\bsamsung\b|\bgalaxy\b", "Brand", "Samsung"),
    (r"\bsony\b", "Brand", "Sony"),
    (r"\bnintendo\b", "Brand", "Nintendo"),
    (r"\bmicrosoft\b|\bxbox\b", "Brand", "Microsoft"),
    (r"\blego\b", "Brand", "LEGO"),
    (r"\bnike\b", "Brand", "Nike"),
    (r"\badidas\b", "Brand", "Adidas"),
    (r"\bcanon\b", "Brand", "Canon"),
    (r"\bnikon\b", "Brand", "Nikon"),
]


def merge_specifics(target: dict[str, str], source: dict[str, str]) -> dict[str, str]:
    """Add ``source`` entries whose key is not already present. Earlier writers win."""
    for name, value in source.items():
        name = str(name).strip()
        if not name or value in (None, ""):
            continue
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[0]
        target.setdefault(name, str(value).strip())
    return target


def aspects_from_details(details: dict | None) -> dict[str, str]:
    """Browse API item details carry ``localizedAspects: [{name, value}]``."""
    if not isinstance(details, dict):
        return {}
    aspects = {}
    for aspect in details.get("localizedAspects") or []:
        if not isinstance(aspect, dict):
            continue
        name = aspect.get("name")
        value = aspect.get("value")
        if isinstance(name, str) and name and value:
            aspects.setdefault(name, str(value))
    brand = details.get("brand")
    if brand:
        aspects.setdefault("Brand", str(brand))
    return aspects


def infer_specifics(title: str) -> dict[str, str]:
    lowered = title.lower()
    inferred: dict[str, str] = {}
    for pattern, name, value in KEYWORD_SPECIFICS:
        if name not in inferred and re.search(pattern, lowered):
            inferred[name] = value
    return inferred


def build_item_specifics(
    title: str,
    search_results: list[SearchResult],
    item_details: dict | None = None,
) -> dict[str, str]:
    specifics: dict[str, str] = {}
    merge_specifics(specifics, aspects_from_details(item_details))
    if search_results:
        merge_specifics(specifics, search_results[0].item_specifics)
    merge_specifics(specifics, infer_specifics(title))
    if not specifics:
        specifics[FILLER_SPECIFIC[0]] = FILLER_SPECIFIC[1]
    return specifics


def pick_category(
    sold_items: list[SoldItem],
    search_results: list[SearchResult],
) -> tuple[str, str | None]:
    """First category found, sold items first. Returns (name, id)."""
    for items in (sold_items, search_results):
        if items and items[0].categories:
            category = items[0].categories[0]
            return category.category_name or "", category.category_id
    return "", None


async def assemble_draft(
    owner_id: str,
    content: ListingContent,
    price: str,
    condition: str,
    images: list[str],
    search_results: list[SearchResult],
    sold_items: list[SoldItem],
    item_details: dict | None = None,
) -> ListingDraft:
    """Merge everything gathered for the job into a persisted draft."""
    title = truncate_title(content.title)
    category, category_id = pick_category(sold_items, search_results)
    specifics = build_item_specifics(title, search_results, item_details)

    draft = await store.create_listing({
        "owner_id": owner_id,
        "title": title,
        "description": content.description,
        "price": price,
        "condition": condition,
        "condition_description": content.condition_description,
        "category": category,
        "category_id": category_id,
        "item_specifics": specifics,
        "images": list(images),
    })
    logger.info(
        "Created draft %s for %s (%d specifics, category %r)",
        draft.id, owner_id, len(specifics), category,
    )
    return draft
