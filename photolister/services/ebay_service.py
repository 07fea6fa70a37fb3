import logging

from pydantic import ValidationError as ModelError

from photolister.errors import SearchError
from photolister.models import SearchResult, SoldItem
from photolister.services import ebay_auth, http, outcome, settings

logger = logging.getLogger("photolister.search")

BROWSE_PATH = "/buy/browse/v1"


def strip_data_url(image: str) -> str:
    """Return the bare base64 payload of a data URL (or the input unchanged)."""
    if "base64," in image:
        return image.split("base64,", 1)[1]
    return image


def derive_keywords(results: list[SearchResult]) -> str:
    """First three words of the top result's title, used for the sold-items query."""
    if not results:
        return ""
    return " ".join(results[0].title.split()[:3])


def _parse_items(data: dict, model) -> list:
    items = []
    for raw in data.get("itemSummaries", []) or []:
        try:
            items.append(model.model_validate(raw))
        except ModelError as e:
            logger.debug("Skipping malformed item summary %s: %s", raw.get("itemId"), e)
    return items


async def _search_by_image(owner_id: str, image: str) -> list[SearchResult]:
    token = await ebay_auth.ensure_valid_token(owner_id)
    payload = strip_data_url(image)
    logger.info("Searching by image (base64 length %d)", len(payload))
    async with http.client() as client:
        resp = await client.post(
            f"{settings.api_base_url()}{BROWSE_PATH}/item_summary/search_by_image",
            headers=http.bearer_headers(token),
            json={"image": payload},
        )
    if resp.status_code != 200:
        raise SearchError(f"search_by_image returned {resp.status_code}: {resp.text}")
    items = _parse_items(resp.json(), SearchResult)
    for i, item in enumerate(items[:3]):
        logger.debug("Image search result %d: %s %s", i + 1, item.item_id, item.title)
    return items


async def _get_sold_items(owner_id: str, keywords: str) -> list[SoldItem]:
    token = await ebay_auth.ensure_valid_token(owner_id)
    async with http.client() as client:
        resp = await client.get(
            f"{settings.api_base_url()}{BROWSE_PATH}/item_summary/search",
            headers=http.bearer_headers(token),
            params={"q": keywords, "filter": "soldItems:true"},
        )
    if resp.status_code != 200:
        raise SearchError(f"sold items search returned {resp.status_code}: {resp.text}")
    return _parse_items(resp.json(), SoldItem)


async def search_by_image(owner_id: str, image: str) -> list[SearchResult]:
    """Similar items for an uploaded photo. Empty on any failure."""
    result = await outcome.attempt("eBay image search", _search_by_image, owner_id, image)
    items = result.unwrap_or([])
    logger.info("Found %d similar items through image search", len(items))
    return items


async def get_sold_items(owner_id: str, keywords: str) -> list[SoldItem]:
    """Recently sold comparables for ``keywords``. Empty on any failure."""
    if not keywords.strip():
        return []
    result = await outcome.attempt("eBay sold items search", _get_sold_items, owner_id, keywords)
    items = result.unwrap_or([])
    logger.info("Found %d sold items for %r", len(items), keywords)
    return items


async def _fetch_item_details(owner_id: str, item_id: str) -> dict:
    token = await ebay_auth.ensure_valid_token(owner_id)
    async with http.client() as client:
        resp = await client.get(
            f"{settings.api_base_url()}{BROWSE_PATH}/item/{item_id}",
            headers=http.bearer_headers(token),
        )
    if resp.status_code != 200:
        raise SearchError(f"item details returned {resp.status_code}: {resp.text}")
    return resp.json()


async def get_item_details(owner_id: str, item_id: str) -> dict | None:
    """Full item record (used for its localized aspects). None on failure."""
    if not item_id:
        return None
    result = await outcome.attempt("eBay item details", _fetch_item_details, owner_id, item_id)
    return result.unwrap_or(None)
