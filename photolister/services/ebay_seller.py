"""
eBay Inventory API integration: turns a stored draft into an inventory item
plus an (unpublished) offer on the seller's account.

Steps:
1. Load the draft and check ownership
2. Validate locally (no external calls until this passes)
3. Claim the draft in the database so only one worker submits it
4. Resolve business policies and host the photos
5. createOrReplaceInventoryItem (SKU-based)
6. createOffer
7. Mark the draft as pushed (a failure releases the claim instead)

A failed offer leaves an inventory item behind; it is deleted again and the
error says whether that cleanup worked.
"""

import asyncio
import logging
import uuid
import weakref
from decimal import Decimal, InvalidOperation
from enum import Enum

import httpx
from pydantic import BaseModel

from photolister.errors import (
    AccessDenied,
    ListingNotFound,
    PublishError,
    PublishInProgress,
    ValidationError,
)
from photolister.models import DraftStatus, ListingDraft
from photolister.services import ebay_auth, http, image_host, settings, store
from photolister.services.listing_generator import MAX_TITLE_LENGTH

logger = logging.getLogger("photolister.seller")

INVENTORY_PATH = "/sell/inventory/v1"
ACCOUNT_PATH = "/sell/account/v1"


# ── Conditions ───────────────────────────────────────────────────

class ConditionLabel(str, Enum):
    NEW = "New"
    LIKE_NEW = "Like New"
    USED_GOOD = "Used - Good"
    USED_FAIR = "Used - Fair"
    USED_POOR = "Used - Poor"


class MarketplaceCondition(str, Enum):
    NEW = "NEW"
    LIKE_NEW = "LIKE_NEW"
    NEW_OTHER = "NEW_OTHER"
    USED_EXCELLENT = "USED_EXCELLENT"
    USED_VERY_GOOD = "USED_VERY_GOOD"
    USED_GOOD = "USED_GOOD"
    USED_ACCEPTABLE = "USED_ACCEPTABLE"
    FOR_PARTS_OR_NOT_WORKING = "FOR_PARTS_OR_NOT_WORKING"


CONDITION_MAP = {
    ConditionLabel.NEW: MarketplaceCondition.NEW,
    ConditionLabel.LIKE_NEW: MarketplaceCondition.LIKE_NEW,
    ConditionLabel.USED_GOOD: MarketplaceCondition.USED_GOOD,
    ConditionLabel.USED_FAIR: MarketplaceCondition.USED_ACCEPTABLE,
    ConditionLabel.USED_POOR: MarketplaceCondition.FOR_PARTS_OR_NOT_WORKING,
}
DEFAULT_CONDITION = MarketplaceCondition.USED_GOOD


def map_condition(label: str | None) -> MarketplaceCondition:
    """Exact label lookup; anything unrecognized is ``DEFAULT_CONDITION``."""
    try:
        return CONDITION_MAP[ConditionLabel((label or "").strip())]
    except ValueError:
        logger.warning("Unrecognized condition %r, using %s", label, DEFAULT_CONDITION.value)
        return DEFAULT_CONDITION


# ── Publish attempt state ────────────────────────────────────────

class PublishState(str, Enum):
    NOT_PUBLISHED = "NOT_PUBLISHED"
    VALIDATING = "VALIDATING"
    FAILED_VALIDATION = "FAILED_VALIDATION"
    SUBMITTING = "SUBMITTING"
    PUBLISHED = "PUBLISHED"
    FAILED_SUBMISSION = "FAILED_SUBMISSION"


_TRANSITIONS = {
    PublishState.NOT_PUBLISHED: {PublishState.VALIDATING},
    PublishState.VALIDATING: {PublishState.FAILED_VALIDATION, PublishState.SUBMITTING},
    PublishState.SUBMITTING: {PublishState.PUBLISHED, PublishState.FAILED_SUBMISSION},
    PublishState.FAILED_VALIDATION: set(),
    PublishState.PUBLISHED: set(),
    PublishState.FAILED_SUBMISSION: set(),
}


class PublishAttempt:
    def __init__(self, draft_id: str):
        self.draft_id = draft_id
        self.state = PublishState.NOT_PUBLISHED

    def advance(self, new_state: PublishState):
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal publish transition {self.state.value} -> {new_state.value}")
        logger.info("Publish %s: %s -> %s", self.draft_id, self.state.value, new_state.value)
        self.state = new_state

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


class PublishResult(BaseModel):
    listing: ListingDraft
    external_id: str
    sku: str | None = None
    warnings: list[str] = []
    already_published: bool = False
    state: PublishState = PublishState.PUBLISHED


# ── Payload ──────────────────────────────────────────────────────

POLICY_FIELDS = ("fulfillmentPolicyId", "paymentPolicyId", "returnPolicyId")
PLACEHOLDER_POLICIES = {
    "fulfillmentPolicyId": "DEFAULT_FULFILLMENT_POLICY",
    "paymentPolicyId": "DEFAULT_PAYMENT_POLICY",
    "returnPolicyId": "DEFAULT_RETURN_POLICY",
}

PACKAGE = {
    "dimensions": {"height": 6, "length": 10, "width": 8, "unit": "INCH"},
    "packageType": "MAILING_BOX",
    "weight": {"value": 1, "unit": "POUND"},
}


def new_sku() -> str:
    return f"PL-{uuid.uuid4().hex[:16].upper()}"


def build_aspects(specifics: dict[str, str]) -> dict[str, list[str]]:
    return {k: [str(v)] for k, v in specifics.items() if v}


def build_inventory_item(draft: ListingDraft, image_urls: list[str]) -> dict:
    item = {
        "product": {
            "title": draft.title,
            "description": draft.description,
            "aspects": build_aspects(draft.item_specifics),
            "imageUrls": list(image_urls),
        },
        "condition": map_condition(draft.condition).value,
        "availability": {
            "shipToLocationAvailability": {"quantity": 1}
        },
        "packageWeightAndSize": PACKAGE,
    }
    if draft.condition_description:
        item["conditionDescription"] = draft.condition_description
    return item


def build_offer(draft: ListingDraft, sku: str, policies: dict | None) -> dict:
    offer = {
        "sku": sku,
        "marketplaceId": settings.EBAY_MARKETPLACE_ID,
        "format": "FIXED_PRICE",
        "availableQuantity": 1,
        "categoryId": draft.category_id or settings.EBAY_DEFAULT_CATEGORY_ID,
        "listingDescription": draft.description,
        "pricingSummary": {
            "price": {
                "value": draft.price,
                "currency": settings.EBAY_CURRENCY,
            }
        },
    }
    if policies is not None:
        offer["listingPolicies"] = dict(policies)
    return offer


def build_payload(
    draft: ListingDraft,
    image_urls: list[str],
    policies: dict | None,
    sku: str,
) -> dict:
    return {
        "inventory_item": build_inventory_item(draft, image_urls),
        "offer": build_offer(draft, sku, policies),
    }


def _nonblank(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_payload(payload: dict, require_policies: bool = True) -> list[str]:
    """Every rule violation in ``payload``, one message each. Pure; no I/O."""
    errors = []
    if not isinstance(payload, dict):
        return ["Payload must be an object"]
    if "inventory_item" not in payload:
        errors.append("Missing 'inventory_item'")
    if "offer" not in payload:
        errors.append("Missing 'offer'")
    if errors:
        return errors

    item = payload["inventory_item"] or {}
    offer = payload["offer"] or {}

    for field in ("product", "condition", "availability"):
        if field not in item:
            errors.append(f"Missing 'inventory_item.{field}'")

    product = item.get("product") or {}
    title = product.get("title")
    if not _nonblank(title):
        errors.append("Missing or invalid 'product.title'")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(
            f"Title is too long ({len(title)} chars). eBay requires max {MAX_TITLE_LENGTH} characters."
        )

    if not _nonblank(product.get("description")):
        errors.append("Missing or invalid 'product.description'")

    aspects = product.get("aspects")
    if not isinstance(aspects, dict):
        errors.append("Missing or invalid 'product.aspects'")
    else:
        for name, value in aspects.items():
            if not isinstance(value, list):
                errors.append(f"Aspect '{name}' must have a list value, got: {type(value).__name__}")

    images = product.get("imageUrls")
    if not isinstance(images, list) or not images:
        errors.append("Missing or empty 'product.imageUrls'")

    if "condition" in item and item["condition"] not in {c.value for c in MarketplaceCondition}:
        errors.append(
            "Invalid 'condition'. Must be one of "
            + ", ".join(c.value for c in MarketplaceCondition)
        )

    avail = (item.get("availability") or {}).get("shipToLocationAvailability") or {}
    if "availability" in item and "quantity" not in avail:
        errors.append("Missing 'availability.shipToLocationAvailability.quantity'")

    pkg = item.get("packageWeightAndSize")
    if pkg:
        dims = pkg.get("dimensions") or {}
        missing_dims = [k for k in ("height", "length", "width", "unit") if k not in dims]
        if missing_dims:
            errors.append(
                f"Missing fields in 'packageWeightAndSize.dimensions': {', '.join(missing_dims)}"
            )
        if not pkg.get("packageType"):
            errors.append("Missing 'packageWeightAndSize.packageType'")
        weight = pkg.get("weight") or {}
        missing_weight = [k for k in ("value", "unit") if k not in weight]
        if missing_weight:
            errors.append(
                f"Missing fields in 'packageWeightAndSize.weight': {', '.join(missing_weight)}"
            )

    price = (offer.get("pricingSummary") or {}).get("price") or {}
    try:
        amount = Decimal(str(price.get("value")))
        if not amount.is_finite() or amount < 0:
            raise InvalidOperation
    except (InvalidOperation, ValueError):
        errors.append("Missing or invalid 'offer.pricingSummary.price.value' (must be a non-negative number)")
    if not price.get("currency"):
        errors.append("Missing 'offer.pricingSummary.price.currency'")

    if not offer.get("categoryId"):
        errors.append("Missing 'offer.categoryId'")

    if require_policies:
        policies = offer.get("listingPolicies") or {}
        for field in POLICY_FIELDS:
            if not _nonblank(policies.get(field)):
                errors.append(f"Missing or invalid '{field}' in 'listingPolicies' (must be a string ID)")

    return errors


def validate_draft(draft: ListingDraft) -> list[str]:
    """Local checks on a draft before anything leaves the process."""
    preview = build_payload(draft, draft.images, None, sku="PREVIEW")
    return validate_payload(preview, require_policies=False)


# ── Marketplace calls ────────────────────────────────────────────

async def resolve_policies(token: str) -> tuple[dict, list[str]]:
    """
    The seller's first fulfillment, payment and return policy ids. Anything
    that cannot be fetched is replaced by a placeholder and reported in the
    returned warnings.
    """
    kinds = {
        "fulfillmentPolicyId": ("fulfillment_policy", "fulfillmentPolicies"),
        "paymentPolicyId": ("payment_policy", "paymentPolicies"),
        "returnPolicyId": ("return_policy", "returnPolicies"),
    }
    policies = {}
    warnings = []
    async with http.client() as client:
        for field, (path, key) in kinds.items():
            policy_id = None
            try:
                resp = await client.get(
                    f"{settings.api_base_url()}{ACCOUNT_PATH}/{path}",
                    headers=http.bearer_headers(token),
                    params={"marketplace_id": settings.EBAY_MARKETPLACE_ID},
                )
                if resp.status_code == 200:
                    found = resp.json().get(key, [])
                    if found:
                        policy_id = found[0].get(field)
                else:
                    logger.warning("Fetching %s returned %s: %s", path, resp.status_code, resp.text)
            except httpx.HTTPError as e:
                logger.warning("Fetching %s failed: %s", path, e)

            if not policy_id:
                policy_id = PLACEHOLDER_POLICIES[field]
                warnings.append(
                    f"No {path.replace('_', ' ')} found on the eBay account; "
                    f"using placeholder '{policy_id}'. eBay may reject the offer."
                )
            policies[field] = policy_id

    for warning in warnings:
        logger.warning(warning)
    return policies, warnings


def _error_message(resp: httpx.Response) -> str:
    try:
        errors = resp.json().get("errors") or []
    except ValueError:
        return resp.text
    messages = [e.get("longMessage") or e.get("message") for e in errors if isinstance(e, dict)]
    return "; ".join(m for m in messages if m) or resp.text


async def _delete_inventory_item(client: httpx.AsyncClient, token: str, sku: str) -> bool:
    try:
        resp = await client.delete(
            f"{settings.api_base_url()}{INVENTORY_PATH}/inventory_item/{sku}",
            headers=http.bearer_headers(token),
        )
    except httpx.HTTPError as e:
        logger.error("Could not delete orphaned inventory item %s: %s", sku, e)
        return False
    if resp.status_code not in (200, 204):
        logger.error("Could not delete orphaned inventory item %s: %s %s", sku, resp.status_code, resp.text)
        return False
    logger.info("Deleted orphaned inventory item %s", sku)
    return True


async def submit(token: str, payload: dict, sku: str) -> str:
    """Create the inventory item, then the offer. Returns the offer id."""
    headers = http.bearer_headers(token, **{"Content-Language": "en-US"})
    item_body = payload["inventory_item"]
    offer_body = payload["offer"]

    async with http.client() as client:
        try:
            resp = await client.put(
                f"{settings.api_base_url()}{INVENTORY_PATH}/inventory_item/{sku}",
                headers=headers,
                json=item_body,
            )
        except httpx.HTTPError as e:
            raise PublishError(str(e), "inventory_item", payload) from e
        if resp.status_code not in (200, 201, 204):
            logger.error("Failed to create inventory item: %s %s", resp.status_code, resp.text)
            raise PublishError(_error_message(resp), "inventory_item", payload, resp.status_code)

        try:
            resp = await client.post(
                f"{settings.api_base_url()}{INVENTORY_PATH}/offer",
                headers=headers,
                json=offer_body,
            )
            failure = None if resp.status_code in (200, 201) else _error_message(resp)
            status = resp.status_code
        except httpx.HTTPError as e:
            failure, status = str(e), None

        offer_id = None
        if failure is None:
            try:
                offer_id = resp.json().get("offerId")
            except (ValueError, AttributeError):
                failure = "Offer response was not a JSON object"
            else:
                if not offer_id:
                    failure = "Offer response carried no offerId"

        if failure is not None:
            logger.error("Failed to create offer for %s: %s %s", sku, status, failure)
            cleaned = await _delete_inventory_item(client, token, sku)
            raise PublishError(
                failure,
                "offer",
                payload,
                status,
                orphaned_sku=None if cleaned else sku,
            )

    return offer_id


# ── Entry point ──────────────────────────────────────────────────

# Entries disappear once no publish for the draft holds or awaits the lock.
_draft_locks = weakref.WeakValueDictionary()


def _lock_for(draft_id: str) -> asyncio.Lock:
    lock = _draft_locks.get(draft_id)
    if lock is None:
        lock = _draft_locks[draft_id] = asyncio.Lock()
    return lock


async def _load_owned(owner_id: str, draft_id: str) -> ListingDraft:
    draft = await store.get_listing(draft_id)
    if draft is None:
        raise ListingNotFound(f"Listing {draft_id} not found")
    if draft.owner_id != owner_id:
        logger.info("Access denied: listing %s belongs to %s, not %s", draft_id, draft.owner_id, owner_id)
        raise AccessDenied("Access denied")
    return draft


def _already_published(draft: ListingDraft) -> PublishResult:
    logger.info("Listing %s already pushed as %s", draft.id, draft.external_id)
    return PublishResult(
        listing=draft,
        external_id=draft.external_id or "",
        sku=draft.sku,
        already_published=True,
    )


async def publish(owner_id: str, draft_id: str) -> PublishResult:
    """
    Push a stored draft to eBay. Publishing a pushed draft returns its existing
    offer id. The in-process lock serializes publishes within one worker; the
    database claim covers workers that do not share it.
    """
    await _load_owned(owner_id, draft_id)

    async with _lock_for(draft_id):
        draft = await _load_owned(owner_id, draft_id)
        if draft.status == DraftStatus.PUSHED:
            return _already_published(draft)

        attempt = PublishAttempt(draft_id)
        attempt.advance(PublishState.VALIDATING)
        errors = validate_draft(draft)
        if errors:
            attempt.advance(PublishState.FAILED_VALIDATION)
            raise ValidationError(errors, build_payload(draft, draft.images, None, sku=""))

        if not await store.claim_for_publish(draft_id):
            current = await store.get_listing(draft_id)
            if current is not None and current.status == DraftStatus.PUSHED:
                return _already_published(current)
            raise PublishInProgress(f"Listing {draft_id} is already being published")

        attempt.advance(PublishState.SUBMITTING)
        try:
            token = await ebay_auth.ensure_valid_token(owner_id)
            policies, warnings = await resolve_policies(token)
            image_urls, image_warnings = await image_host.host_images(draft.images)
            warnings.extend(image_warnings)

            sku = new_sku()
            payload = build_payload(draft, image_urls, policies, sku)
            errors = validate_payload(payload)
            if errors:
                raise ValidationError(errors, payload)

            offer_id = await submit(token, payload, sku)
        except BaseException:
            attempt.advance(PublishState.FAILED_SUBMISSION)
            await store.release_claim(draft_id)
            raise

        if not await store.mark_pushed(draft_id, offer_id, sku):
            logger.error("Listing %s lost its publish claim before offer %s was recorded", draft_id, offer_id)
        attempt.advance(PublishState.PUBLISHED)

        listing = await store.get_listing(draft_id)
        logger.info("Pushed listing %s to eBay as offer %s (sku %s)", draft_id, listing.external_id, sku)
        return PublishResult(
            listing=listing,
            external_id=listing.external_id or offer_id,
            sku=listing.sku,
            warnings=warnings,
            state=attempt.state,
        )
