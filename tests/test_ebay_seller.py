import asyncio
import gc

import httpx
import pytest

from conftest import HOSTED_URL, IMGBB, INVENTORY_ITEM, OFFER, OWNER, PHOTO, body_of, stub_marketplace
from photolister.errors import (
    AccessDenied,
    AuthenticationError,
    ListingNotFound,
    PublishError,
    PublishInProgress,
    ValidationError,
)
from photolister.services import ebay_seller, store
from photolister.services.ebay_seller import (
    PLACEHOLDER_POLICIES,
    MarketplaceCondition,
    PublishAttempt,
    PublishState,
    build_payload,
    map_condition,
    validate_payload,
)
from photolister.services.image_host import PLACEHOLDER_IMAGE_URL


async def _draft(**overrides):
    data = {
        "owner_id": OWNER,
        "title": "Nintendo Switch Console Gray",
        "description": "A lightly used console.",
        "price": "180.00",
        "condition": "Used - Good",
        "condition_description": "Light scratches.",
        "category": "Video Game Consoles",
        "category_id": "139971",
        "item_specifics": {"Platform": "Nintendo", "Brand": "Nintendo"},
        "images": [PHOTO],
    }
    data.update(overrides)
    return await store.create_listing(data)


def _good_payload():
    return {
        "inventory_item": {
            "product": {
                "title": "Sony Walkman",
                "description": "Classic.",
                "aspects": {"Brand": ["Sony"]},
                "imageUrls": [HOSTED_URL],
            },
            "condition": "USED_GOOD",
            "availability": {"shipToLocationAvailability": {"quantity": 1}},
        },
        "offer": {
            "sku": "SKU",
            "categoryId": "15052",
            "pricingSummary": {"price": {"value": "25.00", "currency": "USD"}},
            "listingPolicies": {"fulfillmentPolicyId": "F", "paymentPolicyId": "P", "returnPolicyId": "R"},
        },
    }


# ── Condition mapping ────────────────────────────────────────────

@pytest.mark.parametrize("label, expected", [
    ("New", MarketplaceCondition.NEW),
    ("Like New", MarketplaceCondition.LIKE_NEW),
    ("Used - Good", MarketplaceCondition.USED_GOOD),
    ("Used - Fair", MarketplaceCondition.USED_ACCEPTABLE),
    ("Used - Poor", MarketplaceCondition.FOR_PARTS_OR_NOT_WORKING),
    ("Refurbished", MarketplaceCondition.USED_GOOD),
    ("", MarketplaceCondition.USED_GOOD),
    (None, MarketplaceCondition.USED_GOOD),
])
def test_condition_mapping(label, expected):
    assert map_condition(label) is expected


# ── Validation ───────────────────────────────────────────────────

def test_valid_payload_has_no_errors():
    assert validate_payload(_good_payload()) == []


def test_one_message_per_violation():
    payload = _good_payload()
    item = payload["inventory_item"]
    item["product"]["title"] = ""
    item["product"]["aspects"] = {"Brand": "Sony"}
    item["product"]["imageUrls"] = []
    item["condition"] = "BROKEN"
    payload["offer"]["pricingSummary"]["price"]["value"] = "-1"

    errors = validate_payload(payload)

    assert len(errors) == 5
    assert any("product.title" in e for e in errors)
    assert any("Aspect 'Brand'" in e for e in errors)
    assert any("imageUrls" in e for e in errors)
    assert any("Invalid 'condition'" in e for e in errors)
    assert any("price.value" in e for e in errors)


def test_long_title_and_bad_price():
    payload = _good_payload()
    payload["inventory_item"]["product"]["title"] = "x" * 81
    payload["offer"]["pricingSummary"]["price"]["value"] = "cheap"

    errors = validate_payload(payload)

    assert len(errors) == 2
    assert "Title is too long (81 chars)" in errors[0]


def test_missing_sections():
    assert validate_payload({}) == ["Missing 'inventory_item'", "Missing 'offer'"]


def test_policies_only_required_on_final_check():
    payload = _good_payload()
    del payload["offer"]["listingPolicies"]

    assert validate_payload(payload, require_policies=False) == []
    assert len(validate_payload(payload)) == 3


def test_incomplete_package_reported():
    payload = _good_payload()
    payload["inventory_item"]["packageWeightAndSize"] = {"dimensions": {"height": 1}, "weight": {"value": 2}}

    errors = validate_payload(payload)

    assert len(errors) == 3
    assert any("length, width, unit" in e for e in errors)


async def test_built_payload_shape():
    draft = await _draft()
    payload = build_payload(draft, [HOSTED_URL], {"fulfillmentPolicyId": "F"}, sku="SKU-1")

    item = payload["inventory_item"]
    assert item["product"]["aspects"] == {"Platform": ["Nintendo"], "Brand": ["Nintendo"]}
    assert item["condition"] == "USED_GOOD"
    assert item["availability"]["shipToLocationAvailability"]["quantity"] == 1
    offer = payload["offer"]
    assert offer["pricingSummary"]["price"] == {"value": "180.00", "currency": "USD"}
    assert offer["format"] == "FIXED_PRICE"
    assert offer["marketplaceId"] == "EBAY_US"
    assert offer["categoryId"] == "139971"


async def test_default_category_when_draft_has_none():
    draft = await _draft(category_id=None)
    payload = build_payload(draft, [HOSTED_URL], None, sku="SKU-1")
    assert payload["offer"]["categoryId"] == "88433"


def test_attempt_rejects_illegal_transitions():
    attempt = PublishAttempt("d1")
    attempt.advance(PublishState.VALIDATING)
    attempt.advance(PublishState.FAILED_VALIDATION)
    assert attempt.terminal
    with pytest.raises(RuntimeError):
        attempt.advance(PublishState.SUBMITTING)
    with pytest.raises(RuntimeError):
        PublishAttempt("d2").advance(PublishState.PUBLISHED)


# ── Publishing ───────────────────────────────────────────────────

async def test_publish_pushes_draft(router, credential):
    stub_marketplace(router)
    draft = await _draft()

    result = await ebay_seller.publish(OWNER, draft.id)

    assert result.external_id == "OFFER-1"
    assert result.state == PublishState.PUBLISHED
    assert result.warnings == []
    assert result.listing.status == "pushed"
    assert result.listing.external_id == "OFFER-1"

    put = router.calls_to("PUT", INVENTORY_ITEM)[0]
    sku = put.url.path.rsplit("/", 1)[1]
    assert sku == result.sku
    item = body_of(put)
    assert item["product"]["imageUrls"] == [HOSTED_URL]
    assert item["condition"] == "USED_GOOD"
    assert put.headers["Authorization"] == "Bearer access-current"

    offer = body_of(router.calls_to("POST", OFFER)[0])
    assert offer["sku"] == sku
    assert offer["listingPolicies"] == {
        "fulfillmentPolicyId": "F-1",
        "paymentPolicyId": "P-1",
        "returnPolicyId": "R-1",
    }


async def test_republishing_makes_no_external_calls(router, credential):
    stub_marketplace(router)
    draft = await _draft()
    first = await ebay_seller.publish(OWNER, draft.id)
    calls = len(router.calls)

    again = await ebay_seller.publish(OWNER, draft.id)

    assert again.already_published
    assert again.external_id == first.external_id
    assert len(router.calls) == calls


async def test_concurrent_publishes_create_one_offer(router, credential):
    stub_marketplace(router)
    draft = await _draft()

    results = await asyncio.gather(
        ebay_seller.publish(OWNER, draft.id),
        ebay_seller.publish(OWNER, draft.id),
    )

    assert len(router.calls_to("POST", OFFER)) == 1
    assert {r.external_id for r in results} == {"OFFER-1"}
    assert sorted(r.already_published for r in results) == [False, True]


async def test_publishes_without_a_shared_lock_create_one_offer(router, credential, monkeypatch):
    # Separate workers do not share in-process locks; only the database claim serializes them.
    monkeypatch.setattr(ebay_seller, "_lock_for", lambda draft_id: asyncio.Lock())
    stub_marketplace(router)
    draft = await _draft()

    results = await asyncio.gather(
        ebay_seller.publish(OWNER, draft.id),
        ebay_seller.publish(OWNER, draft.id),
        return_exceptions=True,
    )

    assert len(router.calls_to("POST", OFFER)) == 1
    published = [r for r in results if not isinstance(r, Exception) and not r.already_published]
    assert len(published) == 1
    other = next(r for r in results if r is not published[0])
    assert isinstance(other, PublishInProgress) or other.already_published
    assert (await store.get_listing(draft.id)).external_id == "OFFER-1"


async def test_claimed_draft_is_not_submitted_again(router, credential):
    stub_marketplace(router)
    draft = await _draft()
    assert await store.claim_for_publish(draft.id)

    with pytest.raises(PublishInProgress):
        await ebay_seller.publish(OWNER, draft.id)

    assert router.calls == []
    assert (await store.get_listing(draft.id)).status == "publishing"


async def test_stale_claim_can_be_taken_over():
    draft = await _draft()
    assert await store.claim_for_publish(draft.id)

    assert not await store.claim_for_publish(draft.id)
    assert await store.claim_for_publish(draft.id, stale_after=-1)


async def test_failed_submission_releases_claim(router, credential):
    stub_marketplace(router, offer_status=400)
    draft = await _draft()

    with pytest.raises(PublishError):
        await ebay_seller.publish(OWNER, draft.id)
    assert (await store.get_listing(draft.id)).status == "draft"

    stub_marketplace(router)
    result = await ebay_seller.publish(OWNER, draft.id)

    assert result.external_id == "OFFER-1"
    assert result.listing.status == "pushed"


async def test_unreadable_offer_response_deletes_inventory_item(router, credential):
    stub_marketplace(router)
    router.add("POST", OFFER, lambda r: httpx.Response(201, text="<html>created</html>"))
    draft = await _draft()

    with pytest.raises(PublishError) as exc:
        await ebay_seller.publish(OWNER, draft.id)

    assert exc.value.stage == "offer"
    assert exc.value.orphaned_sku is None
    put = router.calls_to("PUT", INVENTORY_ITEM)[0]
    assert router.calls_to("DELETE", INVENTORY_ITEM)[0].url.path == put.url.path
    assert (await store.get_listing(draft.id)).status == "draft"


async def test_offer_response_without_id_deletes_inventory_item(router, credential):
    stub_marketplace(router)
    router.json("POST", OFFER, {"warnings": []}, status=201)
    draft = await _draft()

    with pytest.raises(PublishError) as exc:
        await ebay_seller.publish(OWNER, draft.id)

    assert exc.value.stage == "offer"
    assert len(router.calls_to("DELETE", INVENTORY_ITEM)) == 1


async def test_draft_lock_is_dropped_when_idle(router, credential):
    stub_marketplace(router)
    draft = await _draft()

    await asyncio.gather(
        ebay_seller.publish(OWNER, draft.id),
        ebay_seller.publish(OWNER, draft.id),
    )
    gc.collect()

    assert draft.id not in ebay_seller._draft_locks


async def test_invalid_draft_is_rejected_locally(router, credential):
    stub_marketplace(router)
    draft = await _draft(title="x" * 100, images=[])

    with pytest.raises(ValidationError) as exc:
        await ebay_seller.publish(OWNER, draft.id)

    assert len(exc.value.errors) == 2
    assert exc.value.payload["inventory_item"]["product"]["title"] == "x" * 100
    assert router.calls == []
    assert (await store.get_listing(draft.id)).status == "draft"


async def test_inventory_failure_skips_offer(router, credential):
    stub_marketplace(router, inventory_status=400)
    draft = await _draft()

    with pytest.raises(PublishError) as exc:
        await ebay_seller.publish(OWNER, draft.id)

    assert exc.value.stage == "inventory_item"
    assert exc.value.status_code == 400
    assert exc.value.message == "Bad aspects"
    assert exc.value.payload["inventory_item"]["condition"] == "USED_GOOD"
    assert router.calls_to("POST", OFFER) == []
    assert (await store.get_listing(draft.id)).status == "draft"


async def test_offer_failure_deletes_inventory_item(router, credential):
    stub_marketplace(router, offer_status=400)
    draft = await _draft()

    with pytest.raises(PublishError) as exc:
        await ebay_seller.publish(OWNER, draft.id)

    assert exc.value.stage == "offer"
    assert exc.value.message == "Category 139971 is not a leaf"
    assert exc.value.orphaned_sku is None
    put = router.calls_to("PUT", INVENTORY_ITEM)[0]
    delete = router.calls_to("DELETE", INVENTORY_ITEM)[0]
    assert delete.url.path == put.url.path
    assert (await store.get_listing(draft.id)).status == "draft"


async def test_failed_cleanup_reports_orphaned_sku(router, credential):
    stub_marketplace(router, offer_status=500, delete_status=500)
    draft = await _draft()

    with pytest.raises(PublishError) as exc:
        await ebay_seller.publish(OWNER, draft.id)

    sku = router.calls_to("PUT", INVENTORY_ITEM)[0].url.path.rsplit("/", 1)[1]
    assert exc.value.orphaned_sku == sku
    assert exc.value.to_dict()["orphaned_sku"] == sku


async def test_missing_policies_use_placeholders(router, credential):
    stub_marketplace(router)
    for kind in ("fulfillment", "payment", "return"):
        router.json("GET", f"/sell/account/v1/{kind}_policy", {"errors": []}, status=500)
    draft = await _draft()

    result = await ebay_seller.publish(OWNER, draft.id)

    assert len(result.warnings) == 3
    offer = body_of(router.calls_to("POST", OFFER)[0])
    assert offer["listingPolicies"] == PLACEHOLDER_POLICIES


async def test_failed_uploads_use_placeholder_image(router, credential):
    stub_marketplace(router)
    router.json("POST", IMGBB, {"error": "quota"}, status=500)
    draft = await _draft(images=[PHOTO, PHOTO])

    result = await ebay_seller.publish(OWNER, draft.id)

    item = body_of(router.calls_to("PUT", INVENTORY_ITEM)[0])
    assert item["product"]["imageUrls"] == [PLACEHOLDER_IMAGE_URL]
    assert any("placeholder image" in w for w in result.warnings)


async def test_hosted_images_pass_through(router, credential):
    stub_marketplace(router)
    draft = await _draft(images=["https://example.com/a.jpg", PHOTO])

    await ebay_seller.publish(OWNER, draft.id)

    item = body_of(router.calls_to("PUT", INVENTORY_ITEM)[0])
    assert item["product"]["imageUrls"] == ["https://example.com/a.jpg", HOSTED_URL]
    assert len(router.calls_to("POST", IMGBB)) == 1


async def test_publish_without_credential(router):
    stub_marketplace(router)
    draft = await _draft()

    with pytest.raises(AuthenticationError):
        await ebay_seller.publish(OWNER, draft.id)
    assert router.calls_to("PUT", INVENTORY_ITEM) == []


async def test_publish_checks_ownership(router, credential):
    draft = await _draft(owner_id="someone-else")

    with pytest.raises(AccessDenied):
        await ebay_seller.publish(OWNER, draft.id)
    with pytest.raises(ListingNotFound):
        await ebay_seller.publish(OWNER, "missing")
    assert router.calls == []
