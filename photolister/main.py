import asyncio
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from photolister.errors import (
    AccessDenied,
    AuthenticationError,
    ListingNotFound,
    PublishError,
    PublishInProgress,
    ValidationError,
)
from photolister.services import ebay_auth, ebay_seller, settings, store
from photolister.services.pipeline import JobContext, start_generation
from photolister.services.progress import tracker

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("photolister.api")

app = FastAPI(title="PhotoLister", version="1.0.0")


async def owner_id(x_owner_id: str = Header(...)) -> str:
    if not x_owner_id.strip():
        raise HTTPException(401, "Missing X-Owner-Id header")
    return x_owner_id.strip()


@app.get("/api/status")
async def api_status(x_owner_id: str | None = Header(default=None)):
    """Report which integrations are configured so the client can show helpful messages."""
    return {
        "ebay_configured": settings.ebay_configured(),
        "openai_configured": settings.openai_configured(),
        "imgbb_configured": settings.imgbb_configured(),
        "sandbox": settings.EBAY_SANDBOX_MODE,
        "seller_access": await ebay_auth.has_seller_access(x_owner_id) if x_owner_id else False,
    }


# ── eBay OAuth ────────────────────────────────────────────────────

@app.get("/api/ebay/auth")
async def ebay_auth_start(owner: str = Depends(owner_id)):
    url = ebay_auth.get_consent_url(owner)
    if not url:
        raise HTTPException(400, "eBay credentials or redirect URI not configured")
    return {"auth_url": url}


@app.get("/api/ebay/callback")
async def ebay_auth_callback(code: str = Query(...), state: str = Query(...)):
    try:
        await ebay_auth.exchange_code(state, code)
    except AuthenticationError as e:
        raise HTTPException(401, f"OAuth exchange failed: {e}")
    return {"success": True, "ebay_connected": True}


# ── Listing generation ───────────────────────────────────────────

class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    condition: str
    condition_level: int = Field(alias="conditionLevel")
    photos: list[str]
    job_id: str | None = Field(default=None, alias="jobId")


@app.post("/api/listings/generate")
async def generate_listing(req: GenerateRequest, owner: str = Depends(owner_id)):
    if req.job_id:
        existing = tracker.get(req.job_id)
        if existing.owner_id is not None and existing.owner_id != owner:
            raise HTTPException(409, "Job id already in use")
    ctx = JobContext(
        owner_id=owner,
        photos=req.photos,
        condition=req.condition,
        condition_level=req.condition_level,
        **({"job_id": req.job_id} if req.job_id else {}),
    )
    task = start_generation(ctx)
    try:
        # A dropped client must not take the job down with it.
        draft = await asyncio.shield(task)
    except Exception as e:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e), "jobId": ctx.job_id},
        )
    return {"success": True, "listingId": draft.id, "jobId": ctx.job_id}


@app.get("/api/listings/progress/{job_id}")
async def generation_progress(job_id: str, owner: str = Depends(owner_id)):
    state = tracker.get(job_id)
    # Someone else's job looks the same as one that never existed.
    if state.owner_id is not None and state.owner_id != owner:
        raise HTTPException(404, "Job not found")
    return state.to_response()


# ── Listings ─────────────────────────────────────────────────────

@app.get("/api/listings")
async def list_listings(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    owner: str = Depends(owner_id),
):
    listings = await store.list_listings(owner, limit=limit, offset=offset)
    return {"listings": [listing.public_dict() for listing in listings]}


@app.get("/api/listings/{listing_id}")
async def get_listing(listing_id: str, owner: str = Depends(owner_id)):
    listing = await store.get_listing(listing_id)
    if listing is None:
        raise HTTPException(404, "Listing not found")
    if listing.owner_id != owner:
        raise HTTPException(403, "Access denied")
    return listing.public_dict()


@app.post("/api/listings/{listing_id}/publish")
async def publish_listing(listing_id: str, owner: str = Depends(owner_id)):
    try:
        result = await ebay_seller.publish(owner, listing_id)
    except ListingNotFound:
        raise HTTPException(404, "Listing not found")
    except AccessDenied:
        raise HTTPException(403, "Access denied")
    except AuthenticationError as e:
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": str(e), "needs_auth": True},
        )
    except ValidationError as e:
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": "Listing failed validation",
                "errors": e.errors,
                "payload": e.payload,
            },
        )
    except PublishInProgress as e:
        raise HTTPException(409, str(e))
    except PublishError as e:
        return JSONResponse(
            status_code=502,
            content={"success": False, "error": e.message, **e.to_dict()},
        )

    return {
        "success": True,
        "listing": result.listing.public_dict(),
        "external_id": result.external_id,
        "sku": result.sku,
        "already_published": result.already_published,
        "warnings": result.warnings,
    }
