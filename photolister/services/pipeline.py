"""
Listing generation pipeline.

One request runs as one sequential job:
1. Searches eBay for similar items by photo, then for sold comparables
2. Builds product details (from the evidence, or AI image analysis if there is none)
3. Generates title / description / condition text
4. Derives a suggested price
5. Assembles and stores the draft

Progress is written to the tracker at every stage. Soft failures degrade the
listing; only an unexpected exception fails the job.
"""

import asyncio
import logging
import uuid

from pydantic import BaseModel, Field

from photolister.models import ListingDraft, SearchResult, SoldItem
from photolister.services import assembler, ebay_service, image_analyzer, listing_generator, pricing
from photolister.services.progress import ProgressTracker, tracker as default_tracker

logger = logging.getLogger("photolister.pipeline")


class JobContext(BaseModel):
    """Everything one generation job needs, threaded through every stage."""

    owner_id: str
    photos: list[str]
    condition: str
    condition_level: int
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def main_photo(self) -> str:
        return self.photos[0]


async def gather_evidence(ctx: JobContext) -> tuple[list[SearchResult], list[SoldItem]]:
    search_results = await ebay_service.search_by_image(ctx.owner_id, ctx.main_photo)
    sold_items: list[SoldItem] = []
    if search_results:
        keywords = ebay_service.derive_keywords(search_results)
        logger.info("Searching sold items with keywords %r", keywords)
        sold_items = await ebay_service.get_sold_items(ctx.owner_id, keywords)
    return search_results, sold_items


async def product_details(
    ctx: JobContext,
    search_results: list[SearchResult],
    sold_items: list[SoldItem],
) -> str:
    if not search_results and not sold_items:
        logger.info("No eBay results for job %s, analyzing the photo instead", ctx.job_id)
        return await image_analyzer.analyze_image(ctx.main_photo)
    return listing_generator.build_product_details(search_results, sold_items)


async def run_generation(ctx: JobContext, progress: ProgressTracker | None = None) -> ListingDraft:
    """Run the whole job. Raises after recording ``error`` if a stage blows up."""
    progress = progress or default_tracker
    progress.start(ctx.job_id, owner_id=ctx.owner_id)
    try:
        if not ctx.photos:
            raise ValueError("No photos available for processing")

        progress.advance(ctx.job_id, "searching_similar_items")
        search_results, sold_items = await gather_evidence(ctx)

        progress.advance(ctx.job_id, "generating_content")
        details = await product_details(ctx, search_results, sold_items)
        content = await listing_generator.generate_listing_content(
            details, ctx.condition, ctx.condition_level
        )

        progress.advance(ctx.job_id, "setting_price")
        price = pricing.suggest_price(sold_items, search_results)

        progress.advance(ctx.job_id, "creating_draft")
        item_details = None
        if search_results:
            item_details = await ebay_service.get_item_details(ctx.owner_id, search_results[0].item_id)
        draft = await assembler.assemble_draft(
            ctx.owner_id,
            content,
            price,
            ctx.condition,
            ctx.photos,
            search_results,
            sold_items,
            item_details,
        )
    except asyncio.CancelledError:
        progress.fail(ctx.job_id, "Listing generation was cancelled")
        raise
    except Exception as e:
        logger.error("Listing generation failed for job %s: %s", ctx.job_id, e)
        progress.fail(ctx.job_id, str(e))
        raise

    progress.complete(ctx.job_id, draft.id)
    logger.info("Job %s finished with draft %s at %s", ctx.job_id, draft.id, price)
    return draft


def start_generation(ctx: JobContext, progress: ProgressTracker | None = None) -> asyncio.Task:
    """Schedule the job on the running loop. It keeps running if the caller goes away."""
    return asyncio.create_task(run_generation(ctx, progress), name=f"generate-{ctx.job_id}")
