import logging

from openai import AsyncOpenAI

from photolister.errors import ContentGenerationError
from photolister.services import outcome, settings

logger = logging.getLogger("photolister.analyzer")

_client = None

PLACEHOLDER_DESCRIPTION = (
    "Product image uploaded by user. This will be used for the eBay listing."
)

ANALYSIS_PROMPT = (
    "Analyze this image and provide a detailed description of what you see. "
    "Focus on identifying the product, brand, model, color, condition, and any "
    "other distinctive features that would be helpful for creating an eBay listing."
)


def _get_client() -> AsyncOpenAI:
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


def as_data_url(image: str, mime_type: str = "image/jpeg") -> str:
    if image.startswith("data:"):
        return image
    return f"data:{mime_type};base64,{image}"


async def _describe_image(image: str) -> str:
    if not settings.openai_configured():
        raise ContentGenerationError("OpenAI is not configured")

    response = await _get_client().chat.completions.create(
        model=settings.OPENAI_MODEL,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": ANALYSIS_PROMPT},
                    {"type": "image_url", "image_url": {"url": as_data_url(image)}},
                ],
            },
        ],
        max_tokens=500,
    )
    return (response.choices[0].message.content or "").strip()


async def analyze_image(image: str) -> str:
    """Free-text product description of ``image``; a fixed placeholder if AI is unavailable."""
    result = await outcome.attempt("OpenAI image analysis", _describe_image, image)
    return result.unwrap_or(PLACEHOLDER_DESCRIPTION)
